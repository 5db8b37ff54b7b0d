from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional, Tuple

from agents.base_agent import LLMClient, UpstreamAPIError
from agents.framework_agent import FrameworkAgent
from agents.outline_agent import MalformedOutlineError, OutlineAgent
from agents.slide_writer_agent import SlideWriterAgent
from agents.validation_agent import ValidationAgent
from manager.refinement import RefinementEngine, outline_from_presentation
from manager.retry import RetryPolicy
from manager.telemetry import GenerationContext
from schemas.feedback import ValidationFeedback
from schemas.framework import Framework, FrameworkRecommendation, get_framework
from schemas.outline import PresentationOutline, SlideOutline
from schemas.presentation import IterativeGenerationResult, PresentationData, PresentationMetadata, RefinementResult
from schemas.progress import GenerationPhase, GenerationProgress
from schemas.request import PresentationRequest, ValidationConfig
from schemas.slide import Slide
from validators.outline_validator import MIN_OUTLINE_SCORE
from validators.slide_validator import MIN_SLIDE_SCORE

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[GenerationProgress], Any]


class GenerationCancelled(RuntimeError):
    """The caller's cancellation signal was set."""


@dataclass
class GenerationOptions:
    validate_outline: bool = True
    validate_slides: bool = True
    use_llm_validation: bool = True
    max_slide_retries: int = 2
    min_slide_score: int = MIN_SLIDE_SCORE
    fast_framework: bool = False
    refine: bool = True
    validation_config: ValidationConfig = field(default_factory=ValidationConfig)
    retry_policy: RetryPolicy = field(default_factory=RetryPolicy)
    outline_retries: int = 0


class IterativeOrchestrator:
    """Runs one request through outline, slides, validation and refinement.

    Owns its agents and the slide cache, so one instance serves one
    generation at a time. The per-run ``GenerationContext`` collects LLM
    calls, timings and fallback events and is returned in the result.
    """

    def __init__(
        self,
        llm_client: Any | None = None,
        framework_agent: FrameworkAgent | None = None,
        outline_agent: OutlineAgent | None = None,
        slide_writer: SlideWriterAgent | None = None,
        validator: ValidationAgent | None = None,
    ) -> None:
        self.llm_client = llm_client or LLMClient()
        self.framework_agent = framework_agent or FrameworkAgent(llm_client=self.llm_client)
        self.outline_agent = outline_agent or OutlineAgent(llm_client=self.llm_client)
        self.slide_writer = slide_writer or SlideWriterAgent(llm_client=self.llm_client)
        self.validator = validator or ValidationAgent(llm_client=self.llm_client)

    @staticmethod
    def _record_feedback(context: GenerationContext, stage: str, success: bool, **metadata: Any) -> None:
        context.feedback.log_event(stage, success, metadata)

    async def generate_presentation(
        self,
        request: PresentationRequest,
        options: GenerationOptions | None = None,
        progress_cb: ProgressCallback | None = None,
        cancel_event: asyncio.Event | None = None,
        context: GenerationContext | None = None,
    ) -> IterativeGenerationResult:
        options = options or GenerationOptions()
        context = context or GenerationContext()
        context.start(
            prompt=request.prompt,
            presentation_type=request.presentation_type.value,
            slide_count=request.slide_count,
        )
        self.slide_writer.clear_cache()
        last_percent = 0

        async def update_progress(phase: GenerationPhase, step: str, percent: int, message: str, **extra: Any) -> None:
            nonlocal last_percent
            last_percent = max(last_percent, percent)
            if progress_cb is None:
                return
            try:
                progress = GenerationProgress(
                    phase=phase, current_step=step, percent_complete=last_percent, message=message, **extra
                )
                outcome = progress_cb(progress)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception as exc:  # noqa: BLE001
                logger.debug("Progress callback failed: %s", exc)

        def check_cancelled(where: str) -> None:
            if cancel_event is not None and cancel_event.is_set():
                raise GenerationCancelled(f"Generation cancelled before {where}")

        try:
            return await self._run(request, options, context, update_progress, check_cancelled)
        except GenerationCancelled as exc:
            context.fail(str(exc))
            return self._failed_result(context, str(exc))
        except MalformedOutlineError as exc:
            context.fail(str(exc))
            return self._failed_result(context, f"Outline generation failed: {exc}")
        except Exception as exc:
            context.fail(str(exc))
            raise

    async def _run(
        self,
        request: PresentationRequest,
        options: GenerationOptions,
        context: GenerationContext,
        update_progress: Callable[..., Any],
        check_cancelled: Callable[[str], None],
    ) -> IterativeGenerationResult:
        perf = context.performance
        errors: List[str] = []

        # Phase 1: outline
        await update_progress(GenerationPhase.OUTLINE, "start", 5, "Starting presentation generation")
        check_cancelled("framework selection")
        with perf.track("framework"):
            recommendation = await self.framework_agent.recommend(
                request.prompt,
                request.audience,
                request.presentation_type.value,
                fast=options.fast_framework,
                context=context,
            )
        framework = get_framework(recommendation.recommendation)
        self._record_feedback(
            context, "framework", not recommendation.is_fallback, framework=framework.id, confidence=recommendation.confidence
        )
        await update_progress(
            GenerationPhase.OUTLINE,
            "framework",
            15,
            f"Using {framework.name} framework ({recommendation.confidence}% confidence)",
        )

        check_cancelled("outline generation")
        with perf.track("outline"):
            outline = await self._generate_outline(request, framework, options, context)
        self._record_feedback(context, "outline", True, slides=len(outline.slides))
        await update_progress(
            GenerationPhase.OUTLINE, "outline", 25, f"Outline generated with {len(outline.slides)} slides"
        )

        outline_score: Optional[int] = None
        if options.validate_outline:
            with perf.track("outline_validation"):
                outline_feedback = await self.validator.validate_outline(
                    outline, request, framework, use_llm=options.use_llm_validation, context=context
                )
            outline_score = outline_feedback.overall_score
            self._record_feedback(
                context, "outline_validation", outline_score >= MIN_OUTLINE_SCORE, score=outline_score
            )
            await update_progress(
                GenerationPhase.OUTLINE,
                "outline_validation",
                30,
                f"Outline validated (score {outline_score})",
                validation_score=outline_score,
            )
        else:
            await update_progress(GenerationPhase.OUTLINE, "outline_validation", 30, "Outline ready")

        # Phase 2: slides, strictly in outline order
        total = len(outline.slides)
        await update_progress(
            GenerationPhase.SLIDES, "slides", 30, f"Generating {total} slides", total_slides=total
        )
        slides: List[Slide] = []
        slide_scores: List[int] = []
        with perf.track("slides"):
            for slide_outline in outline.slides:
                number = slide_outline.slide_number
                check_cancelled(f"slide {number}")
                slide, score, fallback_used = await self._generate_slide(slide_outline, outline, slides, options, context)
                slides.append(slide)
                if fallback_used:
                    errors.append(f"Slide {number} generation failed after retries")
                if score is not None:
                    slide_scores.append(score)
                await update_progress(
                    GenerationPhase.SLIDES,
                    "slide",
                    round(30 + number / total * 50),
                    f"Generated slide {number} of {total}: {slide.title}",
                    slide_number=number,
                    total_slides=total,
                    validation_score=score,
                )

        # Phase 3: assembly, scoring, refinement
        check_cancelled("validation")
        await update_progress(GenerationPhase.VALIDATION, "assembly", 80, "Assembling presentation")
        presentation = self._assemble(outline, slides, request, framework)
        overall_score = self._aggregate_score(outline_score, slide_scores)
        await update_progress(
            GenerationPhase.VALIDATION,
            "scoring",
            85,
            "Presentation assembled",
            validation_score=overall_score,
        )

        refinement: Optional[RefinementResult] = None
        if options.refine and options.validate_slides and options.validation_config.max_refinement_rounds > 0:
            check_cancelled("refinement")
            with perf.track("refinement"):
                refinement = await self._refinement_engine(options).refine(
                    presentation, request, options.validation_config, outline=outline, context=context
                )
            presentation = refinement.final_presentation
            self._record_feedback(
                context,
                "refinement",
                refinement.stop_reason != "error",
                stop_reason=refinement.stop_reason,
                final_score=refinement.final_score,
            )
        await update_progress(
            GenerationPhase.VALIDATION,
            "validation",
            90,
            "Quality review complete",
            validation_score=refinement.final_score if refinement is not None else overall_score,
        )

        # Phase 4: complete
        context.complete(framework=framework.id, overall_score=overall_score)
        await update_progress(GenerationPhase.COMPLETE, "complete", 100, "Presentation generation complete")
        return IterativeGenerationResult(
            success=True,
            generation_id=context.generation_id,
            presentation=presentation,
            outline=outline,
            outline_score=outline_score,
            slide_scores=slide_scores,
            overall_score=overall_score,
            refinement=refinement,
            tokens_used=self._token_usage(context),
            generation_time_ms=self._stage_timings(context),
            fallback_events=list(context.fallback_events),
            errors=errors,
            debug_info=self._debug_info(context, framework, recommendation),
        )

    async def generate_outline(
        self,
        request: PresentationRequest,
        options: GenerationOptions | None = None,
        context: GenerationContext | None = None,
    ) -> Tuple[PresentationOutline, Framework, Optional[ValidationFeedback]]:
        """Select a framework and write the outline without generating slides.

        Raises ``MalformedOutlineError`` when no usable outline comes back.
        """
        options = options or GenerationOptions()
        context = context or GenerationContext()
        with context.performance.track("framework"):
            framework = await self.framework_agent.select_framework(
                request.prompt,
                request.audience,
                request.presentation_type.value,
                fast=options.fast_framework,
                context=context,
            )
        with context.performance.track("outline"):
            outline = await self._generate_outline(request, framework, options, context)
        self._record_feedback(context, "outline", True, slides=len(outline.slides))

        feedback: Optional[ValidationFeedback] = None
        if options.validate_outline:
            with context.performance.track("outline_validation"):
                feedback = await self.validator.validate_outline(
                    outline, request, framework, use_llm=options.use_llm_validation, context=context
                )
            self._record_feedback(
                context, "outline_validation", feedback.overall_score >= MIN_OUTLINE_SCORE, score=feedback.overall_score
            )
        return outline, framework, feedback

    async def evaluate_presentation(
        self,
        presentation: PresentationData,
        options: GenerationOptions | None = None,
        context: GenerationContext | None = None,
    ) -> Tuple[int, List[ValidationFeedback]]:
        """Score every slide of a finished deck against its rebuilt outline."""
        engine = self._refinement_engine(options or GenerationOptions())
        return await engine.evaluate(presentation, outline_from_presentation(presentation), context)

    async def refine_presentation(
        self,
        presentation: PresentationData,
        request: PresentationRequest,
        options: GenerationOptions | None = None,
        context: GenerationContext | None = None,
    ) -> RefinementResult:
        options = options or GenerationOptions()
        context = context or GenerationContext()
        self.slide_writer.clear_cache()
        with context.performance.track("refinement"):
            result = await self._refinement_engine(options).refine(
                presentation, request, options.validation_config, context=context
            )
        self._record_feedback(
            context, "refinement", result.stop_reason != "error", stop_reason=result.stop_reason, final_score=result.final_score
        )
        return result

    def _refinement_engine(self, options: GenerationOptions) -> RefinementEngine:
        return RefinementEngine(
            self.slide_writer,
            self.validator,
            retry_policy=options.retry_policy.with_retries(0),
            use_llm=options.use_llm_validation,
        )

    async def _generate_outline(
        self,
        request: PresentationRequest,
        framework: Framework,
        options: GenerationOptions,
        context: GenerationContext,
    ) -> PresentationOutline:
        feedback: Optional[List[str]] = None
        attempts = options.outline_retries + 1
        attempt = 0
        while True:
            try:
                return await self.outline_agent.generate_outline(request, framework, context=context, feedback=feedback)
            except (MalformedOutlineError, UpstreamAPIError) as exc:
                attempt += 1
                self._record_feedback(context, "outline", False, attempt=attempt, error=str(exc))
                if attempt >= attempts:
                    raise
                logger.warning("Outline attempt %d/%d failed: %s", attempt, attempts, exc)
                if isinstance(exc, MalformedOutlineError):
                    feedback = exc.issues or [str(exc)]
                await options.retry_policy.wait(attempt)

    async def _generate_slide(
        self,
        slide_outline: SlideOutline,
        outline: PresentationOutline,
        prior_slides: List[Slide],
        options: GenerationOptions,
        context: GenerationContext,
    ) -> Tuple[Slide, Optional[int], bool]:
        """Generate one slide and run the local quality gate on it."""
        number = slide_outline.slide_number
        result = await self.slide_writer.generate_slide(
            slide_outline, outline, prior_slides=prior_slides, context=context, retry_policy=options.retry_policy
        )
        best, fallback_used = result.slide, result.fallback_used
        if not options.validate_slides:
            if fallback_used:
                self.slide_writer.record_fallback(context, slide_outline, result)
            return best, (0 if fallback_used else None), fallback_used

        feedback = await self.validator.validate_slide(
            best, slide_outline, outline, use_llm=options.use_llm_validation, context=context
        )
        retries = 0
        while feedback.overall_score < options.min_slide_score and retries < options.max_slide_retries:
            retries += 1
            logger.info(
                "Slide %d scored %d (< %d), retry %d/%d",
                number,
                feedback.overall_score,
                options.min_slide_score,
                retries,
                options.max_slide_retries,
            )
            retry = await self.slide_writer.generate_slide(
                slide_outline,
                outline,
                prior_slides=prior_slides,
                feedback=feedback.describe_issues() + feedback.recommendations,
                context=context,
                retry_policy=options.retry_policy.with_retries(0),
            )
            if retry.fallback_used:
                self.slide_writer.remember(number, best)
                continue
            candidate = await self.validator.validate_slide(
                retry.slide, slide_outline, outline, use_llm=options.use_llm_validation, context=context
            )
            if candidate.overall_score >= feedback.overall_score or (fallback_used and not retry.fallback_used):
                best, feedback, fallback_used = retry.slide, candidate, retry.fallback_used
                result = retry
            else:
                self.slide_writer.remember(number, best)

        self._record_feedback(
            context, "slide", feedback.overall_score >= options.min_slide_score, slide=number, score=feedback.overall_score
        )
        if fallback_used:
            self.slide_writer.record_fallback(context, slide_outline, result)
        return best, (0 if fallback_used else feedback.overall_score), fallback_used

    def _assemble(
        self,
        outline: PresentationOutline,
        slides: List[Slide],
        request: PresentationRequest,
        framework: Framework,
    ) -> PresentationData:
        meta = outline.metadata
        return PresentationData(
            id=f"presentation-{outline.id}",
            title=outline.title,
            subtitle=outline.subtitle,
            description=outline.description,
            metadata=PresentationMetadata(
                author=meta.author,
                created_at=meta.created_at,
                presentation_type=request.presentation_type.value,
                target_audience=request.audience_or_default,
                estimated_duration=sum(slide.metadata.duration_minutes for slide in slides),
                slide_count=len(slides),
                tone=request.tone.value,
                framework=framework.name,
                version=meta.version,
            ),
            slides=slides,
        )

    @staticmethod
    def _aggregate_score(outline_score: Optional[int], slide_scores: List[int]) -> Optional[int]:
        if not slide_scores:
            return outline_score
        slide_mean = sum(slide_scores) / len(slide_scores)
        if outline_score is None:
            return round(slide_mean)
        return round((outline_score + slide_mean) / 2)

    @staticmethod
    def _token_usage(context: GenerationContext) -> dict:
        return {
            "framework": context.tokens_used(FrameworkAgent.name),
            "outline": context.tokens_used(OutlineAgent.name),
            "slides": context.tokens_used(SlideWriterAgent.name),
            "validation": context.tokens_used(ValidationAgent.name),
            "total": context.tokens_used(),
        }

    @staticmethod
    def _stage_timings(context: GenerationContext) -> dict:
        timings = {
            stage: context.performance.total_ms(stage)
            for stage in ("framework", "outline", "outline_validation", "slides", "refinement")
        }
        timings["total"] = context.elapsed_ms
        return timings

    def _debug_info(
        self,
        context: GenerationContext,
        framework: Framework,
        recommendation: FrameworkRecommendation,
    ) -> dict:
        return {
            "frameworkSelected": framework.id,
            "frameworkName": framework.name,
            "frameworkConfidence": recommendation.confidence,
            "frameworkRationale": recommendation.rationale,
            "tokensUsed": context.tokens_used(),
            "llmCalls": context.llm_calls,
            "processingTimeMs": context.elapsed_ms,
            "stageTimings": self._stage_timings(context),
        }

    def _failed_result(self, context: GenerationContext, error: str) -> IterativeGenerationResult:
        return IterativeGenerationResult(
            success=False,
            generation_id=context.generation_id,
            tokens_used=self._token_usage(context),
            generation_time_ms=self._stage_timings(context),
            fallback_events=list(context.fallback_events),
            errors=[error],
            debug_info={
                "tokensUsed": context.tokens_used(),
                "llmCalls": context.llm_calls,
                "processingTimeMs": context.elapsed_ms,
            },
        )
