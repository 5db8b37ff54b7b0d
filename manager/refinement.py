from __future__ import annotations

import logging
import time
from typing import Any, List, Optional, Tuple

from manager.retry import RetryPolicy
from manager.telemetry import GenerationContext
from schemas.feedback import NEUTRAL_SCORE, ValidationFeedback
from schemas.outline import OutlineMetadata, PresentationOutline, SlideOutline
from schemas.presentation import PresentationData, RefinementResult, RefinementRound
from schemas.request import PresentationRequest, ValidationConfig
from schemas.slide import Slide

logger = logging.getLogger(__name__)

MAX_SLIDES_PER_ROUND = 2


def outline_from_presentation(presentation: PresentationData) -> PresentationOutline:
    """Rebuild a minimal outline when only the finished deck is available."""
    slides = []
    for number, slide in enumerate(presentation.slides, start=1):
        bullets = getattr(slide.content, "bullet_points", [])
        slides.append(
            SlideOutline(
                slide_number=number,
                type=slide.type,
                title=slide.title,
                purpose=slide.metadata.speaker_notes or slide.content.main_text or slide.title,
                key_points=bullets,
            )
        )
    meta = presentation.metadata
    return PresentationOutline(
        id=presentation.id,
        title=presentation.title,
        subtitle=presentation.subtitle,
        description=presentation.description,
        metadata=OutlineMetadata(
            presentation_type=meta.presentation_type,
            target_audience=meta.target_audience,
            tone=meta.tone or "",
            framework=meta.framework or "",
            slide_count=len(slides),
        ),
        slides=slides,
    )


def mean_score(feedback: List[ValidationFeedback]) -> int:
    if not feedback:
        return NEUTRAL_SCORE
    return round(sum(item.overall_score for item in feedback) / len(feedback))


class RefinementEngine:
    """Deck-level quality loop run after every slide exists.

    Each round scores all slides, then regenerates the weakest ones with
    their validator issues as prompt feedback. The loop ends when the
    target is reached, when a round improves less than the configured
    minimum, or when the round budget runs out.
    """

    def __init__(
        self,
        slide_writer: Any,
        validator: Any,
        retry_policy: RetryPolicy | None = None,
        use_llm: bool = True,
        max_slides_per_round: int = MAX_SLIDES_PER_ROUND,
    ) -> None:
        self.slide_writer = slide_writer
        self.validator = validator
        self.retry_policy = retry_policy or RetryPolicy()
        self.use_llm = use_llm
        self.max_slides_per_round = max_slides_per_round

    async def evaluate(
        self,
        presentation: PresentationData,
        outline: PresentationOutline,
        context: GenerationContext | None = None,
    ) -> Tuple[int, List[ValidationFeedback]]:
        feedback = []
        for index, slide in enumerate(presentation.slides):
            feedback.append(
                await self.validator.validate_slide(
                    slide, outline.slide(index + 1), outline, use_llm=self.use_llm, context=context
                )
            )
        return mean_score(feedback), feedback

    async def refine(
        self,
        presentation: PresentationData,
        request: PresentationRequest,
        config: ValidationConfig | None = None,
        outline: PresentationOutline | None = None,
        context: GenerationContext | None = None,
    ) -> RefinementResult:
        config = config or ValidationConfig()
        start = time.perf_counter()
        calls_before = context.llm_calls if context is not None else 0
        try:
            return await self._run_rounds(presentation, request, config, outline, context, start, calls_before)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Refinement failed, keeping the unrefined presentation: %s", exc)
            if context is not None:
                context.record_fallback(
                    component="refinement",
                    reason=f"Refinement failed: {exc}",
                    fallback_method="unrefined presentation",
                    impact="minor",
                    user_message="Automatic refinement was skipped.",
                )
            return RefinementResult(
                final_presentation=presentation,
                initial_score=NEUTRAL_SCORE,
                final_score=NEUTRAL_SCORE,
                total_improvement=0,
                stop_reason="error",
                total_duration_ms=int((time.perf_counter() - start) * 1000),
                llm_calls=self._calls_since(context, calls_before),
            )

    async def _run_rounds(
        self,
        presentation: PresentationData,
        request: PresentationRequest,
        config: ValidationConfig,
        outline: PresentationOutline | None,
        context: GenerationContext | None,
        start: float,
        calls_before: int,
    ) -> RefinementResult:
        outline = outline or outline_from_presentation(presentation)
        target = config.target_quality_score
        current = presentation
        history: List[RefinementRound] = []
        initial_score: Optional[int] = None
        previous_score: Optional[int] = None
        score = NEUTRAL_SCORE
        stop_reason = "max_rounds"

        for round_number in range(1, config.max_refinement_rounds + 1):
            round_start = time.perf_counter()
            score, feedback = await self.evaluate(current, outline, context)
            if initial_score is None:
                initial_score = score
            before = score if previous_score is None else previous_score
            improvement = score - before
            logger.info("Refinement round %d for '%s': score %d (target %d)", round_number, request.prompt[:60], score, target)

            stop: Optional[str] = None
            if score >= target:
                stop = "target_achieved"
            elif previous_score is not None and improvement < config.minimum_improvement:
                stop = "plateau"
            elif round_number == config.max_refinement_rounds:
                stop = "max_rounds"

            changes: List[str] = []
            addressed = 0
            if stop is None:
                current, changes, addressed = await self._revise_weakest(current, outline, feedback, target, context)

            history.append(
                RefinementRound(
                    round=round_number,
                    before_score=before,
                    after_score=score,
                    improvement=improvement,
                    issues_addressed=addressed,
                    changes_made=changes,
                    duration_ms=int((time.perf_counter() - round_start) * 1000),
                    success=stop != "plateau",
                )
            )
            previous_score = score
            if stop is not None:
                stop_reason = stop
                break

        if initial_score is None:
            # Zero-round budget: report the deck as it stands.
            score, _ = await self.evaluate(current, outline, context)
            initial_score = score

        logger.info("Refinement finished after %d rounds (%s): %d -> %d", len(history), stop_reason, initial_score, score)
        return RefinementResult(
            final_presentation=current,
            initial_score=initial_score,
            final_score=score,
            total_improvement=score - initial_score,
            history=history,
            target_achieved=score >= target,
            stop_reason=stop_reason,
            total_duration_ms=int((time.perf_counter() - start) * 1000),
            llm_calls=self._calls_since(context, calls_before),
        )

    async def _revise_weakest(
        self,
        presentation: PresentationData,
        outline: PresentationOutline,
        feedback: List[ValidationFeedback],
        target: int,
        context: GenerationContext | None,
    ) -> Tuple[PresentationData, List[str], int]:
        ranked = sorted(
            (index for index, item in enumerate(feedback) if item.overall_score < target),
            key=lambda index: feedback[index].overall_score,
        )[: self.max_slides_per_round]

        changes: List[str] = []
        addressed = 0
        for index in ranked:
            number = index + 1
            old_slide: Slide = presentation.slides[index]
            old_feedback = feedback[index]
            notes = old_feedback.describe_issues() + old_feedback.recommendations
            result = await self.slide_writer.generate_slide(
                outline.slide(number),
                outline,
                prior_slides=presentation.slides[:index],
                feedback=notes,
                context=context,
                retry_policy=self.retry_policy,
            )
            if result.fallback_used:
                self.slide_writer.remember(number, old_slide)
                changes.append(f"Slide {number}: regeneration failed, kept original")
                continue

            new_feedback = await self.validator.validate_slide(
                result.slide, outline.slide(number), outline, use_llm=self.use_llm, context=context
            )
            if new_feedback.overall_score >= old_feedback.overall_score:
                presentation = presentation.replace_slide(index, result.slide)
                addressed += len(old_feedback.issues)
                changes.append(
                    f"Slide {number}: regenerated ({old_feedback.overall_score} -> {new_feedback.overall_score})"
                )
            else:
                self.slide_writer.remember(number, old_slide)
                changes.append(
                    f"Slide {number}: kept original, replacement scored {new_feedback.overall_score}"
                )
        return presentation, changes, addressed

    @staticmethod
    def _calls_since(context: GenerationContext | None, calls_before: int) -> int:
        return context.llm_calls - calls_before if context is not None else 0
