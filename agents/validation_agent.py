from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional

from agents.base_agent import BaseAgent
from manager.telemetry import GenerationContext
from schemas.feedback import ValidationFeedback, ValidationIssue, clamp_score
from schemas.framework import Framework
from schemas.outline import PresentationOutline, SlideOutline
from schemas.request import PresentationRequest
from schemas.slide import Slide
from validators.outline_validator import score_outline
from validators.slide_validator import score_slide

logger = logging.getLogger(__name__)

OUTLINE_RUBRIC_KEYS = {
    "frameworkAlignment": "framework_alignment",
    "logicalFlow": "logical_flow",
    "audienceSuitability": "audience_suitability",
    "completeness": "completeness",
}
SLIDE_RUBRIC_KEYS = {
    "contentQuality": "content_quality",
    "readability": "readability",
    "visualHierarchy": "visual_hierarchy",
    "alignment": "alignment",
}


class ValidationAgent(BaseAgent):
    """Scores outlines and slides. Never raises; validation is advisory."""

    name = "validation"
    rule_weight: float = 0.5

    async def validate_outline(
        self,
        outline: PresentationOutline,
        request: PresentationRequest,
        framework: Framework,
        use_llm: bool = True,
        context: GenerationContext | None = None,
    ) -> ValidationFeedback:
        try:
            rules = score_outline(outline, request)
            if not use_llm:
                return rules
            prompt = self.render_prompt(
                "outline_review.jinja",
                request=request,
                audience=request.audience_or_default,
                framework=framework,
                outline_json=json.dumps(outline.to_json(), indent=2),
            )
            rubric = await self._run_llm_rubric(prompt, OUTLINE_RUBRIC_KEYS, context)
            return rules if rubric is None else self._blend(rules, rubric)
        except Exception as exc:  # noqa: BLE001
            return self._neutral("outline", exc, context)

    async def validate_slide(
        self,
        slide: Slide,
        slide_outline: SlideOutline,
        outline: PresentationOutline,
        use_llm: bool = True,
        context: GenerationContext | None = None,
    ) -> ValidationFeedback:
        try:
            rules = score_slide(slide, slide_outline)
            if not use_llm:
                return rules
            prompt = self.render_prompt(
                "slide_review.jinja",
                outline=outline,
                slide_outline=slide_outline,
                slide_json=json.dumps(slide.to_json(), indent=2),
            )
            rubric = await self._run_llm_rubric(prompt, SLIDE_RUBRIC_KEYS, context)
            return rules if rubric is None else self._blend(rules, rubric)
        except Exception as exc:  # noqa: BLE001
            return self._neutral(f"slide {slide_outline.slide_number}", exc, context)

    async def _run_llm_rubric(
        self,
        prompt: str,
        keys: Dict[str, str],
        context: GenerationContext | None,
    ) -> Optional[ValidationFeedback]:
        try:
            completion = await self.call_llm(prompt, "validation", context)
            return self._normalize_llm_rubric(self.validate_json(completion.text), keys, completion.tokens_used)
        except Exception as exc:  # noqa: BLE001
            logger.warning("LLM rubric unavailable, using rule score only: %s", exc)
            return None

    def _normalize_llm_rubric(self, payload: Dict[str, Any], keys: Dict[str, str], tokens_used: int) -> ValidationFeedback:
        dimensions: Dict[str, int] = {}
        for wire_key, name in keys.items():
            raw = payload.get(wire_key, payload.get(name))
            if isinstance(raw, dict):
                raw = raw.get("score")
            if raw is not None:
                dimensions[name] = clamp_score(raw)
        if not dimensions:
            raise ValueError("Rubric response contained no dimension scores")

        overall = payload.get("overallScore")
        if overall is None:
            overall = sum(dimensions.values()) / len(dimensions)

        issues: List[ValidationIssue] = []
        for item in payload.get("issues") or []:
            if isinstance(item, dict) and item.get("description"):
                issues.append(ValidationIssue.model_validate(item))
            elif isinstance(item, str) and item.strip():
                issues.append(ValidationIssue(description=item.strip()))

        recommendations = [str(item) for item in payload.get("recommendations") or [] if item]
        return ValidationFeedback(
            overall_score=overall,
            dimensions=dimensions,
            issues=issues,
            recommendations=recommendations,
            source="llm",
            tokens_used=tokens_used,
        )

    def _blend(self, rules: ValidationFeedback, rubric: ValidationFeedback) -> ValidationFeedback:
        weight = self.rule_weight
        dimensions = dict(rules.dimensions)
        for name, score in rubric.dimensions.items():
            dimensions[name] = round(dimensions.get(name, score) * weight + score * (1 - weight))
        return ValidationFeedback(
            overall_score=rules.overall_score * weight + rubric.overall_score * (1 - weight),
            dimensions=dimensions,
            issues=rules.issues + rubric.issues,
            recommendations=rules.recommendations + rubric.recommendations,
            source="blended",
            tokens_used=rubric.tokens_used,
        )

    def _neutral(self, subject: str, exc: Exception, context: GenerationContext | None) -> ValidationFeedback:
        reason = f"Validation of {subject} failed: {exc}"
        logger.warning("Validation of %s failed: %s", subject, exc)
        if context is not None:
            context.record_fallback(
                component=self.name,
                reason=reason,
                fallback_method="neutral score",
                impact="none",
                user_message="Quality score unavailable; a neutral score was used.",
            )
        return ValidationFeedback.neutral(reason)
