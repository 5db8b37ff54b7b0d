from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from agents.base_agent import BaseAgent
from manager.telemetry import GenerationContext
from schemas.framework import (
    DEFAULT_FRAMEWORK_ID,
    Framework,
    FrameworkRecommendation,
    all_frameworks,
    framework_priority,
    get_framework,
)

logger = logging.getLogger(__name__)

# A fallback never claims more confidence than this.
FALLBACK_CONFIDENCE_CAP = 60

# (keywords, framework, confidence), first match wins.
_PROMPT_RULES = [
    (("case study", "results", "achievement"), "star", 85),
    (("compare", "vendor", "options"), "comparison", 90),
]
_AUDIENCE_RULE = (("executive", "c-level", "board"), "pyramid", 80)
_PERSUASION_RULE = (("recommend", "convince", "propose", "argument"), "prep", 75)


def match_framework_id(recommendation: str) -> Optional[str]:
    """Case-insensitive substring match over the catalog priority list."""
    text = (recommendation or "").lower()
    for framework_id in framework_priority():
        if framework_id in text:
            return framework_id
    return None


class FrameworkAgent(BaseAgent):
    name = "framework_selector"

    def quick_select(self, topic: str, audience: str | None, presentation_type: str | None) -> FrameworkRecommendation:
        prompt = (topic or "").lower()
        who = (audience or "").lower()
        kind = (presentation_type or "").lower()

        for keywords, framework_id, confidence in _PROMPT_RULES:
            if any(keyword in prompt for keyword in keywords):
                return FrameworkRecommendation(
                    recommendation=framework_id,
                    confidence=confidence,
                    rationale=f"Topic mentions {', '.join(k for k in keywords if k in prompt)}",
                )

        keywords, framework_id, confidence = _AUDIENCE_RULE
        if any(keyword in who for keyword in keywords) or kind == "pov":
            return FrameworkRecommendation(
                recommendation=framework_id,
                confidence=confidence,
                rationale="Senior audience benefits from conclusion-first structure",
            )

        keywords, framework_id, confidence = _PERSUASION_RULE
        if any(keyword in prompt for keyword in keywords):
            return FrameworkRecommendation(
                recommendation=framework_id,
                confidence=confidence,
                rationale="Persuasive intent suits point-reason-example-point",
            )

        return FrameworkRecommendation(
            recommendation=DEFAULT_FRAMEWORK_ID,
            confidence=70,
            rationale="General problem-solving presentation",
        )

    async def analyze(
        self,
        topic: str,
        audience: str | None,
        presentation_type: str | None,
        context: GenerationContext | None = None,
    ) -> FrameworkRecommendation:
        try:
            prompt = self.render_prompt(
                "framework_analysis.jinja",
                topic=topic,
                audience=audience or "General business audience",
                presentation_type=presentation_type or "custom",
                frameworks=all_frameworks(),
            )
            completion = await self.call_llm(prompt, "analysis", context)
            return self._normalize_llm_recommendation(self.validate_json(completion.text))
        except Exception as exc:  # noqa: BLE001
            return self._fallback(f"Framework analysis failed: {exc}", context)

    def _normalize_llm_recommendation(self, payload: Dict[str, Any]) -> FrameworkRecommendation:
        raw = str(payload.get("recommendation") or payload.get("framework") or "")
        framework_id = match_framework_id(raw)
        if framework_id is None:
            raise ValueError(f"Unknown framework recommendation '{raw}'")
        return FrameworkRecommendation(
            recommendation=framework_id,
            confidence=payload.get("confidence", 70),
            rationale=str(payload.get("rationale") or ""),
        )

    def _fallback(self, reason: str, context: GenerationContext | None) -> FrameworkRecommendation:
        logger.warning("%s. Using default framework '%s'.", reason, DEFAULT_FRAMEWORK_ID)
        if context is not None:
            context.record_fallback(
                component=self.name,
                reason=reason,
                fallback_method=f"default framework '{DEFAULT_FRAMEWORK_ID}'",
                impact="minor",
                user_message="The default narrative framework was used.",
            )
        return FrameworkRecommendation(
            recommendation=DEFAULT_FRAMEWORK_ID,
            confidence=FALLBACK_CONFIDENCE_CAP,
            rationale=f"Fallback: {reason}",
            is_fallback=True,
        )

    async def recommend(
        self,
        topic: str,
        audience: str | None,
        presentation_type: str | None,
        fast: bool = False,
        context: GenerationContext | None = None,
    ) -> FrameworkRecommendation:
        if fast:
            return self.quick_select(topic, audience, presentation_type)
        return await self.analyze(topic, audience, presentation_type, context)

    async def select_framework(
        self,
        topic: str,
        audience: str | None,
        presentation_type: str | None,
        fast: bool = False,
        context: GenerationContext | None = None,
    ) -> Framework:
        recommendation = await self.recommend(topic, audience, presentation_type, fast=fast, context=context)
        return get_framework(recommendation.recommendation)
