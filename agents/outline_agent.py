from __future__ import annotations

import logging
import math
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from agents.base_agent import BaseAgent
from manager.telemetry import GenerationContext
from parsing.json_repair import MalformedOutputError, parse_json
from schemas.framework import Framework
from schemas.outline import PresentationOutline, SlideType
from schemas.request import PresentationRequest
from validators.outline_validator import validate_outline_structure

logger = logging.getLogger(__name__)

TOKEN_ESTIMATES: Dict[str, int] = {
    "title": 300,
    "problem": 600,
    "solution": 700,
    "benefits": 500,
    "implementation": 600,
    "framework": 800,
    "timeline": 500,
    "conclusion": 400,
    "chart": 600,
    "table": 700,
    "custom": 500,
}
DEFAULT_TOKEN_ESTIMATE = 500
MINUTES_PER_SLIDE = 2.5

PRESENTATION_TYPE_FOCUS: Dict[str, str] = {
    "business": "Business value, ROI, strategic alignment, stakeholder benefits",
    "technical": "Architecture, implementation details, technical feasibility, standards",
    "process": "Workflow optimization, efficiency gains, process improvements",
    "transformation": "Organizational change, strategy, transformation roadmap, change management",
    "pov": "A clear point of view backed by evidence, with implications for the audience",
    "custom": "Tailored to specific requirements and context",
}

TONE_MODIFIERS: Dict[str, str] = {
    "professional": "Formal business language, executive-ready, polished",
    "conversational": "Engaging, approachable, discussion-friendly",
    "technical": "Precise, detailed, technically accurate",
    "executive": "High-level, strategic, decision-focused",
}


class MalformedOutlineError(MalformedOutputError):
    """The outline response could not be parsed or is structurally invalid."""

    def __init__(self, message: str, raw_text: str = "", issues: Optional[List[str]] = None) -> None:
        super().__init__(message, raw_text=raw_text, attempts=issues)
        self.issues = issues or []


def _has_slides(value: Any) -> bool:
    return isinstance(value, dict) and isinstance(value.get("slides"), list)


def _as_int(value: Any, default: int) -> int:
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return default


class OutlineAgent(BaseAgent):
    name = "outline_generator"

    def build_prompt(
        self,
        request: PresentationRequest,
        framework: Framework,
        feedback: Optional[List[str]] = None,
    ) -> str:
        return self.render_prompt(
            "outline.jinja",
            request=request,
            framework=framework,
            audience=request.audience_or_default,
            guidance={"focus": PRESENTATION_TYPE_FOCUS.get(request.presentation_type.value, "")},
            tone_modifier=TONE_MODIFIERS.get(request.tone.value, ""),
            outline_id=f"outline-{int(time.time() * 1000)}",
            created_at=datetime.now(timezone.utc).isoformat(),
            estimated_duration=math.ceil(request.slide_count * MINUTES_PER_SLIDE),
            slide_types=[slide_type.value for slide_type in SlideType],
            feedback=feedback or [],
        )

    async def generate_outline(
        self,
        request: PresentationRequest,
        framework: Framework,
        context: GenerationContext | None = None,
        feedback: Optional[List[str]] = None,
    ) -> PresentationOutline:
        prompt = self.build_prompt(request, framework, feedback)
        logger.info("Generating %d-slide outline with %s framework", request.slide_count, framework.name)
        completion = await self.call_llm(prompt, "outline", context)
        return self.parse_outline(completion.text, request, framework)

    def parse_outline(self, text: str, request: PresentationRequest, framework: Framework) -> PresentationOutline:
        try:
            result = parse_json(text, accept=_has_slides)
        except MalformedOutputError as exc:
            raise MalformedOutlineError(
                f"Failed to parse outline response: {exc}", raw_text=text, issues=exc.attempts
            ) from exc

        data = result.value
        ok, issues = validate_outline_structure(data, request.slide_count)
        if not ok:
            raise MalformedOutlineError("Invalid outline structure: " + " ".join(issues), raw_text=text, issues=issues)

        outline = self._normalize_llm_outline(data, request, framework, raw_text=text)
        self.add_token_estimates(outline)
        logger.info(
            "Outline '%s' parsed via %s (%d slides, ~%d tokens)",
            outline.title,
            result.strategy,
            len(outline.slides),
            outline.estimated_total_tokens,
        )
        return outline

    def _normalize_llm_outline(
        self,
        data: Dict[str, Any],
        request: PresentationRequest,
        framework: Framework,
        raw_text: str = "",
    ) -> PresentationOutline:
        raw_meta = data.get("metadata") or {}
        slide_count = len(data["slides"])
        metadata = {
            "author": raw_meta.get("author") or "AI Generated",
            "created_at": raw_meta.get("created_at") or datetime.now(timezone.utc).isoformat(),
            "presentation_type": request.presentation_type.value,
            "target_audience": raw_meta.get("target_audience") or request.audience_or_default,
            "tone": request.tone.value,
            "framework": framework.name,
            "slide_count": slide_count,
            "estimated_duration": _as_int(
                raw_meta.get("estimated_duration"), math.ceil(slide_count * MINUTES_PER_SLIDE)
            ),
            "version": str(raw_meta.get("version") or "1.0"),
        }
        # Position in the array is authoritative for numbering.
        slides = [{**raw, "slideNumber": index} for index, raw in enumerate(data["slides"], start=1)]
        structure = data.get("frameworkStructure") if isinstance(data.get("frameworkStructure"), dict) else None

        payload = {
            "id": str(data.get("id") or f"outline-{int(time.time() * 1000)}"),
            "title": str(data["title"]),
            "subtitle": str(data.get("subtitle") or ""),
            "description": str(data.get("description") or ""),
            "metadata": metadata,
            "slides": slides,
            "frameworkStructure": structure,
        }
        try:
            return PresentationOutline.model_validate(payload)
        except ValidationError as exc:
            raise MalformedOutlineError(
                f"Invalid outline structure: {exc.error_count()} field errors", raw_text=raw_text, issues=[str(exc)]
            ) from exc

    def add_token_estimates(self, outline: PresentationOutline) -> None:
        total = 0
        for slide in outline.slides:
            slide.estimated_tokens = TOKEN_ESTIMATES.get(slide.type.value, DEFAULT_TOKEN_ESTIMATE)
            total += slide.estimated_tokens
        outline.estimated_total_tokens = total
