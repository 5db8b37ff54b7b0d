from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

from pydantic import ValidationError

from agents.base_agent import BaseAgent
from manager.retry import RetryPolicy
from manager.telemetry import GenerationContext
from parsing.json_repair import MalformedOutputError, parse_balanced, parse_direct, parse_json, parse_with_heuristics
from schemas.outline import PresentationOutline, SlideOutline
from schemas.slide import (
    FALLBACK_CALLOUT,
    Slide,
    SlideLayout,
    SlideMetadata,
    TitleContentContent,
    default_layout_for,
)

logger = logging.getLogger(__name__)

# Truncation recovery is only worth it for the outline.
SLIDE_STRATEGIES = (parse_direct, parse_with_heuristics, parse_balanced)

LAYOUT_FIELDS: Dict[SlideLayout, str] = {
    SlideLayout.TITLE_ONLY: '{"mainText": "one-line value statement", "callout": "optional"}',
    SlideLayout.TITLE_CONTENT: '{"mainText": "...", "bulletPoints": ["..."], "sections": [{"title": "...", "description": "...", "items": ["..."]}], "callout": "optional"}',
    SlideLayout.TWO_COLUMN: '{"mainText": "optional", "sections": [{"title": "Left", "description": "...", "items": ["..."]}, {"title": "Right", "description": "...", "items": ["..."]}], "callout": "optional"}',
    SlideLayout.BULLET_LIST: '{"mainText": "optional", "bulletPoints": ["..."], "callout": "optional"}',
    SlideLayout.CENTERED: '{"mainText": "...", "bulletPoints": ["..."], "quote": "optional", "callout": "optional"}',
    SlideLayout.DIAGRAM: '{"mainText": "optional", "diagram": {"type": "flow|hierarchy|process|comparison", "elements": [{"id": "e1", "label": "...", "description": "...", "connections": ["e2"]}]}, "callout": "optional"}',
    SlideLayout.METRICS: '{"mainText": "optional", "keyMetrics": [{"label": "...", "value": "...", "description": "...", "trend": "up|down|stable"}], "callout": "optional"}',
    SlideLayout.CHART: '{"mainText": "optional", "chart": {"type": "bar|line|area|pie|donut|radar|scatter", "data": [{"name": "Q1", "value": 10}], "title": "..."}}',
    SlideLayout.CIRCLE: '{"mainText": "...", "sections": [{"title": "...", "description": "..."}], "callout": "optional"}',
    SlideLayout.DIAMOND: '{"mainText": "...", "sections": [{"title": "...", "description": "..."}], "callout": "optional"}',
    SlideLayout.TABLE: '{"table": {"headers": ["A", "B"], "rows": [["a1", "b1"]], "title": "optional"}} (every row has exactly one cell per header)',
    SlideLayout.TIMELINE: '{"mainText": "optional", "timeline": {"events": [{"id": "t1", "title": "...", "description": "...", "date": "...", "status": "completed|current|upcoming"}]}}',
}


@dataclass
class SlideGenerationResult:
    slide: Slide
    tokens_used: int
    duration_ms: int
    retry_count: int
    fallback_used: bool = False
    error: Optional[str] = None


def create_fallback_slide(slide_outline: SlideOutline) -> Slide:
    """Deterministic placeholder used when every generation attempt failed."""
    number = slide_outline.slide_number
    purpose = slide_outline.purpose.strip()
    return Slide(
        id=f"slide-{number}",
        type=slide_outline.type,
        title=slide_outline.title.strip() or f"Slide {number}",
        layout=SlideLayout.TITLE_CONTENT,
        content=TitleContentContent(
            main_text=purpose or "This slide requires manual content creation",
            bullet_points=list(slide_outline.key_points),
            callout=FALLBACK_CALLOUT,
        ),
        metadata=SlideMetadata(
            speaker_notes=purpose or "This slide was created as a fallback due to generation failure",
            duration_minutes=2,
            audience_level="general",
        ),
    )


def _coerce_layout(value: Any, default: SlideLayout) -> SlideLayout:
    try:
        return SlideLayout(str(value or "").strip().lower())
    except ValueError:
        return default


def _as_title_content(content: Dict[str, Any], slide_outline: SlideOutline) -> Dict[str, Any]:
    bullets = content.get("bulletPoints") or content.get("bullet_points") or slide_outline.key_points
    if isinstance(bullets, str):
        bullets = [bullets]
    return {
        "mainText": str(content.get("mainText") or content.get("main_text") or slide_outline.purpose),
        "bulletPoints": [str(item) for item in bullets if item] if isinstance(bullets, list) else [],
        "callout": content.get("callout") if isinstance(content.get("callout"), str) else None,
    }


class SlideWriterAgent(BaseAgent):
    name = "slide_generator"

    def __init__(
        self,
        llm_client: Any | None = None,
        retry_policy: RetryPolicy | None = None,
        context_window_size: int = 2,
        **kwargs: Any,
    ) -> None:
        super().__init__(llm_client=llm_client, **kwargs)
        self.retry_policy = retry_policy or RetryPolicy()
        self.context_window_size = context_window_size
        self._generated: Dict[int, Slide] = {}

    @property
    def generated_slides(self) -> List[Slide]:
        return [self._generated[number] for number in sorted(self._generated)]

    def clear_cache(self) -> None:
        self._generated.clear()

    def remember(self, slide_number: int, slide: Slide) -> None:
        self._generated[slide_number] = slide

    def context_window(self, slide_number: int, prior_slides: Sequence[Slide] | None = None) -> List[Slide]:
        if self.context_window_size <= 0:
            return []
        if prior_slides is not None:
            earlier = list(prior_slides)
        else:
            earlier = [self._generated[n] for n in sorted(self._generated) if n < slide_number]
        return earlier[-self.context_window_size :]

    def build_prompt(
        self,
        slide_outline: SlideOutline,
        outline: PresentationOutline,
        previous_slides: Sequence[Slide],
        feedback: Optional[List[str]] = None,
    ) -> str:
        layout = default_layout_for(slide_outline.type)
        return self.render_prompt(
            "slide.jinja",
            slide=slide_outline,
            outline=outline,
            previous_slides=previous_slides,
            layout=layout.value,
            layout_fields=LAYOUT_FIELDS[layout],
            feedback=feedback or [],
        )

    async def generate_slide(
        self,
        slide_outline: SlideOutline,
        outline: PresentationOutline,
        prior_slides: Sequence[Slide] | None = None,
        feedback: Optional[List[str]] = None,
        context: GenerationContext | None = None,
        retry_policy: RetryPolicy | None = None,
    ) -> SlideGenerationResult:
        policy = retry_policy or self.retry_policy
        number = slide_outline.slide_number
        window = self.context_window(number, prior_slides)
        prompt = self.build_prompt(slide_outline, outline, window, feedback)

        start = time.perf_counter()
        tokens_used = 0
        last_error: Optional[str] = None

        for attempt in range(policy.max_attempts):
            if attempt:
                logger.info("Retrying slide %d (attempt %d/%d)", number, attempt + 1, policy.max_attempts)
                await policy.wait(attempt)
            try:
                completion = await self.call_llm(prompt, "generation", context)
                tokens_used += completion.tokens_used
                slide = self.parse_slide(completion.text, slide_outline)
            except Exception as exc:  # noqa: BLE001
                last_error = str(exc)
                logger.warning(
                    "Slide %d generation attempt %d/%d failed: %s", number, attempt + 1, policy.max_attempts, exc
                )
                continue

            self.remember(number, slide)
            return SlideGenerationResult(
                slide=slide,
                tokens_used=tokens_used,
                duration_ms=int((time.perf_counter() - start) * 1000),
                retry_count=attempt,
            )

        slide = create_fallback_slide(slide_outline)
        self.remember(number, slide)
        return SlideGenerationResult(
            slide=slide,
            tokens_used=tokens_used,
            duration_ms=int((time.perf_counter() - start) * 1000),
            retry_count=policy.max_retries,
            fallback_used=True,
            error=last_error,
        )

    def record_fallback(
        self, context: GenerationContext, slide_outline: SlideOutline, result: SlideGenerationResult
    ) -> None:
        """Log a placeholder slide that ends up in the deck."""
        number = slide_outline.slide_number
        context.record_fallback(
            component=self.name,
            reason=f"Slide {number} generation failed after {result.retry_count + 1} attempts: {result.error}",
            fallback_method="fallback slide",
            impact="moderate",
            user_message=f"Slide {number} needs manual content.",
            slide_number=number,
        )

    def parse_slide(self, text: str, slide_outline: SlideOutline) -> Slide:
        value = parse_json(text, strategies=SLIDE_STRATEGIES).value
        if isinstance(value, list):
            if not value:
                raise MalformedOutputError("Model returned an empty slide array", raw_text=text)
            value = value[0]
        if isinstance(value, dict) and isinstance(value.get("slides"), list) and value["slides"]:
            value = value["slides"][0]
        if not isinstance(value, dict):
            raise MalformedOutputError("Model did not return a slide object", raw_text=text)
        return self._normalize_llm_slide(value, slide_outline)

    def _normalize_llm_slide(self, raw: Dict[str, Any], slide_outline: SlideOutline) -> Slide:
        number = slide_outline.slide_number
        layout = _coerce_layout(raw.get("layout"), default_layout_for(slide_outline.type))
        content = raw.get("content") if isinstance(raw.get("content"), dict) else {}
        raw_meta = raw.get("metadata") if isinstance(raw.get("metadata"), dict) else {}
        metadata = {
            "speaker_notes": slide_outline.purpose,
            "duration_minutes": 2,
            "audience_level": "general",
            **{key: value for key, value in raw_meta.items() if value not in (None, "")},
        }
        payload = {
            "id": str(raw.get("id") or f"slide-{number}"),
            "type": raw.get("type") or slide_outline.type.value,
            "title": str(raw.get("title") or slide_outline.title),
            "subtitle": raw.get("subtitle") if isinstance(raw.get("subtitle"), str) and raw.get("subtitle") else None,
            "layout": layout.value,
            "content": content,
            "metadata": metadata,
        }
        try:
            return Slide.model_validate(payload)
        except ValidationError as exc:
            logger.warning(
                "Slide %d content does not fit layout '%s' (%d errors); using title-content",
                number,
                layout.value,
                exc.error_count(),
            )
        payload["layout"] = SlideLayout.TITLE_CONTENT.value
        payload["content"] = _as_title_content(content, slide_outline)
        return Slide.model_validate(payload)
