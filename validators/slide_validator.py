from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Tuple

from schemas.feedback import ValidationFeedback, ValidationIssue
from schemas.outline import SlideOutline, SlideType
from schemas.slide import (
    FALLBACK_CALLOUT,
    BulletListContent,
    CenteredContent,
    ChartContent,
    CircleContent,
    DiagramContent,
    DiamondContent,
    MetricsContent,
    Section,
    Slide,
    TableContent,
    TimelineContent,
    TitleContentContent,
    TitleOnlyContent,
    TwoColumnContent,
)

SLIDE_DIMENSIONS = ("content_quality", "readability", "visual_hierarchy", "alignment")
MIN_SLIDE_SCORE = 60
PLACEHOLDER_SCORE_CAP = 30


@dataclass
class ContentSummary:
    main_text: str = ""
    callout: str = ""
    bullets: List[str] = field(default_factory=list)
    sections: List[Section] = field(default_factory=list)
    metrics: int = 0
    timeline_events: int = 0
    diagram_elements: int = 0
    chart_points: int = 0
    table_rows: int = 0

    @property
    def is_empty(self) -> bool:
        return not (
            self.main_text
            or self.bullets
            or self.sections
            or self.metrics
            or self.timeline_events
            or self.diagram_elements
            or self.chart_points
            or self.table_rows
        )


def summarize_content(slide: Slide) -> ContentSummary:
    content = slide.content
    summary = ContentSummary(main_text=(content.main_text or "").strip(), callout=(content.callout or "").strip())

    if isinstance(content, TitleOnlyContent):
        pass
    elif isinstance(content, TitleContentContent):
        summary.bullets = list(content.bullet_points)
        summary.sections = list(content.sections)
    elif isinstance(content, (BulletListContent, CenteredContent)):
        summary.bullets = list(content.bullet_points)
    elif isinstance(content, (TwoColumnContent, CircleContent, DiamondContent)):
        summary.sections = list(content.sections)
    elif isinstance(content, DiagramContent):
        summary.diagram_elements = len(content.diagram.elements)
    elif isinstance(content, MetricsContent):
        summary.metrics = len(content.key_metrics)
    elif isinstance(content, ChartContent):
        summary.chart_points = len(content.chart.data)
    elif isinstance(content, TableContent):
        summary.table_rows = len(content.table.rows)
    elif isinstance(content, TimelineContent):
        summary.timeline_events = len(content.timeline.events)
    else:
        raise TypeError(f"Unhandled slide content variant: {type(content).__name__}")
    return summary


def estimate_cognitive_load(slide: Slide) -> Tuple[int, str]:
    summary = summarize_content(slide)
    load = len(summary.bullets) + 2 * len(summary.sections) + summary.metrics
    load += summary.timeline_events + summary.diagram_elements
    if summary.chart_points:
        load += 3
    if summary.table_rows:
        load += 4
    if load <= 5:
        return load, "low"
    if load <= 9:
        return load, "medium"
    return load, "high"


def _missing_required(slide_type: SlideType, summary: ContentSummary) -> List[str]:
    missing: List[str] = []
    if slide_type is SlideType.PROBLEM and not (summary.sections or summary.bullets):
        missing.append("problem slide needs sections or bullet points")
    elif slide_type is SlideType.SOLUTION and not summary.sections:
        missing.append("solution slide needs sections")
    elif slide_type is SlideType.BENEFITS and not (summary.metrics or summary.bullets):
        missing.append("benefits slide needs key metrics or bullet points")
    elif slide_type is SlideType.IMPLEMENTATION and not (summary.timeline_events or summary.sections):
        missing.append("implementation slide needs a timeline or sections")
    elif slide_type is SlideType.CONCLUSION and not summary.bullets:
        missing.append("conclusion slide needs bullet points")
    return missing


def validate_slide_content(slide: Slide) -> Tuple[bool, List[str]]:
    issues: List[str] = []
    summary = summarize_content(slide)

    if len(slide.title.strip()) < 3:
        issues.append("Slide title is missing or too short.")
    if summary.is_empty and slide.type is not SlideType.TITLE:
        issues.append("Slide content is empty.")
    if summary.callout == FALLBACK_CALLOUT:
        issues.append("Slide is a placeholder that needs manual content.")
    issues.extend(f"Missing content: {item}." for item in _missing_required(slide.type, summary))

    return (len(issues) == 0, issues)


def score_slide(slide: Slide, slide_outline: SlideOutline) -> ValidationFeedback:
    """Deterministic rule score; no LLM involved."""
    scores: Dict[str, int] = {dimension: 100 for dimension in SLIDE_DIMENSIONS}
    issues: List[ValidationIssue] = []
    recommendations: List[str] = []
    summary = summarize_content(slide)

    if summary.is_empty and slide.type is not SlideType.TITLE:
        scores["content_quality"] -= 30
        issues.append(ValidationIssue(severity="critical", category="content_quality", description="Slide content is empty"))

    if len(slide.title.strip()) < 3:
        scores["content_quality"] -= 20
        issues.append(
            ValidationIssue(severity="important", category="content_quality", description="Missing or inadequate title")
        )

    if summary.callout == FALLBACK_CALLOUT:
        scores["content_quality"] -= 40
        issues.append(
            ValidationIssue(
                severity="critical",
                category="content_quality",
                description="Placeholder slide produced after a generation failure",
            )
        )

    load, level = estimate_cognitive_load(slide)
    if level == "high":
        scores["readability"] -= 20
        recommendations.append("Consider breaking down complex content")
        issues.append(
            ValidationIssue(severity="minor", category="readability", description=f"High cognitive load ({load} items)")
        )

    if slide.type != slide_outline.type:
        scores["alignment"] -= 30
        issues.append(
            ValidationIssue(
                severity="important",
                category="alignment",
                description=f"Slide type mismatch: expected {slide_outline.type.value}, got {slide.type.value}",
            )
        )

    for missing in _missing_required(slide.type, summary):
        scores["content_quality"] -= 10
        issues.append(ValidationIssue(severity="important", category="content_quality", description=missing))

    scores = {key: max(0, value) for key, value in scores.items()}
    overall = sum(scores.values()) / len(scores)
    if summary.callout == FALLBACK_CALLOUT:
        overall = min(overall, PLACEHOLDER_SCORE_CAP)
    return ValidationFeedback(
        overall_score=overall,
        dimensions=scores,
        issues=issues,
        recommendations=recommendations,
        source="rules",
    )
