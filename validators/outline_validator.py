from __future__ import annotations

from typing import Any, Dict, List, Tuple

from schemas.feedback import ValidationFeedback, ValidationIssue
from schemas.outline import PresentationOutline, SlideType
from schemas.request import PresentationRequest

OUTLINE_DIMENSIONS = ("framework_alignment", "logical_flow", "audience_suitability", "completeness")
MIN_OUTLINE_SCORE = 70


def validate_outline_structure(outline: Dict[str, Any], expected_count: int) -> Tuple[bool, List[str]]:
    issues: List[str] = []

    if not outline.get("title"):
        issues.append("Outline is missing a title.")
    if not isinstance(outline.get("metadata"), dict):
        issues.append("Outline is missing metadata.")

    slides = outline.get("slides")
    if not isinstance(slides, list):
        issues.append("Outline must contain a slides array.")
        return (False, issues)

    if len(slides) != expected_count:
        issues.append(f"Outline has {len(slides)} slides, expected {expected_count}.")

    for i, slide in enumerate(slides, start=1):
        if not isinstance(slide, dict):
            issues.append(f"Slide {i} is not an object.")
            continue
        for key in ("title", "type", "purpose"):
            if not slide.get(key):
                issues.append(f"Slide {i} is missing '{key}'.")

    return (len(issues) == 0, issues)


def score_outline(outline: PresentationOutline, request: PresentationRequest) -> ValidationFeedback:
    """Deterministic rule score; no LLM involved."""
    scores = {dimension: 100 for dimension in OUTLINE_DIMENSIONS}
    issues: List[ValidationIssue] = []

    if len(outline.slides) != request.slide_count:
        scores["completeness"] -= 20
        issues.append(
            ValidationIssue(
                severity="critical",
                category="completeness",
                description=f"Outline has {len(outline.slides)} slides, expected {request.slide_count}",
            )
        )

    types = {slide.type for slide in outline.slides}
    if SlideType.TITLE not in types:
        scores["completeness"] -= 10
        issues.append(ValidationIssue(severity="important", category="completeness", description="Missing title slide"))
    if SlideType.CONCLUSION not in types:
        scores["completeness"] -= 10
        issues.append(
            ValidationIssue(severity="important", category="completeness", description="Missing conclusion slide")
        )

    for slide in outline.slides:
        if not slide.title.strip() or not slide.purpose.strip():
            scores["logical_flow"] -= 5
            issues.append(
                ValidationIssue(
                    severity="important",
                    category="logical_flow",
                    description=f"Slide {slide.slide_number} has no clear title or purpose",
                )
            )
        if len(slide.key_points) < 2 and slide.type is not SlideType.TITLE:
            scores["completeness"] -= 2
            issues.append(
                ValidationIssue(
                    severity="minor",
                    category="completeness",
                    description=f"Slide {slide.slide_number} has fewer than two key points",
                )
            )

    if not any(slide.framework_alignment for slide in outline.slides):
        scores["framework_alignment"] -= 10
        issues.append(
            ValidationIssue(
                severity="minor",
                category="framework_alignment",
                description="No slide states how it fits the framework",
            )
        )

    scores = {key: max(0, value) for key, value in scores.items()}
    return ValidationFeedback(
        overall_score=sum(scores.values()) / len(scores),
        dimensions=scores,
        issues=issues,
        source="rules",
    )
