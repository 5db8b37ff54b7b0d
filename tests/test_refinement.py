import asyncio

import pytest

from agents.slide_writer_agent import SlideGenerationResult, create_fallback_slide
from manager.refinement import RefinementEngine, mean_score, outline_from_presentation
from manager.telemetry import GenerationContext
from schemas.feedback import ValidationFeedback, ValidationIssue
from schemas.outline import PresentationOutline
from schemas.presentation import PresentationData
from schemas.request import PresentationRequest, ValidationConfig
from schemas.slide import Slide


class FakeWriter:
    def __init__(self, fallback=False):
        self.fallback = fallback
        self.calls = []
        self.remembered = {}

    async def generate_slide(self, slide_outline, outline, prior_slides=None, feedback=None, context=None, retry_policy=None):
        self.calls.append((slide_outline.slide_number, list(feedback or [])))
        if self.fallback:
            slide = create_fallback_slide(slide_outline)
        else:
            slide = Slide.model_validate(
                {
                    "id": f"slide-{slide_outline.slide_number}",
                    "type": slide_outline.type.value,
                    "title": f"Revised slide {slide_outline.slide_number}",
                    "layout": "title-content",
                    "content": {"mainText": "Sharper message", "bulletPoints": ["a", "b"]},
                }
            )
        return SlideGenerationResult(
            slide=slide, tokens_used=0, duration_ms=0, retry_count=0, fallback_used=self.fallback
        )

    def remember(self, slide_number, slide):
        self.remembered[slide_number] = slide


class FakeValidator:
    def __init__(self, score=90):
        self.score = score

    async def validate_slide(self, slide, slide_outline, outline, use_llm=True, context=None):
        return ValidationFeedback(overall_score=self.score, source="rules")


def _deck(slide_payload, count=3):
    return PresentationData.model_validate(
        {
            "id": "p",
            "title": "Deck",
            "metadata": {"presentation_type": "business", "target_audience": "CTO", "framework": "SCQA"},
            "slides": [slide_payload(number) for number in range(1, count + 1)],
        }
    )


def _scripted(engine, scores):
    remaining = list(scores)

    async def evaluate(presentation, outline, context=None):
        score = remaining.pop(0)
        issue = ValidationIssue(severity="important", description="Too vague")
        return score, [ValidationFeedback(overall_score=score, issues=[issue]) for _ in presentation.slides]

    engine.evaluate = evaluate


def _refine(engine, deck, outline, config, context=None):
    return asyncio.run(engine.refine(deck, _request(), config=config, outline=outline, context=context))


def _request():
    return PresentationRequest(prompt="Capacity", presentation_type="business", slide_count=3)


@pytest.fixture
def deck(slide_payload):
    return _deck(slide_payload)


@pytest.fixture
def outline(outline_payload):
    return PresentationOutline.model_validate(outline_payload(3))


def test_stops_when_target_reached(deck, outline):
    writer = FakeWriter()
    engine = RefinementEngine(writer, FakeValidator(score=90))
    _scripted(engine, [70, 85])
    result = _refine(engine, deck, outline, ValidationConfig(target_quality_score=80, max_refinement_rounds=3))
    assert result.stop_reason == "target_achieved"
    assert result.target_achieved
    assert len(result.history) == 2
    assert (result.initial_score, result.final_score, result.total_improvement) == (70, 85, 15)
    assert [number for number, _ in writer.calls] == [1, 2]
    assert writer.calls[0][1] == ["[important] general: Too vague"]
    assert result.final_presentation.slides[0].title == "Revised slide 1"
    assert result.final_presentation.slides[2].title == "Slide 3 title"
    assert result.history[0].issues_addressed == 2


def test_plateau_stops_early(deck, outline):
    engine = RefinementEngine(FakeWriter(), FakeValidator())
    _scripted(engine, [50, 51])
    result = _refine(engine, deck, outline, ValidationConfig(target_quality_score=80, max_refinement_rounds=3))
    assert result.stop_reason == "plateau"
    assert len(result.history) == 2
    assert not result.target_achieved
    assert not result.history[-1].success


def test_round_budget_is_respected(deck, outline):
    writer = FakeWriter()
    engine = RefinementEngine(writer, FakeValidator())
    _scripted(engine, [50, 60, 70])
    result = _refine(engine, deck, outline, ValidationConfig(target_quality_score=80, max_refinement_rounds=3))
    assert result.stop_reason == "max_rounds"
    assert len(result.history) == 3
    assert [entry.after_score for entry in result.history] == [50, 60, 70]
    assert len(writer.calls) == 4


def test_zero_rounds_only_scores(deck, outline):
    writer = FakeWriter()
    engine = RefinementEngine(writer, FakeValidator(score=64))
    result = _refine(engine, deck, outline, ValidationConfig(max_refinement_rounds=0))
    assert result.history == []
    assert result.initial_score == result.final_score == 64
    assert writer.calls == []


def test_worse_replacement_keeps_original(deck, outline):
    writer = FakeWriter()
    engine = RefinementEngine(writer, FakeValidator(score=40))
    _scripted(engine, [70, 71])
    result = _refine(engine, deck, outline, ValidationConfig(target_quality_score=80, max_refinement_rounds=3))
    assert result.final_presentation == deck
    assert "Slide 1: kept original, replacement scored 40" in result.history[0].changes_made
    assert writer.remembered[1] == deck.slides[0]


def test_fallback_regeneration_keeps_original(deck, outline):
    writer = FakeWriter(fallback=True)
    engine = RefinementEngine(writer, FakeValidator())
    _scripted(engine, [70, 70])
    result = _refine(engine, deck, outline, ValidationConfig(target_quality_score=80, max_refinement_rounds=2))
    assert result.final_presentation == deck
    assert result.history[0].changes_made[0] == "Slide 1: regeneration failed, kept original"


def test_failure_returns_unrefined_deck(deck, outline):
    engine = RefinementEngine(FakeWriter(), FakeValidator())

    async def explode(presentation, outline, context=None):
        raise RuntimeError("validator offline")

    engine.evaluate = explode
    context = GenerationContext()
    result = _refine(engine, deck, outline, ValidationConfig(), context=context)
    assert result.stop_reason == "error"
    assert result.final_presentation is deck
    assert result.initial_score == result.final_score == 50
    assert context.fallback_events[0].component == "refinement"


def test_evaluate_scores_every_slide(deck, outline):
    engine = RefinementEngine(FakeWriter(), FakeValidator(score=77))
    score, feedback = asyncio.run(engine.evaluate(deck, outline))
    assert score == 77
    assert len(feedback) == 3


def test_mean_score_of_nothing_is_neutral():
    assert mean_score([]) == 50


def test_outline_from_presentation(deck):
    outline = outline_from_presentation(deck)
    assert [slide.slide_number for slide in outline.slides] == [1, 2, 3]
    assert outline.slide(2).purpose == "Talk track"
    assert outline.slide(2).key_points == ["First point", "Second point"]
    assert outline.metadata.framework == "SCQA"
