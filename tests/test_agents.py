import asyncio
import json

import pytest

from agents.framework_agent import FALLBACK_CONFIDENCE_CAP, FrameworkAgent, match_framework_id
from agents.outline_agent import MalformedOutlineError, OutlineAgent
from agents.slide_writer_agent import SlideWriterAgent, create_fallback_slide
from agents.validation_agent import ValidationAgent
from manager.retry import RetryPolicy
from manager.telemetry import GenerationContext
from schemas.framework import get_framework
from schemas.outline import PresentationOutline, SlideOutline, SlideType
from schemas.slide import FALLBACK_CALLOUT, Slide, SlideLayout, TitleContentContent


@pytest.mark.parametrize(
    "topic, audience, kind, expected",
    [
        ("Vendor options for our data platform", None, "business", "comparison"),
        ("Case study of the migration results", None, "technical", "star"),
        ("Quarterly update", "Board of directors", "business", "pyramid"),
        ("Quarterly update", None, "pov", "pyramid"),
        ("We recommend moving to four-day weeks", None, "business", "prep"),
        ("capacity management framework", "CTO", "business", "scqa"),
    ],
)
def test_quick_select_rules(fake_llm, topic, audience, kind, expected):
    recommendation = FrameworkAgent(llm_client=fake_llm).quick_select(topic, audience, kind)
    assert recommendation.recommendation == expected
    assert fake_llm.prompts == []


def test_match_framework_id():
    assert match_framework_id("I suggest the STAR method") == "star"
    assert match_framework_id("Pyramid Principle") == "pyramid"
    assert match_framework_id("storytelling") is None


def test_analyze_uses_llm_recommendation(fake_llm):
    context = GenerationContext()
    recommendation = asyncio.run(FrameworkAgent(llm_client=fake_llm).analyze("topic", "CTO", "business", context))
    assert recommendation.recommendation == "scqa"
    assert recommendation.confidence == 88
    assert not recommendation.is_fallback
    assert context.llm_calls == 1


def test_analyze_falls_back_when_llm_fails(failing_llm):
    context = GenerationContext()
    recommendation = asyncio.run(FrameworkAgent(llm_client=failing_llm).analyze("topic", None, None, context))
    assert recommendation.recommendation == "scqa"
    assert recommendation.is_fallback
    assert recommendation.confidence <= FALLBACK_CONFIDENCE_CAP
    assert [event.component for event in context.fallback_events] == ["framework_selector"]


def test_select_framework_fast_path_returns_catalog_entry(fake_llm):
    agent = FrameworkAgent(llm_client=fake_llm)
    framework = asyncio.run(
        agent.select_framework("Vendor options for our data platform", None, "business", fast=True)
    )
    assert framework == get_framework("comparison")
    assert framework.structure
    assert fake_llm.prompts == []


def test_select_framework_falls_back_to_default_entry(failing_llm):
    context = GenerationContext()
    framework = asyncio.run(
        FrameworkAgent(llm_client=failing_llm).select_framework("topic", None, None, context=context)
    )
    assert framework == get_framework("scqa")
    assert framework.name
    assert context.fallback_events[0].component == "framework_selector"


@pytest.mark.parametrize(
    "text",
    ["I cannot decide.", json.dumps({"recommendation": "Hero's journey", "confidence": 95})],
    ids=["prose", "unknown-framework"],
)
def test_analyze_falls_back_on_unusable_answer(scripted_llm, text):
    recommendation = asyncio.run(FrameworkAgent(llm_client=scripted_llm(text)).analyze("topic", None, None))
    assert recommendation.is_fallback
    assert recommendation.confidence <= FALLBACK_CONFIDENCE_CAP


def test_parse_outline_resequences_numbers_and_estimates_tokens(fake_llm, business_request, outline_payload):
    data = outline_payload(5)
    for index, slide in enumerate(data["slides"]):
        slide["slideNumber"] = index * 3 + 7
    outline = OutlineAgent(llm_client=fake_llm).parse_outline(json.dumps(data), business_request, get_framework("scqa"))
    assert [slide.slide_number for slide in outline.slides] == [1, 2, 3, 4, 5]
    assert outline.slides[0].estimated_tokens == 300
    assert outline.slides[-1].estimated_tokens == 400
    assert outline.estimated_total_tokens == sum(slide.estimated_tokens for slide in outline.slides)
    assert outline.metadata.framework == "SCQA"


def test_parse_outline_rejects_wrong_slide_count(fake_llm, business_request, outline_payload):
    with pytest.raises(MalformedOutlineError) as excinfo:
        OutlineAgent(llm_client=fake_llm).parse_outline(
            json.dumps(outline_payload(4)), business_request, get_framework("scqa")
        )
    assert "Outline has 4 slides, expected 5." in excinfo.value.issues


def test_parse_outline_rejects_prose(fake_llm, business_request):
    with pytest.raises(MalformedOutlineError):
        OutlineAgent(llm_client=fake_llm).parse_outline(
            "Sure! Here are some ideas for your deck.", business_request, get_framework("scqa")
        )


def test_generate_outline_repairs_truncated_response(fake_llm_factory, business_request, outline_payload):
    llm = fake_llm_factory(outline_text=json.dumps(outline_payload(5))[:-1])
    outline = asyncio.run(OutlineAgent(llm_client=llm).generate_outline(business_request, get_framework("scqa")))
    assert len(outline.slides) == 5


def _outline(outline_payload, count=5):
    return PresentationOutline.model_validate(outline_payload(count))


def test_parse_slide_unwraps_arrays_and_envelopes(fake_llm, outline_payload, slide_payload):
    outline = _outline(outline_payload)
    writer = SlideWriterAgent(llm_client=fake_llm)
    entry = outline.slide(2)
    assert writer.parse_slide(json.dumps([slide_payload(2)]), entry).id == "slide-2"
    assert writer.parse_slide(json.dumps({"slides": [slide_payload(2)]}), entry).id == "slide-2"


def test_parse_slide_backfills_missing_fields(fake_llm, outline_payload):
    entry = _outline(outline_payload).slide(2)
    slide = SlideWriterAgent(llm_client=fake_llm).parse_slide(
        json.dumps({"content": {"mainText": "Costs are rising", "bulletPoints": ["a", "b"]}}), entry
    )
    assert slide.id == "slide-2"
    assert slide.title == entry.title
    assert slide.type is entry.type
    assert slide.layout is SlideLayout.TITLE_CONTENT
    assert slide.metadata.speaker_notes == entry.purpose


def test_parse_slide_coerces_unfit_layout(fake_llm, outline_payload):
    entry = _outline(outline_payload).slide(2)
    slide = SlideWriterAgent(llm_client=fake_llm).parse_slide(
        json.dumps({"layout": "table", "content": {"mainText": "x", "bulletPoints": ["a"]}}), entry
    )
    assert slide.layout is SlideLayout.TITLE_CONTENT
    assert isinstance(slide.content, TitleContentContent)
    assert slide.content.bullet_points == ["a"]


def test_generate_slide_returns_fallback_after_retries(failing_llm, outline_payload):
    outline = _outline(outline_payload)
    context = GenerationContext()
    writer = SlideWriterAgent(llm_client=failing_llm, retry_policy=RetryPolicy.immediate(2))
    result = asyncio.run(writer.generate_slide(outline.slide(3), outline, context=context))
    assert failing_llm.calls == 3
    assert result.fallback_used
    assert result.retry_count == 2
    assert result.slide.content.callout == FALLBACK_CALLOUT
    assert context.fallback_events == []
    assert writer.generated_slides == [result.slide]

    writer.record_fallback(context, outline.slide(3), result)
    assert context.fallback_events[0].slide_number == 3
    assert "after 3 attempts: provider down" in context.fallback_events[0].reason


def test_generate_slide_backs_off_between_attempts(failing_llm, outline_payload):
    delays = []

    async def record(seconds):
        delays.append(seconds)

    outline = _outline(outline_payload)
    policy = RetryPolicy(max_retries=2, base_delay=1.0, sleep=record)
    asyncio.run(SlideWriterAgent(llm_client=failing_llm).generate_slide(outline.slide(2), outline, retry_policy=policy))
    assert delays == [1.0, 2.0]


def test_generate_slide_uses_previous_slides_as_context(fake_llm, outline_payload):
    outline = _outline(outline_payload)
    writer = SlideWriterAgent(llm_client=fake_llm, retry_policy=RetryPolicy.immediate())
    for number in (1, 2, 3):
        asyncio.run(writer.generate_slide(outline.slide(number), outline))
    assert [slide.id for slide in writer.context_window(4)] == ["slide-2", "slide-3"]
    writer.clear_cache()
    assert writer.generated_slides == []


@pytest.mark.parametrize("slide_type", list(SlideType))
def test_fallback_slide_is_complete_for_every_type(slide_type):
    entry = SlideOutline(slide_number=6, type=slide_type, title="", purpose="", key_points=[])
    slide = create_fallback_slide(entry)
    assert slide.title == "Slide 6"
    assert slide.type is slide_type
    assert slide.content.main_text
    assert slide.content.callout == FALLBACK_CALLOUT
    assert slide.metadata.speaker_notes


def test_validate_slide_uses_rules_when_llm_unavailable(failing_llm, outline_payload, slide_payload):
    outline = _outline(outline_payload)
    slide = Slide.model_validate(slide_payload(2, "problem"))
    feedback = asyncio.run(ValidationAgent(llm_client=failing_llm).validate_slide(slide, outline.slide(2), outline))
    assert feedback.source == "rules"
    assert feedback.overall_score == 100


def test_validate_slide_blends_rules_and_rubric(fake_llm, outline_payload, slide_payload):
    outline = _outline(outline_payload)
    slide = Slide.model_validate(slide_payload(2, "problem"))
    feedback = asyncio.run(ValidationAgent(llm_client=fake_llm).validate_slide(slide, outline.slide(2), outline))
    assert feedback.source == "blended"
    assert feedback.overall_score == 95


def test_validate_outline_blends(fake_llm, outline_payload, business_request):
    outline = _outline(outline_payload)
    feedback = asyncio.run(
        ValidationAgent(llm_client=fake_llm).validate_outline(outline, business_request, get_framework("scqa"))
    )
    assert feedback.source == "blended"
    assert feedback.overall_score == 95


def test_validator_crash_gives_neutral_score(monkeypatch, fake_llm, outline_payload, slide_payload):
    def explode(*args, **kwargs):
        raise RuntimeError("boom")

    monkeypatch.setattr("agents.validation_agent.score_slide", explode)
    outline = _outline(outline_payload)
    context = GenerationContext()
    slide = Slide.model_validate(slide_payload(2, "problem"))
    feedback = asyncio.run(
        ValidationAgent(llm_client=fake_llm).validate_slide(slide, outline.slide(2), outline, context=context)
    )
    assert feedback.overall_score == 50
    assert feedback.source == "default"
    assert context.fallback_events[0].component == "validation"
