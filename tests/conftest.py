import json
import re
from typing import Any, Dict, List, Optional, Sequence

import pytest

from agents.base_agent import Completion, ModelConfig, UpstreamAPIError
from manager.retry import RetryPolicy
from schemas.request import PresentationRequest

SLIDE_TYPES = ["title", "problem", "solution", "benefits", "conclusion"]


def make_outline_payload(count: int = 5) -> Dict[str, Any]:
    slides = []
    for number in range(1, count + 1):
        if number == 1:
            slide_type = "title"
        elif number == count:
            slide_type = "conclusion"
        else:
            slide_type = SLIDE_TYPES[1 + (number - 2) % 3]
        slides.append(
            {
                "slideNumber": number,
                "type": slide_type,
                "title": f"Slide {number} title",
                "purpose": f"Purpose of slide {number}",
                "keyPoints": [f"Point {number}.1", f"Point {number}.2"],
                "frameworkAlignment": "Situation",
            }
        )
    return {
        "id": "outline-test",
        "title": "Capacity Management Framework",
        "subtitle": "Matching demand to supply",
        "description": "How we plan capacity",
        "metadata": {"author": "AI Generated", "target_audience": "CTO"},
        "slides": slides,
    }


def make_slide_payload(number: int, slide_type: str = "problem") -> Dict[str, Any]:
    return {
        "id": f"slide-{number}",
        "type": slide_type,
        "title": f"Slide {number} title",
        "layout": "title-content",
        "content": {
            "mainText": f"Main message for slide {number}",
            "bulletPoints": ["First point", "Second point"],
            "sections": [{"title": "Detail", "description": "Supporting detail", "items": ["a"]}],
        },
        "metadata": {"speaker_notes": "Talk track", "duration_minutes": 2, "audience_level": "executive"},
    }


RUBRIC = {
    "frameworkAlignment": 90,
    "logicalFlow": 90,
    "audienceSuitability": 90,
    "completeness": 90,
    "contentQuality": 90,
    "readability": 90,
    "visualHierarchy": 90,
    "alignment": 90,
    "issues": [],
    "recommendations": [],
}


class FakeLLM:
    """Answers each prompt template with canned JSON."""

    def __init__(
        self,
        slide_count: int = 5,
        outline_text: Optional[str] = None,
        failing_slides: Sequence[int] = (),
        framework: str = "SCQA",
    ) -> None:
        self.slide_count = slide_count
        self.outline_text = outline_text
        self.failing_slides = set(failing_slides)
        self.framework = framework
        self.prompts: List[str] = []
        self.slide_calls: Dict[int, int] = {}

    async def complete(self, prompt: str, model_config: ModelConfig) -> Completion:
        self.prompts.append(prompt)
        return Completion(text=self.respond(prompt), tokens_used=100, model="fake-model")

    def respond(self, prompt: str) -> str:
        if "Score this outline" in prompt or "Score this slide" in prompt:
            return json.dumps(RUBRIC)
        if "Write the full content for ONE slide" in prompt:
            number = int(re.search(r"SLIDE (\d+) OF", prompt).group(1))
            self.slide_calls[number] = self.slide_calls.get(number, 0) + 1
            if number in self.failing_slides:
                raise UpstreamAPIError(f"slide {number} exploded", status_code=500)
            slide_type = re.search(r"- Type: (\w+)", prompt).group(1)
            return json.dumps(make_slide_payload(number, slide_type))
        if "Create a detailed outline" in prompt:
            if self.outline_text is not None:
                return self.outline_text
            return json.dumps(make_outline_payload(self.slide_count))
        if "Choose the narrative framework" in prompt:
            return json.dumps({"recommendation": self.framework, "confidence": 88, "rationale": "Problem-led topic"})
        raise AssertionError(f"Unexpected prompt: {prompt[:80]}")


class FailingLLM:
    def __init__(self, error: Exception | None = None) -> None:
        self.error = error or UpstreamAPIError("provider down", status_code=503)
        self.calls = 0

    async def complete(self, prompt: str, model_config: ModelConfig) -> Completion:
        self.calls += 1
        raise self.error


class ScriptedLLM:
    """Returns the given texts in order, one per call."""

    def __init__(self, *texts: str) -> None:
        self.texts = list(texts)
        self.calls = 0

    async def complete(self, prompt: str, model_config: ModelConfig) -> Completion:
        self.calls += 1
        return Completion(text=self.texts.pop(0), tokens_used=50, model="fake-model")


@pytest.fixture
def fake_llm():
    return FakeLLM()


@pytest.fixture
def fake_llm_factory():
    return FakeLLM


@pytest.fixture
def failing_llm():
    return FailingLLM()


@pytest.fixture
def scripted_llm():
    return ScriptedLLM


@pytest.fixture
def no_delay():
    return RetryPolicy.immediate()


@pytest.fixture
def business_request():
    return PresentationRequest(
        prompt="capacity management framework",
        presentation_type="business",
        slide_count=5,
        audience="CTO",
    )


@pytest.fixture
def outline_payload():
    return make_outline_payload


@pytest.fixture
def slide_payload():
    return make_slide_payload
