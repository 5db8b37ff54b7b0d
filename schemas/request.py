from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from schemas.presentation import PresentationData

MIN_SLIDES = 3
MAX_SLIDES = 30


def _coerce_int(v: Any) -> int:
    if isinstance(v, bool):
        raise ValueError("slide_count must be an integer")
    if isinstance(v, int):
        return v
    if isinstance(v, str) and v.strip().lstrip("-").isdigit():
        return int(v.strip())
    raise ValueError("slide_count must be an integer")


def _enum_or(enum_cls: Any, value: Any, default: Any) -> Any:
    try:
        return enum_cls(str(value).lower())
    except ValueError:
        return default


class PresentationType(str, Enum):
    BUSINESS = "business"
    TECHNICAL = "technical"
    PROCESS = "process"
    TRANSFORMATION = "transformation"
    POV = "pov"
    CUSTOM = "custom"


class Tone(str, Enum):
    PROFESSIONAL = "professional"
    CONVERSATIONAL = "conversational"
    TECHNICAL = "technical"
    EXECUTIVE = "executive"


class PresentationRequest(BaseModel):
    """What the user asked for. Immutable once submitted."""

    model_config = ConfigDict(frozen=True, use_enum_values=False)

    prompt: str = Field(..., min_length=1, description="Free-text description of the deck.")
    presentation_type: PresentationType
    slide_count: int = Field(..., ge=MIN_SLIDES, le=MAX_SLIDES)
    audience: Optional[str] = Field(None, description="Who the deck is for.")
    tone: Tone = Tone.PROFESSIONAL

    # The HTTP form posts slide_count as a string.
    @field_validator("slide_count", mode="before")
    @classmethod
    def _coerce_slide_count(cls, v: Any) -> int:
        return _coerce_int(v)

    @field_validator("prompt")
    @classmethod
    def _strip_prompt(cls, v: str) -> str:
        stripped = v.strip()
        if not stripped:
            raise ValueError("prompt must not be blank")
        return stripped

    @field_validator("audience", mode="before")
    @classmethod
    def _blank_audience(cls, v: Any) -> Optional[str]:
        if v is None or (isinstance(v, str) and not v.strip()):
            return None
        return v

    @field_validator("tone", mode="before")
    @classmethod
    def _default_tone(cls, v: Any) -> Any:
        return Tone.PROFESSIONAL if v in (None, "") else v

    @property
    def audience_or_default(self) -> str:
        return self.audience or "General business audience"


class ValidationConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    target_quality_score: int = Field(80, ge=0, le=100, alias="targetQualityScore")
    max_refinement_rounds: int = Field(3, ge=0, le=10, alias="maxRefinementRounds")
    minimum_improvement: float = Field(2, ge=0, alias="minimumImprovement")


class GenerateRequest(BaseModel):
    """Body of ``POST /api/generate-iterative``."""

    model_config = ConfigDict(populate_by_name=True)

    prompt: str
    presentation_type: PresentationType
    slide_count: int = Field(..., ge=MIN_SLIDES, le=MAX_SLIDES)
    audience: Optional[str] = None
    tone: Optional[Tone] = None
    api_key: Optional[str] = Field(None, alias="apiKey")
    validation_config: Optional[ValidationConfig] = Field(None, alias="validationConfig")
    stream_progress: bool = Field(False, alias="streamProgress")

    @field_validator("slide_count", mode="before")
    @classmethod
    def _coerce_slide_count(cls, v: Any) -> int:
        return _coerce_int(v)

    def to_presentation_request(self) -> PresentationRequest:
        return PresentationRequest(
            prompt=self.prompt,
            presentation_type=self.presentation_type,
            slide_count=self.slide_count,
            audience=self.audience,
            tone=self.tone,
        )

    def to_json(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json", exclude={"api_key"})


class ValidateRequest(BaseModel):
    """Body of ``POST /api/validate``."""

    model_config = ConfigDict(populate_by_name=True)

    presentation: PresentationData
    api_key: Optional[str] = Field(None, alias="apiKey")
    use_llm: bool = Field(True, alias="useLlm")


class RefineRequest(BaseModel):
    """Body of ``POST /api/refine``; request fields default to the deck's metadata."""

    model_config = ConfigDict(populate_by_name=True)

    presentation: PresentationData
    prompt: Optional[str] = None
    presentation_type: Optional[PresentationType] = None
    audience: Optional[str] = None
    tone: Optional[Tone] = None
    api_key: Optional[str] = Field(None, alias="apiKey")
    validation_config: Optional[ValidationConfig] = Field(None, alias="validationConfig")

    def to_presentation_request(self) -> PresentationRequest:
        deck = self.presentation
        return PresentationRequest(
            prompt=self.prompt or deck.title,
            presentation_type=(
                self.presentation_type
                or _enum_or(PresentationType, deck.metadata.presentation_type, PresentationType.CUSTOM)
            ),
            # Refinement works on the slides it is given; the count only has to be in range.
            slide_count=min(max(len(deck.slides), MIN_SLIDES), MAX_SLIDES),
            audience=self.audience or deck.metadata.target_audience,
            tone=self.tone or _enum_or(Tone, deck.metadata.tone, Tone.PROFESSIONAL),
        )
