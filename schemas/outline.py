from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class SlideType(str, Enum):
    TITLE = "title"
    PROBLEM = "problem"
    SOLUTION = "solution"
    BENEFITS = "benefits"
    IMPLEMENTATION = "implementation"
    FRAMEWORK = "framework"
    TIMELINE = "timeline"
    CONCLUSION = "conclusion"
    CHART = "chart"
    TABLE = "table"
    CUSTOM = "custom"

    @classmethod
    def coerce(cls, value: Any) -> "SlideType":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value or "").strip().lower())
        except ValueError:
            return cls.CUSTOM


class SlideOutline(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    slide_number: int = Field(..., ge=1, alias="slideNumber")
    type: SlideType = SlideType.CUSTOM
    title: str
    purpose: str
    key_points: List[str] = Field(default_factory=list, alias="keyPoints")
    framework_alignment: Optional[str] = Field(None, alias="frameworkAlignment")
    estimated_tokens: int = Field(0, alias="estimatedTokens")

    @field_validator("type", mode="before")
    @classmethod
    def _coerce_type(cls, v: Any) -> SlideType:
        return SlideType.coerce(v)

    @field_validator("key_points", mode="before")
    @classmethod
    def _coerce_key_points(cls, v: Any) -> List[str]:
        if v is None:
            return []
        if isinstance(v, str):
            return [v]
        return [str(item) for item in v if item]


class OutlineMetadata(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    author: str = "AI Generated"
    created_at: str = ""
    presentation_type: str = ""
    target_audience: str = ""
    tone: str = ""
    framework: str = ""
    slide_count: int = 0
    estimated_duration: int = 0
    version: str = "1.0"


class FrameworkStructure(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    framework: str = ""
    flow_description: str = Field("", alias="flowDescription")
    narrative_arc: str = Field("", alias="narrativeArc")


class PresentationOutline(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    title: str
    subtitle: str = ""
    description: str = ""
    metadata: OutlineMetadata = Field(default_factory=OutlineMetadata)
    slides: List[SlideOutline]
    framework_structure: Optional[FrameworkStructure] = Field(None, alias="frameworkStructure")
    estimated_total_tokens: int = Field(0, alias="estimatedTotalTokens")

    @model_validator(mode="after")
    def _check_sequence(self) -> "PresentationOutline":
        numbers = [slide.slide_number for slide in self.slides]
        if numbers != list(range(1, len(numbers) + 1)):
            raise ValueError("slide numbers must run 1..N in order without gaps or repeats")
        return self

    def slide(self, number: int) -> SlideOutline:
        return self.slides[number - 1]

    def to_json(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "PresentationOutline":
        return cls.model_validate(data)
