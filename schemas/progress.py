from __future__ import annotations

import time
from enum import Enum
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

Impact = Literal["none", "minor", "moderate", "significant"]


class GenerationPhase(str, Enum):
    OUTLINE = "outline"
    SLIDES = "slides"
    VALIDATION = "validation"
    COMPLETE = "complete"


class GenerationProgress(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    phase: GenerationPhase
    current_step: str = Field(..., alias="currentStep")
    percent_complete: int = Field(..., ge=0, le=100, alias="percentComplete")
    message: str = ""
    slide_number: Optional[int] = Field(None, alias="slideNumber")
    total_slides: Optional[int] = Field(None, alias="totalSlides")
    validation_score: Optional[int] = Field(None, alias="validationScore")

    def to_json(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json", exclude_none=True)


class FallbackEvent(BaseModel):
    """A failure that was absorbed locally, kept for transparency."""

    component: str
    reason: str
    fallback_method: str
    impact: Impact = "minor"
    user_message: str = ""
    slide_number: Optional[int] = None
    timestamp: float = Field(default_factory=time.time)

    def to_json(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)
