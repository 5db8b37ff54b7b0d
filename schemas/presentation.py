from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from schemas.outline import PresentationOutline
from schemas.progress import FallbackEvent
from schemas.slide import Slide


class PresentationMetadata(BaseModel):
    author: str = "AI Generated"
    created_at: str = ""
    presentation_type: str
    target_audience: str
    estimated_duration: float = 0
    slide_count: int = 0
    tone: Optional[str] = None
    framework: Optional[str] = None
    version: str = "1.0"


class PresentationData(BaseModel):
    """The finished deck handed to renderers, exporters and persistence."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    title: str
    subtitle: str = ""
    description: str = ""
    metadata: PresentationMetadata
    slides: List[Slide]

    def replace_slide(self, index: int, slide: Slide) -> "PresentationData":
        slides = list(self.slides)
        slides[index] = slide
        return self.model_copy(update={"slides": slides})

    def to_json(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json", exclude_none=True)

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "PresentationData":
        return cls.model_validate(data)


class RefinementRound(BaseModel):
    round: int
    before_score: int
    after_score: int
    improvement: float
    issues_addressed: int = 0
    changes_made: List[str] = Field(default_factory=list)
    duration_ms: int = 0
    success: bool = True


class RefinementResult(BaseModel):
    final_presentation: PresentationData
    initial_score: int
    final_score: int
    total_improvement: float
    history: List[RefinementRound] = Field(default_factory=list)
    target_achieved: bool = False
    stop_reason: str = "max_rounds"
    total_duration_ms: int = 0
    llm_calls: int = 0

    def summary(self) -> Dict[str, Any]:
        """Validation results block of the HTTP response."""
        return {
            "initialScore": self.initial_score,
            "finalScore": self.final_score,
            "improvement": self.total_improvement,
            "rounds": len(self.history),
            "targetAchieved": self.target_achieved,
            "stopReason": self.stop_reason,
            "history": [entry.model_dump() for entry in self.history],
        }


class IterativeGenerationResult(BaseModel):
    success: bool
    generation_id: str
    presentation: Optional[PresentationData] = None
    outline: Optional[PresentationOutline] = None
    outline_score: Optional[int] = None
    slide_scores: List[int] = Field(default_factory=list)
    overall_score: Optional[int] = None
    refinement: Optional[RefinementResult] = None
    tokens_used: Dict[str, int] = Field(default_factory=dict)
    generation_time_ms: Dict[str, int] = Field(default_factory=dict)
    fallback_events: List[FallbackEvent] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)
    debug_info: Dict[str, Any] = Field(default_factory=dict)

    @property
    def error(self) -> Optional[str]:
        return "; ".join(self.errors) if self.errors else None

    def validation_results(self) -> Dict[str, Any]:
        results: Dict[str, Any] = {
            "outlineScore": self.outline_score,
            "slideScores": self.slide_scores,
            "overallScore": self.overall_score,
            "fallbackEvents": [event.to_json() for event in self.fallback_events],
        }
        if self.refinement is not None:
            results["refinement"] = self.refinement.summary()
        return results
