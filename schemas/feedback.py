from __future__ import annotations

from typing import Any, Dict, List, Literal

from pydantic import BaseModel, Field, field_validator

Severity = Literal["critical", "important", "minor"]

NEUTRAL_SCORE = 50

SEVERITY_WEIGHTS: Dict[str, int] = {"critical": 10, "important": 5, "minor": 2}


def clamp_score(value: Any) -> int:
    try:
        score = int(round(float(value)))
    except (TypeError, ValueError):
        return NEUTRAL_SCORE
    return max(0, min(100, score))


class ValidationIssue(BaseModel):
    severity: Severity = "minor"
    category: str = "general"
    description: str

    @field_validator("severity", mode="before")
    @classmethod
    def _severity(cls, v: Any) -> str:
        value = str(v or "minor").lower()
        return value if value in {"critical", "important", "minor"} else "minor"

    @property
    def weight(self) -> int:
        return SEVERITY_WEIGHTS.get(self.severity, 1)


class ValidationFeedback(BaseModel):
    overall_score: int = Field(NEUTRAL_SCORE, ge=0, le=100)
    dimensions: Dict[str, int] = Field(default_factory=dict)
    issues: List[ValidationIssue] = Field(default_factory=list)
    recommendations: List[str] = Field(default_factory=list)
    source: Literal["rules", "llm", "blended", "default"] = "rules"
    tokens_used: int = 0

    @field_validator("overall_score", mode="before")
    @classmethod
    def _clamp(cls, v: Any) -> int:
        return clamp_score(v)

    @classmethod
    def neutral(cls, reason: str) -> "ValidationFeedback":
        return cls(
            overall_score=NEUTRAL_SCORE,
            issues=[ValidationIssue(severity="minor", category="validation", description=reason)],
            source="default",
        )

    def issue_weight(self) -> int:
        return sum(issue.weight for issue in self.issues)

    def describe_issues(self) -> List[str]:
        return [f"[{issue.severity}] {issue.category}: {issue.description}" for issue in self.issues]

    def to_json(self) -> Dict[str, Any]:
        return self.model_dump()
