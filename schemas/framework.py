from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator

CATALOG_PATH = Path(__file__).resolve().parent / "frameworks.yaml"
DEFAULT_FRAMEWORK_ID = "scqa"


class FrameworkStep(BaseModel):
    model_config = ConfigDict(frozen=True)

    step: str
    description: str
    purpose: str = ""
    indicators: List[str] = Field(default_factory=list)


class Framework(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    description: str
    structure: List[FrameworkStep]
    best_for: List[str] = Field(default_factory=list)
    audience: List[str] = Field(default_factory=list)
    slide_sequence: List[str] = Field(default_factory=list)

    def to_json(self) -> Dict[str, Any]:
        return self.model_dump()

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "Framework":
        return cls.model_validate(data)


class FrameworkRecommendation(BaseModel):
    recommendation: str = DEFAULT_FRAMEWORK_ID
    confidence: int = Field(70, ge=0, le=100)
    rationale: str = ""
    is_fallback: bool = False

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp_confidence(cls, v: Any) -> int:
        try:
            value = int(round(float(v)))
        except (TypeError, ValueError):
            return 50
        return max(0, min(100, value))


@lru_cache(maxsize=1)
def load_catalog(path: Optional[str] = None) -> Dict[str, Framework]:
    """Read the framework catalog from YAML. The result is cached and read-only."""
    catalog_path = Path(path) if path else CATALOG_PATH
    if not catalog_path.exists():
        raise FileNotFoundError(f"Framework catalog not found: {catalog_path}")

    with catalog_path.open("r", encoding="utf-8") as handle:
        raw = yaml.safe_load(handle) or {}

    catalog: Dict[str, Framework] = {}
    for key, value in raw.items():
        try:
            catalog[key] = Framework(id=key, **value)
        except (TypeError, ValueError) as exc:
            raise ValueError(f"Framework '{key}' is invalid: {exc}") from exc
    if DEFAULT_FRAMEWORK_ID not in catalog:
        raise ValueError(f"Framework catalog must define '{DEFAULT_FRAMEWORK_ID}'")
    return catalog


def framework_priority() -> List[str]:
    return list(load_catalog().keys())


def get_framework(framework_id: str | None) -> Framework:
    catalog = load_catalog()
    return catalog.get((framework_id or "").lower(), catalog[DEFAULT_FRAMEWORK_ID])


def all_frameworks() -> List[Framework]:
    return list(load_catalog().values())
