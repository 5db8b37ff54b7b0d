from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional

from agents.base_agent import load_env_once
from schemas.request import ValidationConfig


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from exc


@dataclass
class Settings:
    model: str = "gpt-4.1-mini"
    api_key: Optional[str] = None
    gemini_api_key: Optional[str] = None
    log_level: str = "INFO"
    log_path: Optional[str] = None
    target_score: int = 80
    max_rounds: int = 3
    min_improvement: int = 2
    store_limit: int = 200

    @classmethod
    def from_env(cls) -> "Settings":
        load_env_once()
        return cls(
            model=os.getenv("PRESENTATION_MODEL", "gpt-4.1-mini"),
            api_key=os.getenv("PRESENTATION_API_KEY") or os.getenv("OPENAI_API_KEY"),
            gemini_api_key=os.getenv("GEMINI_API_KEY") or os.getenv("GOOGLE_API_KEY"),
            log_level=os.getenv("PRESENTATION_LOG_LEVEL", "INFO").upper(),
            log_path=os.getenv("PRESENTATION_LOG_PATH") or None,
            target_score=_env_int("PRESENTATION_TARGET_SCORE", 80),
            max_rounds=_env_int("PRESENTATION_MAX_ROUNDS", 3),
            min_improvement=_env_int("PRESENTATION_MIN_IMPROVEMENT", 2),
            store_limit=_env_int("PRESENTATION_STORE_LIMIT", 200),
        )

    @property
    def has_provider_key(self) -> bool:
        return bool(self.api_key or self.gemini_api_key)

    def validation_defaults(self) -> ValidationConfig:
        return ValidationConfig(
            target_quality_score=self.target_score,
            max_refinement_rounds=self.max_rounds,
            minimum_improvement=self.min_improvement,
        )
