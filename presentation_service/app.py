from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from fastapi import FastAPI

from presentation_service.config import Settings
from presentation_service.generation_store import generation_store
from routes.generate_presentation import router as presentation_router

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def setup_logging(level: str = "INFO", log_path: Optional[Path] = None) -> None:
    """Configure root logging for the service."""
    handlers: list = [logging.StreamHandler()]
    if log_path is not None:
        log_path = Path(log_path)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_path, encoding="utf-8"))
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format=LOG_FORMAT,
        handlers=handlers,
    )


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or Settings.from_env()
    setup_logging(settings.log_level, settings.log_path)
    app = FastAPI(
        title="Iterative Presentation Generator",
        description="Generates framework-driven slide decks with an LLM and validates them iteratively.",
        version="1.0.0",
    )
    app.state.settings = settings
    # The shared store keeps the limit it started serving with.
    if not len(generation_store):
        generation_store.limit = max(1, settings.store_limit)
    app.include_router(presentation_router)
    if not settings.has_provider_key:
        logger.warning("No provider API key configured; requests must supply apiKey.")
    return app


def main() -> None:
    import uvicorn

    uvicorn.run("presentation_service.app:create_app", factory=True, host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
