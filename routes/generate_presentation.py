from __future__ import annotations

import asyncio
import io
import json
import logging
import re
import uuid
from typing import Any, AsyncIterator, Callable, Dict, Optional, Type, TypeVar

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, ValidationError

from agents.base_agent import ConfigurationError, LLMClient, LLMConfig, UpstreamAPIError
from agents.outline_agent import MalformedOutlineError
from exporters.pptx_exporter import PPTX_MEDIA_TYPE, export_to_pptx
from manager.orchestrator import GenerationOptions, IterativeOrchestrator
from manager.telemetry import GenerationContext
from presentation_service.config import Settings
from presentation_service.generation_store import GenerationStore, generation_store
from schemas.framework import all_frameworks
from schemas.presentation import IterativeGenerationResult, PresentationData
from schemas.progress import GenerationProgress
from schemas.request import GenerateRequest, RefineRequest, ValidateRequest

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")

REQUIRED_FIELDS = ("prompt", "presentation_type", "slide_count")

OrchestratorFactory = Callable[[Optional[str], Settings], IterativeOrchestrator]
ModelT = TypeVar("ModelT", bound=BaseModel)


def build_orchestrator(api_key: Optional[str], settings: Settings) -> IterativeOrchestrator:
    client = LLMClient(LLMConfig(model=settings.model, api_key=api_key))
    return IterativeOrchestrator(llm_client=client)


def get_settings(request: Request) -> Settings:
    settings = getattr(request.app.state, "settings", None)
    return settings if settings is not None else Settings.from_env()


def get_generation_store() -> GenerationStore:
    return generation_store


def get_orchestrator_factory() -> OrchestratorFactory:
    return build_orchestrator


def _new_generation_id() -> str:
    return f"gen-{uuid.uuid4().hex[:12]}"


def _error_response(status_code: int, error: str, generation_id: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "error": error, "generation_id": generation_id},
        headers={"X-Generation-ID": generation_id},
    )


def _describe_validation_error(exc: ValidationError) -> str:
    parts = []
    for error in exc.errors():
        location = ".".join(str(item) for item in error.get("loc", ()) if item != "body")
        parts.append(f"{location}: {error.get('msg')}" if location else str(error.get("msg")))
    return "Invalid request: " + "; ".join(parts)


def _sse(event: str, payload: Dict[str, Any]) -> str:
    return f"event: {event}\ndata: {json.dumps(payload)}\n\n"


def _result_payload(result: IterativeGenerationResult) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "success": result.success,
        "generation_id": result.generation_id,
        "processingTime": result.generation_time_ms.get("total", 0),
        "tokensUsed": result.tokens_used,
        "errors": result.errors,
    }
    if result.presentation is not None:
        payload["presentation"] = result.presentation.to_json()
        payload["validationResults"] = result.validation_results()
        payload["debugInfo"] = result.debug_info
    else:
        payload["error"] = result.error or "Presentation generation failed"
    return payload


def _record(store: GenerationStore, context: GenerationContext, result: IterativeGenerationResult | None, error: str | None) -> None:
    store.finish(
        context.generation_id,
        log=context.to_log(),
        validation_results=result.validation_results() if result is not None else None,
        error=error,
    )


class RequestRejected(Exception):
    def __init__(self, status_code: int, error: str) -> None:
        super().__init__(error)
        self.status_code = status_code
        self.error = error


async def _read_body(request: Request) -> Dict[str, Any]:
    try:
        body = await request.json()
    except ValueError as exc:
        raise RequestRejected(400, "Request body must be valid JSON") from exc
    if not isinstance(body, dict):
        raise RequestRejected(400, "Request body must be a JSON object")
    return body


def _parse(model: Type[ModelT], body: Dict[str, Any]) -> ModelT:
    try:
        return model.model_validate(body)
    except ValidationError as exc:
        raise RequestRejected(400, _describe_validation_error(exc)) from exc


def _parse_generate_request(body: Dict[str, Any]) -> GenerateRequest:
    missing = [name for name in REQUIRED_FIELDS if body.get(name) in (None, "")]
    if missing:
        raise RequestRejected(400, "Missing required fields: " + ", ".join(REQUIRED_FIELDS))
    generate_request = _parse(GenerateRequest, body)
    try:
        generate_request.to_presentation_request()
    except ValidationError as exc:
        raise RequestRejected(400, _describe_validation_error(exc)) from exc
    return generate_request


def _require_api_key(api_key: Optional[str], settings: Settings) -> Optional[str]:
    api_key = api_key or settings.api_key
    if not api_key and not settings.gemini_api_key:
        raise RequestRejected(500, "API key not configured")
    return api_key


def _pipeline_error(exc: Exception, store: GenerationStore, context: GenerationContext) -> JSONResponse:
    """Map an exception escaping a pipeline call to the error response."""
    if isinstance(exc, UpstreamAPIError):
        status_code, message = exc.status_code, exc.message
    elif isinstance(exc, ConfigurationError):
        status_code, message = 500, str(exc)
    else:
        logger.exception("Generation %s failed", context.generation_id)
        status_code, message = 500, str(exc) or "An unexpected error occurred"
    if context.status != "failed":
        context.fail(message)
    _record(store, context, None, message)
    return _error_response(status_code, message, context.generation_id)


@router.post("/generate-iterative")
async def generate_iterative(
    request: Request,
    settings: Settings = Depends(get_settings),
    store: GenerationStore = Depends(get_generation_store),
    orchestrator_factory: OrchestratorFactory = Depends(get_orchestrator_factory),
):
    generation_id = _new_generation_id()
    try:
        generate_request = _parse_generate_request(await _read_body(request))
        presentation_request = generate_request.to_presentation_request()
        api_key = _require_api_key(generate_request.api_key, settings)
    except RequestRejected as exc:
        logger.info("Rejected generation %s: %s", generation_id, exc.error)
        return _error_response(exc.status_code, exc.error, generation_id)

    options = GenerationOptions(validation_config=generate_request.validation_config or settings.validation_defaults())
    context = GenerationContext(generation_id)
    store.start(generation_id, generate_request.to_json())
    orchestrator = orchestrator_factory(api_key, settings)

    if generate_request.stream_progress:
        return StreamingResponse(
            _stream_generation(orchestrator, presentation_request, options, context, store),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "X-Generation-ID": generation_id},
        )

    try:
        result = await orchestrator.generate_presentation(presentation_request, options, context=context)
    except Exception as exc:  # noqa: BLE001
        return _pipeline_error(exc, store, context)

    _record(store, context, result, None if result.success else result.error)
    return JSONResponse(
        status_code=200 if result.success else 500,
        content=_result_payload(result),
        headers={"X-Generation-ID": generation_id},
    )


@router.post("/generate-outline")
async def generate_outline(
    request: Request,
    settings: Settings = Depends(get_settings),
    store: GenerationStore = Depends(get_generation_store),
    orchestrator_factory: OrchestratorFactory = Depends(get_orchestrator_factory),
):
    generation_id = _new_generation_id()
    try:
        generate_request = _parse_generate_request(await _read_body(request))
        presentation_request = generate_request.to_presentation_request()
        api_key = _require_api_key(generate_request.api_key, settings)
    except RequestRejected as exc:
        logger.info("Rejected outline %s: %s", generation_id, exc.error)
        return _error_response(exc.status_code, exc.error, generation_id)

    context = GenerationContext(generation_id)
    context.start(operation="outline", prompt=presentation_request.prompt)
    store.start(generation_id, generate_request.to_json())
    orchestrator = orchestrator_factory(api_key, settings)
    try:
        outline, framework, feedback = await orchestrator.generate_outline(presentation_request, context=context)
    except MalformedOutlineError as exc:
        context.fail(str(exc))
        _record(store, context, None, str(exc))
        return _error_response(500, f"Outline generation failed: {exc}", generation_id)
    except Exception as exc:  # noqa: BLE001
        return _pipeline_error(exc, store, context)

    context.complete(framework=framework.id)
    _record(store, context, None, None)
    return JSONResponse(
        content={
            "success": True,
            "generation_id": generation_id,
            "outline": outline.to_json(),
            "framework": {"id": framework.id, "name": framework.name},
            "validation": feedback.to_json() if feedback is not None else None,
        },
        headers={"X-Generation-ID": generation_id},
    )


@router.post("/validate")
async def validate_presentation(
    request: Request,
    settings: Settings = Depends(get_settings),
    store: GenerationStore = Depends(get_generation_store),
    orchestrator_factory: OrchestratorFactory = Depends(get_orchestrator_factory),
):
    generation_id = _new_generation_id()
    try:
        validate_request = _parse(ValidateRequest, await _read_body(request))
    except RequestRejected as exc:
        logger.info("Rejected validation %s: %s", generation_id, exc.error)
        return _error_response(exc.status_code, exc.error, generation_id)

    # Without a provider key the rule checks still score the deck.
    api_key = validate_request.api_key or settings.api_key
    use_llm = validate_request.use_llm and bool(api_key or settings.gemini_api_key)
    presentation = validate_request.presentation
    context = GenerationContext(generation_id)
    context.start(operation="validate", title=presentation.title)
    store.start(generation_id, {"operation": "validate", "title": presentation.title})
    orchestrator = orchestrator_factory(api_key, settings)
    try:
        overall_score, feedback = await orchestrator.evaluate_presentation(
            presentation, GenerationOptions(use_llm_validation=use_llm), context=context
        )
    except Exception as exc:  # noqa: BLE001
        return _pipeline_error(exc, store, context)

    context.complete(overall_score=overall_score)
    validation_results = {
        "overallScore": overall_score,
        "slides": [
            {"slideNumber": number, "slideId": slide.id, **item.to_json()}
            for number, (slide, item) in enumerate(zip(presentation.slides, feedback), start=1)
        ],
    }
    store.finish(generation_id, log=context.to_log(), validation_results=validation_results)
    return JSONResponse(
        content={"success": True, "generation_id": generation_id, "validationResults": validation_results},
        headers={"X-Generation-ID": generation_id},
    )


@router.post("/refine")
async def refine_presentation(
    request: Request,
    settings: Settings = Depends(get_settings),
    store: GenerationStore = Depends(get_generation_store),
    orchestrator_factory: OrchestratorFactory = Depends(get_orchestrator_factory),
):
    generation_id = _new_generation_id()
    try:
        refine_request = _parse(RefineRequest, await _read_body(request))
        presentation_request = refine_request.to_presentation_request()
        api_key = _require_api_key(refine_request.api_key, settings)
    except RequestRejected as exc:
        logger.info("Rejected refinement %s: %s", generation_id, exc.error)
        return _error_response(exc.status_code, exc.error, generation_id)
    except ValidationError as exc:
        return _error_response(400, _describe_validation_error(exc), generation_id)

    options = GenerationOptions(validation_config=refine_request.validation_config or settings.validation_defaults())
    context = GenerationContext(generation_id)
    context.start(operation="refine", prompt=presentation_request.prompt)
    store.start(generation_id, refine_request.model_dump(by_alias=True, mode="json", exclude={"api_key", "presentation"}))
    orchestrator = orchestrator_factory(api_key, settings)
    try:
        result = await orchestrator.refine_presentation(
            refine_request.presentation, presentation_request, options, context=context
        )
    except Exception as exc:  # noqa: BLE001
        return _pipeline_error(exc, store, context)

    context.complete(stop_reason=result.stop_reason, final_score=result.final_score)
    validation_results = {"overallScore": result.final_score, "refinement": result.summary()}
    store.finish(generation_id, log=context.to_log(), validation_results=validation_results)
    return JSONResponse(
        content={
            "success": True,
            "generation_id": generation_id,
            "presentation": result.final_presentation.to_json(),
            "validationResults": validation_results,
            "fallbackEvents": [event.to_json() for event in context.fallback_events],
        },
        headers={"X-Generation-ID": generation_id},
    )


async def _stream_generation(
    orchestrator: IterativeOrchestrator,
    presentation_request: Any,
    options: GenerationOptions,
    context: GenerationContext,
    store: GenerationStore,
) -> AsyncIterator[str]:
    generation_id = context.generation_id
    queue: asyncio.Queue = asyncio.Queue()
    done = object()

    def on_progress(progress: GenerationProgress) -> None:
        queue.put_nowait(_sse("progress", progress.to_json()))

    async def run() -> None:
        try:
            result = await orchestrator.generate_presentation(
                presentation_request, options, progress_cb=on_progress, context=context
            )
        except UpstreamAPIError as exc:
            _record(store, context, None, exc.message)
            queue.put_nowait(
                _sse("error", {"error": exc.message, "status": exc.status_code, "generation_id": generation_id})
            )
        except Exception as exc:  # noqa: BLE001
            logger.exception("Streaming generation %s failed", generation_id)
            _record(store, context, None, str(exc))
            queue.put_nowait(_sse("error", {"error": str(exc), "generation_id": generation_id}))
        else:
            _record(store, context, result, None if result.success else result.error)
            if result.success:
                queue.put_nowait(_sse("complete", _result_payload(result)))
            else:
                queue.put_nowait(
                    _sse("error", {"error": result.error or "Generation failed", "generation_id": generation_id})
                )
        finally:
            queue.put_nowait(done)

    yield _sse("connected", {"generation_id": generation_id})
    task = asyncio.create_task(run())
    try:
        while True:
            item = await queue.get()
            if item is done:
                break
            yield item
    finally:
        if not task.done():
            task.cancel()


@router.get("/debug/{generation_id}")
async def get_generation_debug(generation_id: str, store: GenerationStore = Depends(get_generation_store)):
    record = store.get(generation_id)
    if record is None:
        raise HTTPException(status_code=404, detail="Generation log not found. Logs may have expired.")
    return {"success": True, **record.to_json()}


@router.get("/frameworks")
async def list_frameworks():
    return {
        "frameworks": [
            {
                "id": framework.id,
                "name": framework.name,
                "description": framework.description,
                "steps": [step.step for step in framework.structure],
                "bestFor": framework.best_for,
            }
            for framework in all_frameworks()
        ]
    }


@router.post("/export/pptx")
async def export_pptx(payload: Dict[str, Any]):
    try:
        presentation = PresentationData.from_json(payload.get("presentation", payload))
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=_describe_validation_error(exc)) from exc

    buffer = io.BytesIO()
    export_to_pptx(presentation, buffer)
    buffer.seek(0)
    filename = re.sub(r"[^A-Za-z0-9_-]+", "-", presentation.title).strip("-") or "presentation"
    return StreamingResponse(
        buffer,
        media_type=PPTX_MEDIA_TYPE,
        headers={"Content-Disposition": f'attachment; filename="{filename}.pptx"'},
    )
