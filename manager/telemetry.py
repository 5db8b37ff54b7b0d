from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from schemas.progress import FallbackEvent, Impact

logger = logging.getLogger(__name__)


@dataclass
class FeedbackEvent:
    stage: str
    success: bool
    timestamp: float = field(default_factory=time.time)
    metadata: Dict[str, Any] = field(default_factory=dict)


class FeedbackMonitor:
    """Capture approval/rejection metadata per pipeline stage."""

    def __init__(self) -> None:
        self._events: List[FeedbackEvent] = []

    def log_event(self, stage: str, success: bool, metadata: Optional[Dict[str, Any]] = None) -> None:
        event = FeedbackEvent(stage=stage, success=success, metadata=metadata or {})
        self._events.append(event)
        if not success:
            logger.warning("Feedback failure @%s -> %s", stage, event.metadata)

    def failure_trends(self) -> Dict[str, int]:
        failures: Dict[str, int] = {}
        for event in self._events:
            if not event.success:
                failures[event.stage] = failures.get(event.stage, 0) + 1
        return failures

    def summary(self) -> Dict[str, Any]:
        stage_totals: Dict[str, Dict[str, int]] = {}
        for event in self._events:
            stage_stats = stage_totals.setdefault(event.stage, {"passed": 0, "failed": 0})
            if event.success:
                stage_stats["passed"] += 1
            else:
                stage_stats["failed"] += 1

        return {
            "total_events": len(self._events),
            "stages": stage_totals,
            "failure_trends": self.failure_trends(),
            "recent_failures": [
                {"stage": event.stage, "metadata": event.metadata, "ts": event.timestamp}
                for event in self._events
                if not event.success
            ][:5],
        }


class PerformanceMonitor:
    """Record execution durations via context manager usage."""

    class _StageTimer:
        def __init__(self, monitor: PerformanceMonitor, stage: str) -> None:
            self._monitor = monitor
            self._stage = stage
            self._start: float | None = None

        def __enter__(self) -> PerformanceMonitor._StageTimer:
            self._start = time.perf_counter()
            return self

        def __exit__(self, exc_type, exc, exc_tb) -> None:
            end = time.perf_counter()
            duration = end - (self._start or end)
            self._monitor._record(self._stage, duration)
            if exc:
                logger.warning("Stage %s failed after %.2fs: %s", self._stage, duration, exc)

    def __init__(self) -> None:
        self._durations: Dict[str, List[float]] = {}

    def track(self, stage: str) -> PerformanceMonitor._StageTimer:
        return PerformanceMonitor._StageTimer(self, stage)

    def _record(self, stage: str, duration: float) -> None:
        self._durations.setdefault(stage, []).append(duration)
        logger.debug("Stage %s duration %.2fs", stage, duration)

    def total_ms(self, stage: str) -> int:
        return int(sum(self._durations.get(stage, [])) * 1000)

    def summary(self) -> Dict[str, Dict[str, float]]:
        snapshot: Dict[str, Dict[str, float]] = {}
        for stage, durations in self._durations.items():
            if not durations:
                continue
            snapshot[stage] = {
                "count": len(durations),
                "avg_seconds": sum(durations) / len(durations),
                "min_seconds": min(durations),
                "max_seconds": max(durations),
            }
        return snapshot


@dataclass
class LLMInteraction:
    component: str
    model: str
    tokens_used: int
    duration_ms: int
    success: bool
    prompt_chars: int = 0
    error: Optional[str] = None
    timestamp: float = field(default_factory=time.time)


class GenerationContext:
    """Everything observed during one generation run.

    Created by the orchestrator for each request and passed to every
    component; nothing here is shared between runs.
    """

    def __init__(self, generation_id: str | None = None) -> None:
        self.generation_id = generation_id or f"gen-{uuid.uuid4().hex[:12]}"
        self.status = "pending"
        self.started_at: float | None = None
        self.finished_at: float | None = None
        self.error: str | None = None
        self.feedback = FeedbackMonitor()
        self.performance = PerformanceMonitor()
        self.llm_interactions: List[LLMInteraction] = []
        self.fallback_events: List[FallbackEvent] = []
        self.details: Dict[str, Any] = {}

    def start(self, **details: Any) -> None:
        self.status = "running"
        self.started_at = time.time()
        self.details.update(details)
        logger.info("Generation %s started", self.generation_id)

    def complete(self, **details: Any) -> None:
        self.status = "completed"
        self.finished_at = time.time()
        self.details.update(details)
        logger.info("Generation %s completed in %dms", self.generation_id, self.elapsed_ms)

    def fail(self, error: str) -> None:
        self.status = "failed"
        self.finished_at = time.time()
        self.error = error
        logger.error("Generation %s failed: %s", self.generation_id, error)

    @property
    def elapsed_ms(self) -> int:
        if self.started_at is None:
            return 0
        end = self.finished_at or time.time()
        return int((end - self.started_at) * 1000)

    def record_llm_call(
        self,
        component: str,
        model: str,
        tokens_used: int,
        duration_ms: int,
        success: bool,
        prompt_chars: int = 0,
        error: str | None = None,
    ) -> None:
        self.llm_interactions.append(
            LLMInteraction(
                component=component,
                model=model,
                tokens_used=tokens_used,
                duration_ms=duration_ms,
                success=success,
                prompt_chars=prompt_chars,
                error=error,
            )
        )

    def record_fallback(
        self,
        component: str,
        reason: str,
        fallback_method: str,
        impact: Impact = "minor",
        user_message: str = "",
        slide_number: int | None = None,
    ) -> FallbackEvent:
        event = FallbackEvent(
            component=component,
            reason=reason,
            fallback_method=fallback_method,
            impact=impact,
            user_message=user_message,
            slide_number=slide_number,
        )
        self.fallback_events.append(event)
        logger.warning("Fallback in %s (%s): %s", component, fallback_method, reason)
        return event

    def tokens_used(self, component: str | None = None) -> int:
        return sum(
            call.tokens_used
            for call in self.llm_interactions
            if component is None or call.component == component
        )

    @property
    def llm_calls(self) -> int:
        return len(self.llm_interactions)

    def to_log(self) -> Dict[str, Any]:
        return {
            "generation_id": self.generation_id,
            "status": self.status,
            "error": self.error,
            "started_at": self.started_at,
            "duration_ms": self.elapsed_ms,
            "details": self.details,
            "llm_interactions": [
                {
                    "component": call.component,
                    "model": call.model,
                    "tokens_used": call.tokens_used,
                    "duration_ms": call.duration_ms,
                    "success": call.success,
                    "error": call.error,
                }
                for call in self.llm_interactions
            ],
            "fallback_events": [event.to_json() for event in self.fallback_events],
            "feedback": self.feedback.summary(),
            "performance": self.performance.summary(),
        }
