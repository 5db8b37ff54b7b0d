"""In-memory record of finished and running generations.

Entries are keyed by generation id and only ever added or extended, never
rewritten by another run. The oldest entries are dropped once the store
reaches its limit.
"""
from __future__ import annotations

import threading
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Dict, Optional


@dataclass
class GenerationRecord:
    generation_id: str
    status: str = "running"  # running | completed | failed
    request: Dict[str, Any] = field(default_factory=dict)
    log: Dict[str, Any] = field(default_factory=dict)
    validation_results: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)

    def to_json(self) -> Dict[str, Any]:
        return {
            "generation_id": self.generation_id,
            "status": self.status,
            "request": self.request,
            "log": self.log,
            "validationResults": self.validation_results,
            "error": self.error,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


class GenerationStore:
    def __init__(self, limit: int = 200) -> None:
        self.limit = max(1, limit)
        self._records: "OrderedDict[str, GenerationRecord]" = OrderedDict()
        self._lock = threading.Lock()

    def start(self, generation_id: str, request: Optional[Dict[str, Any]] = None) -> GenerationRecord:
        record = GenerationRecord(generation_id=generation_id, request=request or {})
        with self._lock:
            if generation_id in self._records:
                raise ValueError(f"Generation {generation_id} is already recorded")
            self._records[generation_id] = record
            while len(self._records) > self.limit:
                self._records.popitem(last=False)
        return record

    def finish(
        self,
        generation_id: str,
        *,
        log: Dict[str, Any],
        validation_results: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
    ) -> Optional[GenerationRecord]:
        with self._lock:
            record = self._records.get(generation_id)
            if not record:
                return None
            record.status = "failed" if error else "completed"
            record.log.update(log)
            if validation_results is not None:
                record.validation_results = validation_results
            if error is not None:
                record.error = error
            record.updated_at = time.time()
            return record

    def get(self, generation_id: str) -> Optional[GenerationRecord]:
        with self._lock:
            record = self._records.get(generation_id)
            if not record:
                return None
            return GenerationRecord(**{**record.__dict__, "log": dict(record.log)})

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)


# Singleton store for app-wide usage
generation_store = GenerationStore()
