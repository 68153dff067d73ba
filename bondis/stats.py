from __future__ import annotations

import threading
import time
from collections import deque
from typing import Deque, Dict, List, Optional, TypedDict


RECENT_ERROR_LIMIT = 10


class LineEntry(TypedDict):
    last_success: Optional[int]
    last_error: Optional[str]
    last_error_at: Optional[int]
    fetch_count: int
    error_count: int
    inserted_count: int


class ErrorEntry(TypedDict):
    at: int
    line: Optional[int]
    kind: str
    message: str


class CycleEntry(TypedDict):
    last_started: Optional[int]
    last_completed: Optional[int]
    cycle_count: int


class IngestStats:
    """Thread-safe counters shared by the ingestion job and the status endpoint."""

    def __init__(self, recent_error_limit: int = RECENT_ERROR_LIMIT) -> None:
        self._lock = threading.Lock()
        self._lines: Dict[int, LineEntry] = {}
        self._errors: Deque[ErrorEntry] = deque(maxlen=recent_error_limit)
        self._cycle: CycleEntry = {
            "last_started": None,
            "last_completed": None,
            "cycle_count": 0,
        }

    def _ensure_line(self, line_id: int) -> LineEntry:
        if line_id not in self._lines:
            self._lines[line_id] = {
                "last_success": None,
                "last_error": None,
                "last_error_at": None,
                "fetch_count": 0,
                "error_count": 0,
                "inserted_count": 0,
            }
        return self._lines[line_id]

    def record_success(self, line_id: int, inserted: int) -> None:
        now = int(time.time())
        with self._lock:
            entry = self._ensure_line(line_id)
            entry["last_success"] = now
            entry["fetch_count"] += 1
            entry["inserted_count"] += inserted

    def record_error(self, line_id: Optional[int], kind: str, message: str) -> None:
        now = int(time.time())
        with self._lock:
            if line_id is not None:
                entry = self._ensure_line(line_id)
                entry["last_error"] = message
                entry["last_error_at"] = now
                entry["error_count"] += 1
            self._errors.append({"at": now, "line": line_id, "kind": kind, "message": message})

    def cycle_started(self) -> None:
        with self._lock:
            self._cycle["last_started"] = int(time.time())

    def cycle_completed(self) -> None:
        with self._lock:
            self._cycle["last_completed"] = int(time.time())
            self._cycle["cycle_count"] += 1

    def get_cycle(self) -> CycleEntry:
        with self._lock:
            return dict(self._cycle)

    def get_lines(self) -> Dict[int, LineEntry]:
        with self._lock:
            return {line_id: dict(entry) for line_id, entry in self._lines.items()}

    def recent_errors(self) -> List[ErrorEntry]:
        with self._lock:
            return [dict(error) for error in self._errors]
