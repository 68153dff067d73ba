from __future__ import annotations

import logging
import time
from typing import Dict, List, Optional, TypedDict

from .stats import ErrorEntry, IngestStats, LineEntry
from .store import PositionStore, StoreError


START_TIME = time.time()

logger = logging.getLogger(__name__)


class LineHealth(TypedDict):
    last_update: str
    status: str
    fetch_count: int
    error_count: int
    inserted_count: int
    last_error: Optional[str]


class HealthStatus(TypedDict):
    status: str
    uptime_seconds: int
    last_cycle: str
    cycle_count: int
    total_positions: Optional[int]
    lines: Dict[str, LineHealth]
    recent_errors: List[ErrorEntry]


def _age_label(timestamp: Optional[int], now: int) -> str:
    return f"{max(0, now - timestamp)}s ago" if timestamp else "never"


def _line_health(
    entry: LineEntry,
    now: int,
    staleness_warning_sec: int,
    staleness_critical_sec: int,
) -> LineHealth:
    last_success = entry["last_success"]
    last_error_at = entry["last_error_at"]
    # A line is in error until a fetch succeeds after its latest failure.
    if last_success is None or (last_error_at is not None and last_error_at >= last_success):
        status = "error"
    elif now - last_success >= staleness_critical_sec:
        status = "error"
    elif now - last_success >= staleness_warning_sec:
        status = "stale"
    else:
        status = "healthy"
    return {
        "last_update": _age_label(last_success, now),
        "status": status,
        "fetch_count": entry["fetch_count"],
        "error_count": entry["error_count"],
        "inserted_count": entry["inserted_count"],
        "last_error": entry["last_error"],
    }


def _overall_status(
    last_completed: Optional[int],
    now: int,
    staleness_warning_sec: int,
    staleness_critical_sec: int,
) -> str:
    if last_completed is None:
        return "down"
    age = now - last_completed
    if age >= staleness_critical_sec:
        return "down"
    if age >= staleness_warning_sec:
        return "degraded"
    return "healthy"


def get_health_status(
    stats: IngestStats,
    store: PositionStore,
    staleness_warning_sec: int,
    staleness_critical_sec: int,
) -> HealthStatus:
    now = int(time.time())
    cycle = stats.get_cycle()

    lines: Dict[str, LineHealth] = {
        str(line_id): _line_health(entry, now, staleness_warning_sec, staleness_critical_sec)
        for line_id, entry in sorted(stats.get_lines().items())
    }

    total_positions: Optional[int]
    try:
        total_positions = store.count()
    except StoreError as exc:
        logger.error("Could not count stored positions: %s", exc)
        total_positions = None

    status = _overall_status(cycle["last_completed"], now, staleness_warning_sec, staleness_critical_sec)
    if status == "healthy" and total_positions is None:
        status = "degraded"

    return {
        "status": status,
        "uptime_seconds": int(now - START_TIME),
        "last_cycle": _age_label(cycle["last_completed"], now),
        "cycle_count": cycle["cycle_count"],
        "total_positions": total_positions,
        "lines": lines,
        "recent_errors": stats.recent_errors(),
    }
