from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence, Union

from .fetchers.jaha import FetchError, SourceClient
from .models import PositionRecord, capture_timestamp
from .stats import IngestStats
from .store import PositionStore, StoreError


logger = logging.getLogger(__name__)

AUTO_LINES = "auto"
DEFAULT_REQUEST_DELAY_SECONDS = 0.5

LineSelection = Union[str, Sequence[int]]


@dataclass
class CycleSummary:
    lines_attempted: List[int] = field(default_factory=list)
    lines_failed: List[int] = field(default_factory=list)
    inserted: int = 0
    duplicates: int = 0
    store_errors: int = 0
    stopped_early: bool = False


class Ingestor:
    """Drives the source client over the configured lines and stores the results."""

    def __init__(
        self,
        client: SourceClient,
        store: PositionStore,
        lines: LineSelection,
        request_delay_seconds: float = DEFAULT_REQUEST_DELAY_SECONDS,
        stats: Optional[IngestStats] = None,
        clock: Callable[[], str] = capture_timestamp,
    ) -> None:
        self.client = client
        self.store = store
        self.lines = lines
        self.request_delay_seconds = max(0.0, request_delay_seconds)
        self.stats = stats or IngestStats()
        self.clock = clock
        self._stop = threading.Event()
        self._known_lines: List[int] = []

    def stop(self) -> None:
        self._stop.set()

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    def resolve_lines(self) -> List[int]:
        if self.lines != AUTO_LINES:
            return list(self.lines)
        try:
            discovered = self.client.fetch_lines()
        except FetchError as exc:
            self.stats.record_error(None, exc.kind, str(exc))
            if self._known_lines:
                logger.warning(
                    "Line discovery failed (%s); reusing %s known lines.",
                    exc,
                    len(self._known_lines),
                )
                return list(self._known_lines)
            logger.error("Line discovery failed and no lines are known: %s", exc)
            return []
        self._known_lines = discovered
        logger.info("Discovered %s lines from upstream catalogue.", len(discovered))
        return list(discovered)

    def run(self) -> CycleSummary:
        """Scheduler entry point: one cycle over the configured lines."""
        return self.run_cycle(self.resolve_lines())

    def run_cycle(self, line_ids: Sequence[int]) -> CycleSummary:
        summary = CycleSummary()
        self.stats.cycle_started()

        for index, line_id in enumerate(line_ids):
            if self._stop.is_set():
                summary.stopped_early = True
                break
            if index > 0 and self.request_delay_seconds:
                # Returns early when stop() is called during the wait.
                if self._stop.wait(self.request_delay_seconds):
                    summary.stopped_early = True
                    break

            summary.lines_attempted.append(line_id)
            self._ingest_line(line_id, summary)

        if summary.stopped_early:
            logger.info("Ingestion cycle stopped after %s lines.", len(summary.lines_attempted))
        else:
            self.stats.cycle_completed()
        logger.info(
            "Ingestion cycle: %s lines, %s failed, %s inserted, %s duplicates",
            len(summary.lines_attempted),
            len(summary.lines_failed),
            summary.inserted,
            summary.duplicates,
        )
        return summary

    def _ingest_line(self, line_id: int, summary: CycleSummary) -> None:
        try:
            positions = self.client.fetch_positions(line_id)
        except FetchError as exc:
            summary.lines_failed.append(line_id)
            self.stats.record_error(line_id, exc.kind, str(exc))
            logger.warning("Line %s skipped (%s): %s", line_id, exc.kind, exc)
            return

        captured_at = self.clock()
        inserted = 0
        failures = 0
        for raw in positions:
            record = PositionRecord.from_raw(raw, line_id, captured_at)
            try:
                if self.store.insert_if_absent(record):
                    inserted += 1
                else:
                    summary.duplicates += 1
                    logger.debug(
                        "Duplicate reading line=%s unidad=%s hora=%s",
                        line_id,
                        raw.vehicle_id,
                        raw.hora,
                    )
            except StoreError as exc:
                failures += 1
                summary.store_errors += 1
                self.stats.record_error(line_id, "store", str(exc))
                logger.error("Failed to store reading for line %s: %s", line_id, exc)

        summary.inserted += inserted
        if positions and failures == len(positions):
            # Nothing from this line reached the store.
            return
        self.stats.record_success(line_id, inserted)
        logger.debug("Line %s: %s positions, %s new", line_id, len(positions), inserted)
