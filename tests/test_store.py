from __future__ import annotations

import sqlite3
import threading
from pathlib import Path

import pytest

from bondis.models import PositionRecord
from bondis.store import PositionStore, StoreError


def _record(captured_at: str, vehicle_id: int = 42, hora: str = "08:00:00", line_id: int = 5, lat: str = "-25.3") -> PositionRecord:
    return PositionRecord(
        captured_at=captured_at,
        line_id=line_id,
        vehicle_id=vehicle_id,
        latitude=lat,
        longitude="-57.6",
        report_time=hora,
    )


def test_ensure_schema_is_idempotent(store: PositionStore) -> None:
    store.ensure_schema()
    store.ensure_schema()

    with sqlite3.connect(str(store.db_path)) as conn:
        columns = [row[1] for row in conn.execute("PRAGMA table_info(positions)")]
    assert columns == ["datetime", "linea", "unidad", "lat", "lon", "hora"]


def test_ensure_schema_creates_parent_directory(tmp_path: Path) -> None:
    nested = PositionStore(tmp_path / "data" / "nested" / "positions.db")
    nested.ensure_schema()
    assert nested.db_path.exists()


def test_insert_if_absent_deduplicates_on_natural_key(store: PositionStore) -> None:
    first = _record("2026-10-18T10:00:00.000000+00:00")
    retry = _record("2026-10-18T10:05:00.000000+00:00", lat="-25.9")

    assert store.insert_if_absent(first) is True
    assert store.insert_if_absent(retry) is False

    assert store.query_recent(10) == [first]
    assert store.count() == 1


def test_same_vehicle_other_line_or_time_is_distinct(store: PositionStore) -> None:
    ts = "2026-10-18T10:00:00.000000+00:00"
    assert store.insert_if_absent(_record(ts))
    assert store.insert_if_absent(_record(ts, line_id=6))
    assert store.insert_if_absent(_record(ts, hora="08:00:05"))
    assert store.count() == 3


def test_query_recent_orders_newest_first(store: PositionStore) -> None:
    for n, ts in enumerate(["2026-10-18T10:00:01.000000+00:00", "2026-10-18T10:00:02.000000+00:00", "2026-10-18T10:00:03.000000+00:00"]):
        store.insert_if_absent(_record(ts, vehicle_id=n))

    recent = store.query_recent(2)

    assert [record.captured_at for record in recent] == [
        "2026-10-18T10:00:03.000000+00:00",
        "2026-10-18T10:00:02.000000+00:00",
    ]


def test_ties_put_later_insertions_first(store: PositionStore) -> None:
    ts = "2026-10-18T10:00:00.000000+00:00"
    for vehicle_id in (1, 2, 3):
        store.insert_if_absent(_record(ts, vehicle_id=vehicle_id))

    assert [record.vehicle_id for record in store.query_recent(3)] == [3, 2, 1]


def test_limit_boundaries(store: PositionStore) -> None:
    assert store.query_recent(5) == []
    store.insert_if_absent(_record("2026-10-18T10:00:00.000000+00:00", vehicle_id=1))
    store.insert_if_absent(_record("2026-10-18T10:00:01.000000+00:00", vehicle_id=2))

    assert store.query_recent(0) == []
    assert len(store.query_recent(100)) == 2
    assert len(store.query_recent(1)) == 1


def test_negative_limit_is_rejected(store: PositionStore) -> None:
    with pytest.raises(ValueError):
        store.query_recent(-1)


def test_concurrent_duplicate_inserts_store_one_row(store: PositionStore) -> None:
    barrier = threading.Barrier(8)
    results = []
    lock = threading.Lock()

    def worker(n: int) -> None:
        barrier.wait()
        inserted = store.insert_if_absent(_record(f"2026-10-18T10:00:0{n}.000000+00:00"))
        with lock:
            results.append(inserted)

    threads = [threading.Thread(target=worker, args=(n,)) for n in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert results.count(True) == 1
    assert store.count() == 1


def test_closed_store_raises_store_error(store: PositionStore) -> None:
    store.close()
    with pytest.raises(StoreError):
        store.query_recent(10)
    with pytest.raises(StoreError):
        store.insert_if_absent(_record("2026-10-18T10:00:00.000000+00:00"))


def test_sqlite_failures_surface_as_store_error(tmp_path: Path) -> None:
    broken = PositionStore(tmp_path / "never-initialized.db")
    with pytest.raises(StoreError):
        broken.query_recent(10)


def test_schema_failure_is_store_error(tmp_path: Path) -> None:
    blocker = tmp_path / "file"
    blocker.write_text("not a directory")
    with pytest.raises(StoreError):
        PositionStore(blocker / "positions.db").ensure_schema()


def test_daily_summary_groups_by_capture_day(store: PositionStore) -> None:
    store.insert_if_absent(_record("2026-10-17T23:59:00.000000+00:00", vehicle_id=1, hora="20:59:00"))
    store.insert_if_absent(_record("2026-10-18T08:00:00.000000+00:00", vehicle_id=1, hora="05:00:00"))
    store.insert_if_absent(_record("2026-10-18T09:30:00.000000+00:00", vehicle_id=2, hora="06:30:00"))

    days = store.daily_summary()

    assert [day["date"] for day in days] == ["2026-10-18", "2026-10-17"]
    assert days[0]["row_count"] == 2
    assert days[0]["first_entry_time"] == "05:00:00"
    assert days[0]["last_entry_time"] == "06:30:00"
    assert days[0]["last_captured_at"] == "2026-10-18T09:30:00.000000+00:00"
    assert days[1]["row_count"] == 1


def test_daily_summary_of_empty_store(store: PositionStore) -> None:
    assert store.daily_summary() == []
