from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, TypedDict


class PositionRow(TypedDict):
    datetime: str
    linea: int
    unidad: int
    lat: str
    lon: str
    hora: str


@dataclass(frozen=True)
class RawPosition:
    """One element of an upstream ``positions`` array, already type-checked."""

    vehicle_id: int
    lat: str
    lon: str
    hora: str


@dataclass(frozen=True)
class PositionRecord:
    captured_at: str
    line_id: int
    vehicle_id: int
    latitude: str
    longitude: str
    report_time: str

    @classmethod
    def from_raw(cls, raw: RawPosition, line_id: int, captured_at: str) -> "PositionRecord":
        return cls(
            captured_at=captured_at,
            line_id=line_id,
            vehicle_id=raw.vehicle_id,
            latitude=raw.lat,
            longitude=raw.lon,
            report_time=raw.hora,
        )

    def to_row(self) -> PositionRow:
        return {
            "datetime": self.captured_at,
            "linea": self.line_id,
            "unidad": self.vehicle_id,
            "lat": self.latitude,
            "lon": self.longitude,
            "hora": self.report_time,
        }


def capture_timestamp(now: Optional[datetime] = None) -> str:
    """Return the ingestion time as a lexically sortable UTC string."""

    moment = now or datetime.now(timezone.utc)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).isoformat(timespec="microseconds")
