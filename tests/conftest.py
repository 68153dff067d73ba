from __future__ import annotations

import json
from pathlib import Path
from typing import Dict, List, Optional
from unittest.mock import Mock

import pytest
import requests

from bondis.fetchers.jaha import FetchPayloadError, FetchTransportError
from bondis.models import RawPosition
from bondis.store import PositionStore


@pytest.fixture
def store(tmp_path: Path) -> PositionStore:
    position_store = PositionStore(tmp_path / "positions.db")
    position_store.ensure_schema()
    return position_store


def make_response(
    body: object = None,
    status_code: int = 200,
    raw: Optional[bytes] = None,
    headers: Optional[Dict[str, str]] = None,
) -> Mock:
    content = raw if raw is not None else json.dumps(body).encode()
    response = Mock()
    response.status_code = status_code
    response.headers = headers or {}
    response.iter_content.return_value = [content[i : i + 4] for i in range(0, len(content), 4)]
    if status_code >= 400:
        response.raise_for_status.side_effect = requests.HTTPError(f"{status_code} error")
    return response


class FakeClient:
    """Stands in for SourceClient with canned per-line results."""

    def __init__(self, results: Dict[int, object], lines: Optional[List[int]] = None) -> None:
        self.results = results
        self.lines = lines
        self.calls: List[int] = []

    def fetch_positions(self, line_id: int) -> List[RawPosition]:
        self.calls.append(line_id)
        result = self.results.get(line_id, [])
        if isinstance(result, Exception):
            raise result
        return list(result)

    def fetch_lines(self) -> List[int]:
        if self.lines is None:
            raise FetchTransportError("catalogue unavailable")
        return list(self.lines)


def transport_error(line_id: int) -> FetchTransportError:
    return FetchTransportError("connection reset", line_id)


def payload_error(line_id: int) -> FetchPayloadError:
    return FetchPayloadError("Positions response missing positions list.", line_id)
