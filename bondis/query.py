from __future__ import annotations

from typing import List

from .models import PositionRow
from .store import PositionStore


DEFAULT_LIMIT = 100


class QueryService:
    """Read-only view over the most recent stored positions."""

    def __init__(self, store: PositionStore, max_limit: int = DEFAULT_LIMIT) -> None:
        self.store = store
        self.max_limit = max(0, max_limit)

    def clamp_limit(self, limit: int) -> int:
        return max(0, min(limit, self.max_limit))

    def handle_query(self, limit: int = DEFAULT_LIMIT) -> List[PositionRow]:
        records = self.store.query_recent(self.clamp_limit(limit))
        return [record.to_row() for record in records]
