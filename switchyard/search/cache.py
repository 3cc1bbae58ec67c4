"""TTL cache for retrieval results."""

import logging
from dataclasses import replace

from switchyard.core.protocols import Clock, ContextItem

logger = logging.getLogger(__name__)


def _copy(items: list[ContextItem]) -> list[ContextItem]:
    return [replace(item, metadata=dict(item.metadata)) for item in items]


class RetrievalCache:
    """Cache keyed by (source, query) with TTL expiry.

    When full, the oldest 30% of entries are evicted in one pass.
    """

    EVICT_FRACTION = 0.3

    def __init__(self, clock: Clock, ttl_seconds: float = 600.0, max_entries: int = 50) -> None:
        if ttl_seconds <= 0:
            msg = f"ttl_seconds must be positive, got {ttl_seconds}"
            raise ValueError(msg)
        if max_entries < 1:
            msg = f"max_entries must be >= 1, got {max_entries}"
            raise ValueError(msg)
        self.clock = clock
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._entries: dict[tuple[str, str], tuple[float, list[ContextItem]]] = {}

    def get(self, source: str, query: str) -> list[ContextItem] | None:
        key = (source, query.strip().lower())
        entry = self._entries.get(key)
        if entry is None:
            return None
        stored_at, items = entry
        if self.clock.monotonic() - stored_at > self.ttl_seconds:
            del self._entries[key]
            return None
        return _copy(items)

    def put(self, source: str, query: str, items: list[ContextItem]) -> None:
        if len(self._entries) >= self.max_entries:
            self._evict()
        self._entries[(source, query.strip().lower())] = (self.clock.monotonic(), _copy(items))

    def _evict(self) -> None:
        count = max(1, int(len(self._entries) * self.EVICT_FRACTION))
        oldest = sorted(self._entries, key=lambda k: self._entries[k][0])[:count]
        for key in oldest:
            del self._entries[key]
        logger.debug("Evicted %d retrieval cache entries", count)

    def __len__(self) -> int:
        return len(self._entries)

    def clear(self) -> None:
        self._entries.clear()
