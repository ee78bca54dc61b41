# image_rewriter/cache.py
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class CacheEntry:
    value: Any
    fetched_at: datetime


class TTLCache:
    """Key -> value store where each entry is only served inside a freshness window.

    The clock is injectable so tests can move time.
    """

    def __init__(self, ttl: timedelta, clock: Callable[[], datetime] = utcnow):
        self.ttl = ttl
        self.clock = clock
        self._entries: dict[str, CacheEntry] = {}

    def is_fresh(self, entry: CacheEntry) -> bool:
        return self.clock() - entry.fetched_at < self.ttl

    def get(self, key: str, default: Any = None) -> Any:
        entry = self._entries.get(key)
        if entry is None or not self.is_fresh(entry):
            return default
        return entry.value

    def get_stale(self, key: str, default: Any = None) -> Any:
        """Returns the stored value even if it has expired."""
        entry = self._entries.get(key)
        return default if entry is None else entry.value

    def set(self, key: str, value: Any, fetched_at: Optional[datetime] = None) -> None:
        self._entries[key] = CacheEntry(value=value, fetched_at=fetched_at or self.clock())

    def clear(self) -> None:
        self._entries.clear()
