"""Downstream query-cache invalidation after a successful import."""
import logging
import threading
from typing import Protocol, runtime_checkable

logger = logging.getLogger(__name__)


@runtime_checkable
class CacheService(Protocol):
    """Anything that can drop cached query results."""

    def invalidate(self) -> None: ...


class NullCache:
    """Used when no cache is wired in."""

    def invalidate(self) -> None:
        logger.debug("No cache configured, nothing to invalidate")


class InMemoryCache:
    """Small thread-safe dict cache for the query layer; invalidate() clears it."""

    def __init__(self):
        self._lock = threading.Lock()
        self._data: dict[str, object] = {}
        self.invalidations = 0

    def get(self, key: str, default=None):
        with self._lock:
            return self._data.get(key, default)

    def set(self, key: str, value: object) -> None:
        with self._lock:
            self._data[key] = value

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)

    def invalidate(self) -> None:
        with self._lock:
            dropped = len(self._data)
            self._data.clear()
            self.invalidations += 1
        logger.info("Cache invalidated (%d entries dropped)", dropped)
