import logging
import time
from collections import OrderedDict
from typing import Any, Optional

logger = logging.getLogger(__name__)


class GradeCache:
    """
    Best-effort TTL cache for expensive read-only grade views.

    Created once at application start and handed to the services that read
    through it. Nothing depends on a hit: with ``max_size=0`` every lookup
    misses and behaviour is unchanged.
    """

    def __init__(self, ttl_seconds: float = 300, max_size: int = 1000):
        self.ttl_seconds = ttl_seconds
        self.max_size = max_size
        # key -> (stored_at, value), insertion ordered so the first entry is the oldest
        self._entries: "OrderedDict[str, tuple]" = OrderedDict()

    def get(self, key: str) -> Optional[Any]:
        entry = self._entries.get(key)
        if entry is None:
            return None

        stored_at, value = entry
        if time.monotonic() - stored_at > self.ttl_seconds:
            del self._entries[key]
            return None

        return value

    def set(self, key: str, value: Any) -> None:
        if self.max_size <= 0:
            return

        if key in self._entries:
            del self._entries[key]
        elif len(self._entries) >= self.max_size:
            oldest_key, _ = self._entries.popitem(last=False)
            logger.debug(f"Grade cache full, evicted {oldest_key}")

        self._entries[key] = (time.monotonic(), value)

    def invalidate(self, key: str) -> None:
        self._entries.pop(key, None)

    def invalidate_prefix(self, prefix: str) -> None:
        for key in [k for k in self._entries if k.startswith(prefix)]:
            del self._entries[key]

    def clear(self) -> None:
        self._entries.clear()

    def size(self) -> int:
        return len(self._entries)
