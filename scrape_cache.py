import logging
import os
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Optional, Tuple

logger = logging.getLogger(__name__)

CACHE_TTL_SECONDS = float(os.getenv("CACHE_TTL_SECONDS", "600"))
CACHE_MAX_ENTRIES = int(os.getenv("CACHE_MAX_ENTRIES", "200"))

CacheKey = Tuple[str, str, str]


def make_key(digits: str, year: Optional[str], month: Optional[str]) -> CacheKey:
    return (digits, str(year or ""), str(month or ""))


@dataclass
class CacheEntry:
    value: Any
    ts: float


class ScrapeCache:
    """
    Results keyed by (CNPJ digits, year, month), expiring ``ttl_seconds`` after insertion.

    Capacity eviction drops the oldest position. A hit moves the entry to the newest
    position but keeps its original timestamp, so reads never extend the lifetime.
    """

    def __init__(
        self,
        ttl_seconds: float = CACHE_TTL_SECONDS,
        max_entries: int = CACHE_MAX_ENTRIES,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._entries: "OrderedDict[CacheKey, CacheEntry]" = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: CacheKey) -> Optional[Any]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._clock() - entry.ts > self.ttl_seconds:
            del self._entries[key]
            logger.debug(f"[cache] expired {key}")
            return None
        self._entries.move_to_end(key)
        return entry.value

    def set(self, key: CacheKey, value: Any) -> None:
        if key in self._entries:
            del self._entries[key]
        while len(self._entries) >= self.max_entries > 0:
            evicted, _ = self._entries.popitem(last=False)
            logger.debug(f"[cache] evicted {evicted}")
        self._entries[key] = CacheEntry(value=value, ts=self._clock())

    def clear(self) -> None:
        self._entries.clear()
