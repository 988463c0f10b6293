"""Process-local read-through cache with TTL, LRU eviction and pattern invalidation."""

from __future__ import annotations

import fnmatch
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Optional, Union

import structlog

from app.core.settings import get_settings

logger = structlog.get_logger(__name__)


@dataclass
class _Entry:
    value: Any
    expires_at: float


def records_key(company_id: Union[int, str, None], suffix: str) -> str:
    return f"records:company:{company_id}:{suffix}"


def company_patterns(company_id: Optional[int]) -> list[str]:
    # Cross-company listings are cached under "all" and go stale with any write.
    return [
        records_key(company_id, "*"),
        records_key("all", "*"),
        f"dashboard:stats:company:{company_id}",
    ]


class TTLCache:
    def __init__(
        self,
        *,
        ttl_s: float = 30.0,
        max_entries: int = 1000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl_s = ttl_s
        self.max_entries = max(1, max_entries)
        self._clock = clock
        self._entries: "OrderedDict[str, _Entry]" = OrderedDict()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if entry.expires_at <= self._clock():
                del self._entries[key]
                return None
            self._entries.move_to_end(key)
            return entry.value

    def set(self, key: str, value: Any, ttl_s: Optional[float] = None) -> None:
        expires_at = self._clock() + (self.ttl_s if ttl_s is None else ttl_s)
        with self._lock:
            self._entries[key] = _Entry(value=value, expires_at=expires_at)
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)

    def get_or_load(self, key: str, loader: Callable[[], Any]) -> Any:
        value = self.get(key)
        if value is not None:
            return value
        value = loader()
        self.set(key, value)
        return value

    def invalidate_pattern(self, pattern: str) -> int:
        with self._lock:
            doomed = [key for key in self._entries if fnmatch.fnmatchcase(key, pattern)]
            for key in doomed:
                del self._entries[key]
        return len(doomed)

    def invalidate_company(self, company_id: Optional[int]) -> int:
        removed = sum(self.invalidate_pattern(pattern) for pattern in company_patterns(company_id))
        logger.debug("cache_invalidated", company_id=company_id, removed=removed)
        return removed

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


_settings = get_settings()
record_cache = TTLCache(ttl_s=_settings.cache_ttl_s, max_entries=_settings.cache_max_entries)
