from __future__ import annotations

from dataclasses import dataclass
import threading
import time
from typing import Any, Callable, Dict, TypeVar


DEFAULT_TTL = 10.0

T = TypeVar("T")


@dataclass(frozen=True)
class CachedEntry:
    key: str
    value: Any
    fetched_at: float
    ttl: float

    def is_live(self, now: float) -> bool:
        return now - self.fetched_at < self.ttl


class StatusCache:
    """Memoizes expensive status queries for a short window.

    Errors are never cached: a producer that raises leaves the map untouched
    and the next ``get`` calls it again.
    """

    def __init__(self, default_ttl: float = DEFAULT_TTL, clock: Callable[[], float] = time.monotonic) -> None:
        self.default_ttl = default_ttl
        self._clock = clock
        self._entries: Dict[str, CachedEntry] = {}
        self._lock = threading.Lock()

    def get(self, key: str, producer: Callable[[], T], ttl: float | None = None) -> T:
        ttl = self.default_ttl if ttl is None else ttl
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and ttl > 0 and self._clock() - entry.fetched_at < ttl:
                return entry.value
        value = producer()
        if ttl > 0:
            with self._lock:
                self._entries[key] = CachedEntry(key=key, value=value, fetched_at=self._clock(), ttl=ttl)
        return value

    def peek(self, key: str) -> Any | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or not entry.is_live(self._clock()):
                return None
            return entry.value

    def invalidate(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def invalidate_prefix(self, prefix: str) -> None:
        with self._lock:
            for key in [key for key in self._entries if key.startswith(prefix)]:
                del self._entries[key]

    def invalidate_all(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: str) -> bool:
        with self._lock:
            entry = self._entries.get(key)
            return entry is not None and entry.is_live(self._clock())
