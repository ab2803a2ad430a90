"""Per-entry TTL cache used by the price, LP and wallet layers."""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Callable, Generic, Hashable, List, TypeVar

from cachetools import TLRUCache

T = TypeVar("T")

Clock = Callable[[], float]


@dataclass(frozen=True, slots=True)
class CacheEntry(Generic[T]):
    value: T
    expires_at: float

    def is_live(self, now: float) -> bool:
        return now < self.expires_at


def _entry_expiry(_key: Hashable, entry: CacheEntry, _now: float) -> float:
    return entry.expires_at


class TTLCache:
    """Key/value store where every entry carries its own absolute expiry.

    Entries are stored as :class:`CacheEntry` inside a
    :class:`cachetools.TLRUCache` whose time-to-use function simply returns
    the precomputed ``expires_at``.  The clock is injectable so tests can
    advance time deterministically.  Expired entries are invisible to
    :meth:`get` but may linger until :meth:`cleanup_expired` or the next
    :meth:`set` purges them.
    """

    def __init__(self, *, clock: Clock | None = None, maxsize: int = 4096) -> None:
        self.clock: Clock = clock or time.monotonic
        self.maxsize = maxsize
        self._data: TLRUCache = TLRUCache(maxsize=maxsize, ttu=_entry_expiry, timer=self.clock)

    # basic dict API -------------------------------------------------------
    def set(self, key: Hashable, value: Any, ttl: float) -> None:
        """Store ``value`` until ``now + ttl``; last write wins."""

        expires_at = self.clock() + float(ttl)
        # TLRUCache silently skips already-expired items, so drop the old
        # entry first to keep last-write-wins for ttl <= 0.
        self._data.pop(key, None)
        self._data[key] = CacheEntry(value, expires_at)

    def entry(self, key: Hashable) -> CacheEntry | None:
        entry = self._data.get(key)
        if entry is None or not entry.is_live(self.clock()):
            return None
        return entry

    def get(self, key: Hashable, default: Any = None) -> Any:
        entry = self.entry(key)
        if entry is None:
            return default
        return entry.value

    def __contains__(self, key: Hashable) -> bool:
        return self.entry(key) is not None

    def pop(self, key: Hashable, default: Any = None) -> Any:
        entry = self._data.pop(key, None)
        if entry is None:
            return default
        return entry.value

    def clear(self) -> None:
        self._data.clear()

    def cleanup_expired(self) -> int:
        """Drop every expired entry and return how many were removed."""

        before = len(self._data)
        self._data.expire(self.clock())
        return before - len(self._data)

    def keys(self, namespace: str | None = None) -> List[Hashable]:
        """Live keys, optionally only tuple keys whose first item is ``namespace``."""

        live = [key for key in list(self._data) if key in self]
        if namespace is None:
            return live
        return [key for key in live if _in_namespace(key, namespace)]

    def clear_namespace(self, namespace: str) -> int:
        self._data.expire(self.clock())
        doomed = [key for key in list(self._data) if _in_namespace(key, namespace)]
        for key in doomed:
            self._data.pop(key, None)
        return len(doomed)

    def __len__(self) -> int:
        return len(self.keys())

    def stats(self, namespace: str | None = None) -> dict[str, int]:
        if namespace is None:
            total = len(self._data)
        else:
            total = sum(1 for key in list(self._data) if _in_namespace(key, namespace))
        live = len(self.keys(namespace))
        return {"entries": total, "live": live, "expired": total - live}


def _in_namespace(key: Hashable, namespace: str) -> bool:
    return isinstance(key, tuple) and bool(key) and key[0] == namespace


__all__ = ["CacheEntry", "Clock", "TTLCache"]
