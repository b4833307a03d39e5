"""
Key-value cache with per-entry TTL, an optional size bound and an atomic
compare-and-set, shared by the profile store, the feed cache and the session
bookkeeping. A Redis adapter would implement the same interface.
"""
import fnmatch
import time
from abc import ABC, abstractmethod
from collections import OrderedDict
from threading import Lock
from typing import Callable, Generic, List, NamedTuple, Optional, TypeVar

T = TypeVar("T")


class CacheInterface(ABC, Generic[T]):
    """Abstract interface for cache implementations."""

    @abstractmethod
    def get(self, key: str) -> Optional[T]:
        """Live value for `key`, or None."""

    @abstractmethod
    def set(self, key: str, value: T, ttl_seconds: Optional[float] = None) -> None:
        """Store `value`; `ttl_seconds` overrides the default TTL."""

    @abstractmethod
    def exists(self, key: str) -> bool:
        """True if `key` holds a live value; does not count as a use."""

    @abstractmethod
    def delete(self, key: str) -> bool:
        """Remove `key`; True if it was present."""

    @abstractmethod
    def delete_matching(self, pattern: str) -> int:
        """Remove every key matching a glob pattern; returns the count."""

    @abstractmethod
    def compare_and_set(
        self,
        key: str,
        expected: Optional[T],
        value: T,
        ttl_seconds: Optional[float] = None,
    ) -> bool:
        """Store `value` only if the current value is `expected` (identity)."""

    @abstractmethod
    def clear(self) -> None:
        """Drop everything."""


class _Entry(NamedTuple):
    value: object
    expires_at: Optional[float]


class InMemoryCache(CacheInterface[T]):
    """
    Thread-safe in-process cache.

    Entries expire `default_ttl_seconds` after being written (never, if None).
    With `max_entries` set the least recently used entry is evicted on
    overflow. A non-positive TTL stores an already-expired entry.

    Usage:
        cache: CacheInterface[PersonalizationProfile] = InMemoryCache(default_ttl_seconds=1800)
        cache.set("viewer_123", profile)
        cache.compare_and_set("viewer_123", profile, updated_profile)
    """

    def __init__(
        self,
        default_ttl_seconds: Optional[float] = None,
        max_entries: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._entries: "OrderedDict[str, _Entry]" = OrderedDict()
        self._default_ttl = default_ttl_seconds
        self._max_entries = max_entries
        self._clock = clock
        self._lock = Lock()

    def get(self, key: str) -> Optional[T]:
        with self._lock:
            entry = self._lookup(key)
            return entry.value if entry else None

    def set(self, key: str, value: T, ttl_seconds: Optional[float] = None) -> None:
        with self._lock:
            self._write(key, value, ttl_seconds)

    def exists(self, key: str) -> bool:
        with self._lock:
            entry = self._entries.get(key)
            return entry is not None and not self._expired(entry, self._clock())

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def delete_matching(self, pattern: str) -> int:
        with self._lock:
            doomed = [key for key in self._entries if fnmatch.fnmatchcase(key, pattern)]
            for key in doomed:
                del self._entries[key]
        return len(doomed)

    def compare_and_set(
        self,
        key: str,
        expected: Optional[T],
        value: T,
        ttl_seconds: Optional[float] = None,
    ) -> bool:
        """
        Atomic check-then-write.

        `expected=None` means the key must be absent (or expired). The
        comparison is by identity, so callers pass the object they read.
        """
        with self._lock:
            entry = self._lookup(key)
            if (entry.value if entry else None) is not expected:
                return False
            self._write(key, value, ttl_seconds)
            return True

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def keys(self, pattern: str = "*") -> List[str]:
        """Live keys matching a glob pattern, least recently used first."""
        now = self._clock()
        with self._lock:
            return [
                key
                for key, entry in self._entries.items()
                if not self._expired(entry, now) and fnmatch.fnmatchcase(key, pattern)
            ]

    def size(self) -> int:
        """Stored entries, including expired ones not yet purged."""
        with self._lock:
            return len(self._entries)

    def cleanup_expired(self) -> int:
        """Purge expired entries; returns how many were removed."""
        now = self._clock()
        with self._lock:
            expired = [key for key, entry in self._entries.items() if self._expired(entry, now)]
            for key in expired:
                del self._entries[key]
        return len(expired)

    # Helpers below run with the lock held

    @staticmethod
    def _expired(entry: _Entry, now: float) -> bool:
        return entry.expires_at is not None and now >= entry.expires_at

    def _lookup(self, key: str) -> Optional[_Entry]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._expired(entry, self._clock()):
            del self._entries[key]
            return None
        self._entries.move_to_end(key)
        return entry

    def _write(self, key: str, value: T, ttl_seconds: Optional[float]) -> None:
        ttl = self._default_ttl if ttl_seconds is None else ttl_seconds
        expires_at = None if ttl is None else self._clock() + ttl
        self._entries[key] = _Entry(value, expires_at)
        self._entries.move_to_end(key)
        if self._max_entries is not None:
            while len(self._entries) > self._max_entries:
                self._entries.popitem(last=False)
