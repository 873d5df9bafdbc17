"""Cache abstractions for entitlement records."""
from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, Optional, Protocol, Set

from .models import EntitlementRecord


class EntitlementCache(Protocol):
    """Protocol describing cache operations used by the entitlement service."""

    def get(self, key: str) -> Optional[EntitlementRecord]:
        ...

    def get_stale(self, key: str) -> Optional[EntitlementRecord]:
        ...

    def set(self, key: str, value: EntitlementRecord, expires_at: datetime, tags: Set[str]) -> None:
        ...

    def invalidate(self, tags: Iterable[str]) -> None:
        ...


@dataclass
class _CacheEntry:
    value: EntitlementRecord
    expires_at: datetime
    tags: Set[str]

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


class InMemoryEntitlementCache:
    """Thread-safe in-process cache.

    Expired entries are kept until invalidated so :meth:`get_stale` can serve
    the last known record while the store is unavailable.
    """

    def __init__(self, *, clock: Optional[Callable[[], datetime]] = None) -> None:
        self._entries: Dict[str, _CacheEntry] = {}
        self._lock = threading.Lock()
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def get(self, key: str) -> Optional[EntitlementRecord]:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
        if not entry or entry.is_expired(now):
            return None
        return entry.value

    def get_stale(self, key: str) -> Optional[EntitlementRecord]:
        with self._lock:
            entry = self._entries.get(key)
        return entry.value if entry else None

    def set(
        self,
        key: str,
        value: EntitlementRecord,
        expires_at: datetime,
        tags: Set[str],
    ) -> None:
        if expires_at <= self._clock():
            return
        with self._lock:
            self._entries[key] = _CacheEntry(value=value, expires_at=expires_at, tags=set(tags))

    def invalidate(self, tags: Iterable[str]) -> None:
        tag_set = set(tags)
        if not tag_set:
            return
        with self._lock:
            keys_to_delete = [key for key, entry in self._entries.items() if entry.tags.intersection(tag_set)]
            for key in keys_to_delete:
                self._entries.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
