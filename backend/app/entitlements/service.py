"""Service answering access questions through a short-lived record cache."""
from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Protocol

from .access import compute_access
from .cache import EntitlementCache
from .models import AccessDecision, EntitlementRecord, EntitlementStatus

logger = logging.getLogger("billing.access")


class EntitlementRecordReader(Protocol):
    """Read side of the entitlement store."""

    def get_record(self, user_id: str) -> Optional[EntitlementRecord]:
        ...


class EntitlementService:
    """Reads entitlement records, caches them, and computes access decisions."""

    def __init__(
        self,
        repository: EntitlementRecordReader,
        cache: EntitlementCache,
        *,
        clock: Optional[Callable[[], datetime]] = None,
        ttl_seconds: int = 30,
        fail_open_for_premium: bool = False,
    ) -> None:
        self._repository = repository
        self._cache = cache
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._ttl_seconds = max(ttl_seconds, 1)
        self._fail_open_for_premium = fail_open_for_premium

    @staticmethod
    def _cache_key(user_id: str) -> str:
        return f"entitlement:{user_id}"

    def get_record(self, user_id: str) -> Optional[EntitlementRecord]:
        """Return the user's record, from cache when fresh. Store errors propagate."""

        cache_key = self._cache_key(user_id)
        cached = self._cache.get(cache_key)
        if cached is not None:
            return cached

        record = self._repository.get_record(user_id)
        if record is not None:
            expires_at = self._clock() + timedelta(seconds=self._ttl_seconds)
            self._cache.set(cache_key, record, expires_at, {f"user:{user_id}"})
        return record

    def get_access(self, user_id: str, *, now: Optional[datetime] = None) -> AccessDecision:
        """Access decision for ``user_id``. Never raises; fails closed by default.

        With ``fail_open_for_premium`` the last cached record is honoured during
        store outages, but only when that record was premium.
        """

        evaluated_at = now or self._clock()
        try:
            record = self.get_record(user_id)
        except Exception:
            logger.warning("Entitlement store unavailable for %s", user_id, exc_info=True)
            if self._fail_open_for_premium:
                stale = self._cache.get_stale(self._cache_key(user_id))
                if stale is not None and stale.status == EntitlementStatus.ACTIVE:
                    logger.warning("Serving cached premium record for %s during outage", user_id)
                    return compute_access(stale, evaluated_at)
            return AccessDecision.denied(evaluated_at=evaluated_at)
        return compute_access(record, evaluated_at)

    def invalidate_user(self, user_id: str) -> None:
        self._cache.invalidate({f"user:{user_id}"})


__all__ = ["EntitlementRecordReader", "EntitlementService"]
