"""Periodic housekeeping for entitlement records and the applied-transaction ledger."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from ..entitlements.models import ensure_utc, utc_now
from .exceptions import BillingError
from .service import BillingService

logger = logging.getLogger("billing.maintenance")


@dataclass(frozen=True)
class MaintenanceSummary:
    """Counts produced by one maintenance run."""

    records_expired: int = 0
    expiry_failures: int = 0
    parked_replayed: int = 0
    ledger_pruned: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "records_expired": self.records_expired,
            "expiry_failures": self.expiry_failures,
            "parked_replayed": self.parked_replayed,
            "ledger_pruned": self.ledger_pruned,
        }


class BillingMaintenance:
    """Expires lapsed records, replays parked events, and prunes the ledger."""

    def __init__(self, service: BillingService, *, batch_size: int = 500) -> None:
        self._service = service
        self._batch_size = batch_size

    def expire_lapsed(self, now: datetime) -> tuple[int, int]:
        expired = 0
        failures = 0
        repository = self._service.repository
        for record in repository.list_records_due(now, limit=self._batch_size):
            try:
                result = self._service.engine.refresh_record(record.user_id)
            except BillingError:
                failures += 1
                logger.warning("Failed to advance entitlement for %s", record.user_id, exc_info=True)
                continue
            if result is not None and result.previous is not None:
                expired += 1
                self._service.publish_result(result)
        return expired, failures

    def replay_parked(self) -> int:
        replayed = 0
        repository = self._service.repository
        for billing_id in repository.list_resolvable_parked_identities():
            count = self._service.engine.replay_parked(billing_id)
            user_id = repository.resolve_user_id(billing_id)
            if count and user_id:
                self._service.entitlement_invalidator.invalidate_user(user_id)
            replayed += count
        return replayed

    def prune_ledger(self, now: datetime) -> int:
        cutoff = now - timedelta(days=self._service.config.ledger_retention_days)
        return self._service.repository.prune_applied_transactions(older_than=cutoff)

    def run(self, now: Optional[datetime] = None) -> MaintenanceSummary:
        current_time = ensure_utc(now) if now is not None else utc_now()
        expired, failures = self.expire_lapsed(current_time)
        replayed = self.replay_parked()
        pruned = self.prune_ledger(current_time)
        summary = MaintenanceSummary(
            records_expired=expired,
            expiry_failures=failures,
            parked_replayed=replayed,
            ledger_pruned=pruned,
        )
        logger.info("Billing maintenance completed", extra=summary.to_dict())
        return summary


__all__ = ["BillingMaintenance", "MaintenanceSummary"]
