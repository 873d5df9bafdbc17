"""Exceptions raised by the billing reconciliation subsystem."""
from __future__ import annotations

from typing import Optional


class BillingError(Exception):
    """Base class for billing failures."""


class ValidationError(BillingError):
    """Raised when a provider payload is malformed or missing required fields."""


class UnresolvedIdentity(BillingError):
    """Raised when a billing provider user id is not bound to any user yet."""

    def __init__(self, billing_provider_user_id: str) -> None:
        super().__init__(f"No user bound to billing identity {billing_provider_user_id!r}")
        self.billing_provider_user_id = billing_provider_user_id


class ConcurrencyConflict(BillingError):
    """Raised when an entitlement record changed between read and write."""

    def __init__(self, user_id: str, expected_version: Optional[int]) -> None:
        super().__init__(f"Entitlement record for {user_id!r} changed (expected version {expected_version})")
        self.user_id = user_id
        self.expected_version = expected_version


class ProviderUnavailable(BillingError):
    """Raised when the billing provider cannot be reached or returns garbage."""


class ReconciliationFailed(BillingError):
    """Raised when retries are exhausted without a successful write."""


class PersistenceError(BillingError):
    """Raised when the entitlement store fails or times out."""


class DuplicateTransaction(BillingError):
    """Raised by the store when a ledger key was recorded concurrently."""

    def __init__(self, idempotency_key: str) -> None:
        super().__init__(f"Transaction already applied: {idempotency_key}")
        self.idempotency_key = idempotency_key


__all__ = [
    "BillingError",
    "ConcurrencyConflict",
    "DuplicateTransaction",
    "PersistenceError",
    "ProviderUnavailable",
    "ReconciliationFailed",
    "UnresolvedIdentity",
    "ValidationError",
]
