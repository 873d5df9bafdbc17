"""Persistence layer for entitlement records, the applied-transaction ledger, and identities."""
from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
from typing import Iterator, List, Optional, Protocol, Tuple

import psycopg2
import psycopg2.extras
from psycopg2.extensions import connection as PgConnection
from psycopg2.extensions import cursor as PgCursor

from ..database import managed_connection
from ..entitlements.models import EntitlementRecord, EntitlementStatus
from .exceptions import ConcurrencyConflict, DuplicateTransaction, PersistenceError
from .models import (
    AppliedTransaction,
    BindingConflict,
    CanonicalBillingEvent,
    IdentityBinding,
    ParkedEvent,
)


class EntitlementRepository(Protocol):
    """Persistence operations required by the reconciliation engine."""

    def get_record(self, user_id: str) -> Optional[EntitlementRecord]:
        ...

    def create_record(self, record: EntitlementRecord) -> Tuple[EntitlementRecord, bool]:
        ...

    def save_record(
        self,
        record: EntitlementRecord,
        *,
        expected_version: int,
        applied: Optional[AppliedTransaction] = None,
    ) -> EntitlementRecord:
        ...

    def has_applied(self, idempotency_key: str) -> bool:
        ...

    def record_applied_transaction(self, applied: AppliedTransaction) -> bool:
        ...

    def prune_applied_transactions(self, *, older_than: datetime) -> int:
        ...

    def list_records_due(self, now: datetime, *, limit: int = 500) -> List[EntitlementRecord]:
        ...

    def resolve_user_id(self, billing_provider_user_id: str) -> Optional[str]:
        ...

    def bind_identity(self, binding: IdentityBinding) -> Optional[str]:
        ...

    def list_bindings_for_user(self, user_id: str) -> List[IdentityBinding]:
        ...

    def record_binding_conflict(self, conflict: BindingConflict) -> None:
        ...

    def park_event(self, event: CanonicalBillingEvent, *, parked_at: datetime) -> bool:
        ...

    def list_parked_events(self, billing_provider_user_id: str) -> List[ParkedEvent]:
        ...

    def list_resolvable_parked_identities(self, *, limit: int = 100) -> List[str]:
        ...

    def delete_parked_event(self, idempotency_key: str) -> None:
        ...


_RECORD_COLUMNS = (
    "user_id",
    "status",
    "trial_start",
    "trial_end",
    "subscription_start",
    "subscription_end",
    "plan_id",
    "is_premium",
    "billing_provider_user_id",
    "auto_renew",
    "last_synced_at",
    "grace_period_ends_at",
    "latest_purchase_at",
    "active_transaction_id",
    "cancelled_transaction_id",
    "renewal_intent_at",
)


def _row_to_record(row: dict) -> EntitlementRecord:
    return EntitlementRecord(
        user_id=str(row["user_id"]),
        status=EntitlementStatus(row["status"]),
        trial_start=row.get("trial_start"),
        trial_end=row.get("trial_end"),
        subscription_start=row.get("subscription_start"),
        subscription_end=row.get("subscription_end"),
        plan_id=row.get("plan_id"),
        is_premium=bool(row.get("is_premium")),
        billing_provider_user_id=row.get("billing_provider_user_id"),
        auto_renew=bool(row.get("auto_renew")),
        last_synced_at=row.get("last_synced_at"),
        grace_period_ends_at=row.get("grace_period_ends_at"),
        latest_purchase_at=row.get("latest_purchase_at"),
        active_transaction_id=row.get("active_transaction_id"),
        cancelled_transaction_id=row.get("cancelled_transaction_id"),
        renewal_intent_at=row.get("renewal_intent_at"),
        version=int(row.get("version") or 0),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _record_params(record: EntitlementRecord) -> dict:
    params = {column: getattr(record, column) for column in _RECORD_COLUMNS}
    params["status"] = record.status.value
    return params


def _row_to_binding(row: dict) -> IdentityBinding:
    return IdentityBinding(
        billing_provider_user_id=row["billing_provider_user_id"],
        user_id=str(row["user_id"]),
        bound_at=row["bound_at"],
    )


def _row_to_parked(row: dict) -> ParkedEvent:
    return ParkedEvent(
        event=CanonicalBillingEvent.model_validate(row["payload"]),
        parked_at=row["parked_at"],
        attempts=int(row.get("attempts") or 0),
    )


class PostgresEntitlementRepository:
    """Concrete repository persisting entitlement state in PostgreSQL."""

    def __init__(self, *, conn: Optional[PgConnection] = None, statement_timeout_ms: int = 5000) -> None:
        self._conn = conn
        self._statement_timeout_ms = statement_timeout_ms

    @contextmanager
    def _cursor(self) -> Iterator[PgCursor]:
        try:
            with managed_connection(self._conn) as (connection, _managed):
                cursor = connection.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
                try:
                    if self._statement_timeout_ms:
                        cursor.execute("SET LOCAL statement_timeout = %s", (int(self._statement_timeout_ms),))
                    yield cursor
                finally:
                    cursor.close()
        except psycopg2.Error as exc:
            raise PersistenceError(str(exc).strip() or exc.__class__.__name__) from exc

    def get_record(self, user_id: str) -> Optional[EntitlementRecord]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM entitlement_records
                WHERE user_id = %s
                LIMIT 1
                """,
                (user_id,),
            )
            row = cursor.fetchone()
            return _row_to_record(row) if row else None

    def create_record(self, record: EntitlementRecord) -> Tuple[EntitlementRecord, bool]:
        """Insert ``record`` unless one already exists; return the stored row."""

        with self._cursor() as cursor:
            params = _record_params(record)
            params["created_at"] = record.created_at
            cursor.execute(
                """
                INSERT INTO entitlement_records (
                    user_id, status, trial_start, trial_end, subscription_start, subscription_end,
                    plan_id, is_premium, billing_provider_user_id, auto_renew, last_synced_at,
                    grace_period_ends_at, latest_purchase_at, active_transaction_id,
                    cancelled_transaction_id, renewal_intent_at, version, created_at, updated_at
                )
                VALUES (%(user_id)s, %(status)s, %(trial_start)s, %(trial_end)s, %(subscription_start)s,
                        %(subscription_end)s, %(plan_id)s, %(is_premium)s, %(billing_provider_user_id)s,
                        %(auto_renew)s, %(last_synced_at)s, %(grace_period_ends_at)s,
                        %(latest_purchase_at)s, %(active_transaction_id)s,
                        %(cancelled_transaction_id)s, %(renewal_intent_at)s, 1, %(created_at)s, %(created_at)s)
                ON CONFLICT (user_id) DO NOTHING
                RETURNING *
                """,
                params,
            )
            row = cursor.fetchone()
            if row:
                return _row_to_record(row), True
            cursor.execute("SELECT * FROM entitlement_records WHERE user_id = %s", (record.user_id,))
            existing = cursor.fetchone()
            if not existing:
                raise PersistenceError(f"Failed to create entitlement record for {record.user_id}")
            return _row_to_record(existing), False

    def save_record(
        self,
        record: EntitlementRecord,
        *,
        expected_version: int,
        applied: Optional[AppliedTransaction] = None,
    ) -> EntitlementRecord:
        """Compare-and-swap on ``version``; the ledger row commits in the same transaction."""

        with self._cursor() as cursor:
            params = _record_params(record)
            params["expected_version"] = expected_version
            params["updated_at"] = record.updated_at
            cursor.execute(
                """
                UPDATE entitlement_records
                SET status = %(status)s,
                    trial_start = %(trial_start)s,
                    trial_end = %(trial_end)s,
                    subscription_start = %(subscription_start)s,
                    subscription_end = %(subscription_end)s,
                    plan_id = %(plan_id)s,
                    is_premium = %(is_premium)s,
                    billing_provider_user_id = %(billing_provider_user_id)s,
                    auto_renew = %(auto_renew)s,
                    last_synced_at = %(last_synced_at)s,
                    grace_period_ends_at = %(grace_period_ends_at)s,
                    latest_purchase_at = %(latest_purchase_at)s,
                    active_transaction_id = %(active_transaction_id)s,
                    cancelled_transaction_id = %(cancelled_transaction_id)s,
                    renewal_intent_at = %(renewal_intent_at)s,
                    version = version + 1,
                    updated_at = %(updated_at)s
                WHERE user_id = %(user_id)s AND version = %(expected_version)s
                RETURNING *
                """,
                params,
            )
            row = cursor.fetchone()
            if not row:
                raise ConcurrencyConflict(record.user_id, expected_version)
            if applied is not None and not self._insert_applied(cursor, applied):
                raise DuplicateTransaction(applied.idempotency_key)
            return _row_to_record(row)

    @staticmethod
    def _insert_applied(cursor: PgCursor, applied: AppliedTransaction) -> bool:
        cursor.execute(
            """
            INSERT INTO billing_applied_transactions (
                idempotency_key, transaction_id, user_id, event_type,
                purchased_at, expires_at, received_at, applied_at
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (idempotency_key) DO NOTHING
            """,
            (
                applied.idempotency_key,
                applied.transaction_id,
                applied.user_id,
                applied.event_type.value,
                applied.purchased_at,
                applied.expires_at,
                applied.received_at,
                applied.applied_at,
            ),
        )
        return cursor.rowcount > 0

    def has_applied(self, idempotency_key: str) -> bool:
        with self._cursor() as cursor:
            cursor.execute(
                "SELECT 1 FROM billing_applied_transactions WHERE idempotency_key = %s LIMIT 1",
                (idempotency_key,),
            )
            return cursor.fetchone() is not None

    def record_applied_transaction(self, applied: AppliedTransaction) -> bool:
        with self._cursor() as cursor:
            return self._insert_applied(cursor, applied)

    def prune_applied_transactions(self, *, older_than: datetime) -> int:
        with self._cursor() as cursor:
            cursor.execute(
                """
                DELETE FROM billing_applied_transactions
                WHERE COALESCE(expires_at, purchased_at) < %s
                """,
                (older_than,),
            )
            return cursor.rowcount

    def list_records_due(self, now: datetime, *, limit: int = 500) -> List[EntitlementRecord]:
        """Records whose time-driven transition is overdue."""

        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM entitlement_records
                WHERE (status = 'trial' AND (trial_end IS NULL OR trial_end <= %(now)s))
                   OR (status IN ('active', 'cancelled') AND (subscription_end IS NULL OR subscription_end <= %(now)s))
                   OR (status = 'past_due' AND GREATEST(grace_period_ends_at, subscription_end) <= %(now)s)
                   OR (status = 'past_due' AND grace_period_ends_at IS NULL AND subscription_end IS NULL)
                   OR (is_premium AND (status <> 'active' OR subscription_end <= %(now)s))
                ORDER BY updated_at ASC
                LIMIT %(limit)s
                """,
                {"now": now, "limit": limit},
            )
            rows = cursor.fetchall() or []
            return [_row_to_record(row) for row in rows]

    def resolve_user_id(self, billing_provider_user_id: str) -> Optional[str]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT user_id
                FROM billing_identity_bindings
                WHERE billing_provider_user_id = %s
                LIMIT 1
                """,
                (billing_provider_user_id,),
            )
            row = cursor.fetchone()
            return str(row["user_id"]) if row else None

    def bind_identity(self, binding: IdentityBinding) -> Optional[str]:
        """Upsert the binding and return the user it previously pointed at, if any."""

        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT user_id
                FROM billing_identity_bindings
                WHERE billing_provider_user_id = %s
                FOR UPDATE
                """,
                (binding.billing_provider_user_id,),
            )
            row = cursor.fetchone()
            previous = str(row["user_id"]) if row else None
            cursor.execute(
                """
                INSERT INTO billing_identity_bindings (billing_provider_user_id, user_id, bound_at)
                VALUES (%s, %s, %s)
                ON CONFLICT (billing_provider_user_id) DO UPDATE SET
                    user_id = EXCLUDED.user_id,
                    bound_at = EXCLUDED.bound_at
                """,
                (binding.billing_provider_user_id, binding.user_id, binding.bound_at),
            )
            return previous

    def list_bindings_for_user(self, user_id: str) -> List[IdentityBinding]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT billing_provider_user_id, user_id, bound_at
                FROM billing_identity_bindings
                WHERE user_id = %s
                ORDER BY bound_at DESC
                """,
                (user_id,),
            )
            rows = cursor.fetchall() or []
            return [_row_to_binding(row) for row in rows]

    def record_binding_conflict(self, conflict: BindingConflict) -> None:
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO billing_identity_conflicts (
                    billing_provider_user_id, previous_user_id, new_user_id, detected_at
                )
                VALUES (%s, %s, %s, %s)
                """,
                (
                    conflict.billing_provider_user_id,
                    conflict.previous_user_id,
                    conflict.new_user_id,
                    conflict.detected_at,
                ),
            )

    def park_event(self, event: CanonicalBillingEvent, *, parked_at: datetime) -> bool:
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO billing_parked_events (
                    idempotency_key, billing_provider_user_id, purchased_at, payload, parked_at
                )
                VALUES (%s, %s, %s, %s, %s)
                ON CONFLICT (idempotency_key) DO UPDATE SET
                    attempts = billing_parked_events.attempts + 1
                RETURNING (xmax = 0) AS inserted
                """,
                (
                    event.idempotency_key,
                    event.billing_provider_user_id,
                    event.purchased_at,
                    psycopg2.extras.Json(event.model_dump(mode="json")),
                    parked_at,
                ),
            )
            row = cursor.fetchone()
            return bool(row and row.get("inserted"))

    def list_parked_events(self, billing_provider_user_id: str) -> List[ParkedEvent]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT payload, parked_at, attempts
                FROM billing_parked_events
                WHERE billing_provider_user_id = %s
                ORDER BY purchased_at ASC, parked_at ASC
                """,
                (billing_provider_user_id,),
            )
            rows = cursor.fetchall() or []
            return [_row_to_parked(row) for row in rows]

    def list_resolvable_parked_identities(self, *, limit: int = 100) -> List[str]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT DISTINCT parked.billing_provider_user_id
                FROM billing_parked_events AS parked
                JOIN billing_identity_bindings AS bindings
                  ON bindings.billing_provider_user_id = parked.billing_provider_user_id
                ORDER BY parked.billing_provider_user_id
                LIMIT %s
                """,
                (limit,),
            )
            rows = cursor.fetchall() or []
            return [row["billing_provider_user_id"] for row in rows]

    def delete_parked_event(self, idempotency_key: str) -> None:
        with self._cursor() as cursor:
            cursor.execute(
                "DELETE FROM billing_parked_events WHERE idempotency_key = %s",
                (idempotency_key,),
            )


__all__ = ["EntitlementRepository", "PostgresEntitlementRepository"]
