from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, List, Optional

import psycopg2
import psycopg2.extras
import pytest

from backend.app.billing import (
    BillingEventType,
    CanonicalBillingEvent,
    ConcurrencyConflict,
    DuplicateTransaction,
    PersistenceError,
    PostgresEntitlementRepository,
)
from backend.app.billing.models import AppliedTransaction, IdentityBinding
from backend.app.entitlements import EntitlementRecord, EntitlementStatus

T0 = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


class _ScriptedCursor:
    """Returns queued results in order; records every statement it sees."""

    def __init__(self, connection: "_ScriptedConnection") -> None:
        self._connection = connection
        self._current: Any = None
        self.rowcount = 0
        self.closed = False

    def execute(self, query: str, params: Optional[Any] = None) -> None:
        normalized = " ".join(query.split())
        self._connection.statements.append((normalized, params))
        if normalized.startswith("SET LOCAL"):
            return
        if self._connection.error is not None:
            raise self._connection.error
        result = self._connection.results.pop(0) if self._connection.results else None
        self._current = result
        if isinstance(result, int):
            self.rowcount = result
        elif isinstance(result, list):
            self.rowcount = len(result)
        else:
            self.rowcount = 1 if result else 0

    def fetchone(self):
        if isinstance(self._current, list):
            return self._current[0] if self._current else None
        if isinstance(self._current, dict):
            return self._current
        return None

    def fetchall(self):
        if isinstance(self._current, list):
            return self._current
        return []

    def close(self) -> None:
        self.closed = True


class _ScriptedConnection:
    def __init__(self, *results: Any, error: Optional[Exception] = None) -> None:
        self.results: List[Any] = list(results)
        self.statements: List[tuple] = []
        self.cursor_factories: List[Any] = []
        self.error = error
        self.cursors: List[_ScriptedCursor] = []

    def cursor(self, cursor_factory=None):
        self.cursor_factories.append(cursor_factory)
        cursor = _ScriptedCursor(self)
        self.cursors.append(cursor)
        return cursor


def _row(**overrides) -> dict:
    row = {
        "user_id": "user-1",
        "status": "active",
        "trial_start": None,
        "trial_end": None,
        "subscription_start": T0,
        "subscription_end": T0 + timedelta(days=30),
        "plan_id": "premium_monthly",
        "is_premium": True,
        "billing_provider_user_id": "rc-user-1",
        "auto_renew": True,
        "last_synced_at": None,
        "grace_period_ends_at": None,
        "latest_purchase_at": T0,
        "active_transaction_id": "txn-1",
        "version": 3,
        "created_at": T0,
        "updated_at": T0,
    }
    row.update(overrides)
    return row


def _record(**overrides) -> EntitlementRecord:
    fields = dict(
        user_id="user-1",
        status=EntitlementStatus.ACTIVE,
        subscription_end=T0 + timedelta(days=30),
        is_premium=True,
        version=3,
        created_at=T0,
        updated_at=T0,
    )
    fields.update(overrides)
    return EntitlementRecord(**fields)


def _applied() -> AppliedTransaction:
    return AppliedTransaction(
        idempotency_key="txn-1:renewal",
        transaction_id="txn-1",
        user_id="user-1",
        event_type=BillingEventType.RENEWAL,
        purchased_at=T0,
        expires_at=T0 + timedelta(days=30),
        received_at=T0,
        applied_at=T0,
    )


def test_get_record_sets_statement_timeout_and_maps_row() -> None:
    conn = _ScriptedConnection(_row())
    repository = PostgresEntitlementRepository(conn=conn, statement_timeout_ms=1500)

    record = repository.get_record("user-1")

    assert conn.statements[0] == ("SET LOCAL statement_timeout = %s", (1500,))
    assert conn.cursor_factories == [psycopg2.extras.RealDictCursor]
    assert record.status == EntitlementStatus.ACTIVE
    assert record.version == 3
    assert record.subscription_end == T0 + timedelta(days=30)
    assert conn.cursors[0].closed is True


def test_get_record_returns_none_for_unknown_user() -> None:
    repository = PostgresEntitlementRepository(conn=_ScriptedConnection(None))

    assert repository.get_record("missing") is None


def test_create_record_reports_existing_row_on_conflict() -> None:
    conn = _ScriptedConnection(None, _row(status="trial", version=1))
    repository = PostgresEntitlementRepository(conn=conn, statement_timeout_ms=0)

    record, created = repository.create_record(_record(status=EntitlementStatus.TRIAL, version=0))

    assert created is False
    assert record.status == EntitlementStatus.TRIAL
    assert "ON CONFLICT (user_id) DO NOTHING" in conn.statements[0][0]


def test_save_record_raises_conflict_when_version_moved() -> None:
    conn = _ScriptedConnection(None)
    repository = PostgresEntitlementRepository(conn=conn)

    with pytest.raises(ConcurrencyConflict):
        repository.save_record(_record(), expected_version=2)

    update_sql, params = conn.statements[1]
    assert "WHERE user_id = %(user_id)s AND version = %(expected_version)s" in update_sql
    assert params["expected_version"] == 2
    assert params["status"] == "active"


def test_save_record_writes_ledger_in_same_cursor() -> None:
    conn = _ScriptedConnection(_row(version=4), 1)
    repository = PostgresEntitlementRepository(conn=conn)

    saved = repository.save_record(_record(), expected_version=3, applied=_applied())

    assert saved.version == 4
    assert len(conn.cursors) == 1
    assert "INSERT INTO billing_applied_transactions" in conn.statements[2][0]
    assert conn.statements[2][1][0] == "txn-1:renewal"


def test_save_record_raises_duplicate_when_ledger_row_exists() -> None:
    conn = _ScriptedConnection(_row(version=4), 0)
    repository = PostgresEntitlementRepository(conn=conn)

    with pytest.raises(DuplicateTransaction):
        repository.save_record(_record(), expected_version=3, applied=_applied())


def test_driver_errors_become_persistence_errors() -> None:
    conn = _ScriptedConnection(error=psycopg2.OperationalError("canceling statement due to statement timeout"))
    repository = PostgresEntitlementRepository(conn=conn)

    with pytest.raises(PersistenceError) as exc:
        repository.has_applied("txn-1:renewal")

    assert "statement timeout" in str(exc.value)


def test_bind_identity_returns_previous_owner() -> None:
    conn = _ScriptedConnection({"user_id": "user-a"}, 1)
    repository = PostgresEntitlementRepository(conn=conn)

    previous = repository.bind_identity(IdentityBinding(billing_provider_user_id="rc-1", user_id="user-b", bound_at=T0))

    assert previous == "user-a"
    assert "FOR UPDATE" in conn.statements[1][0]
    assert conn.statements[2][1] == ("rc-1", "user-b", T0)


def test_park_event_reports_first_insert_and_serializes_payload() -> None:
    conn = _ScriptedConnection({"inserted": True})
    repository = PostgresEntitlementRepository(conn=conn)
    event = CanonicalBillingEvent(
        event_type=BillingEventType.RENEWAL,
        billing_provider_user_id="rc-anon",
        transaction_id="txn-9",
        purchased_at=T0,
        received_at=T0,
        expires_at=T0 + timedelta(days=30),
    )

    assert repository.park_event(event, parked_at=T0) is True

    params = conn.statements[1][1]
    assert params[0] == "txn-9:renewal"
    assert isinstance(params[3], psycopg2.extras.Json)
    assert params[3].adapted["transaction_id"] == "txn-9"


def test_list_parked_events_rebuilds_canonical_events() -> None:
    payload = {
        "event_type": "renewal",
        "billing_provider_user_id": "rc-anon",
        "transaction_id": "txn-9",
        "purchased_at": T0.isoformat(),
        "received_at": T0.isoformat(),
    }
    conn = _ScriptedConnection([{"payload": payload, "parked_at": T0, "attempts": 2}])
    repository = PostgresEntitlementRepository(conn=conn)

    parked = repository.list_parked_events("rc-anon")

    assert len(parked) == 1
    assert parked[0].event.event_type == BillingEventType.RENEWAL
    assert parked[0].attempts == 2


def test_prune_returns_deleted_row_count() -> None:
    conn = _ScriptedConnection(7)
    repository = PostgresEntitlementRepository(conn=conn)

    assert repository.prune_applied_transactions(older_than=T0) == 7
