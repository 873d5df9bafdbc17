"""Background scheduling for billing maintenance runs."""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from threading import Event, Lock, Thread
from typing import Dict, Optional

from backend.app.billing.maintenance import MaintenanceSummary
from backend.app.services.billing import get_billing_maintenance

logger = logging.getLogger(__name__)

_scheduler_lock = Lock()
_worker: Optional["_MaintenanceWorker"] = None

_MAINTENANCE_METRICS: Dict[str, object] = {
    "runs": 0,
    "records_expired": 0,
    "parked_replayed": 0,
    "ledger_pruned": 0,
    "failures": 0,
    "last_run_at": None,
    "last_success_at": None,
    "last_error": None,
}
_metrics_lock = Lock()


def _record_run_start(started_at: datetime) -> None:
    with _metrics_lock:
        _MAINTENANCE_METRICS["last_run_at"] = started_at
        _MAINTENANCE_METRICS["runs"] = int(_MAINTENANCE_METRICS["runs"]) + 1


def _record_run_success(completed_at: datetime, summary: MaintenanceSummary) -> None:
    with _metrics_lock:
        metrics = _MAINTENANCE_METRICS
        metrics["records_expired"] = int(metrics["records_expired"]) + summary.records_expired
        metrics["parked_replayed"] = int(metrics["parked_replayed"]) + summary.parked_replayed
        metrics["ledger_pruned"] = int(metrics["ledger_pruned"]) + summary.ledger_pruned
        metrics["failures"] = int(metrics["failures"]) + summary.expiry_failures
        metrics["last_success_at"] = completed_at
        metrics["last_error"] = None


def _record_run_failure(error: Exception) -> None:
    with _metrics_lock:
        _MAINTENANCE_METRICS["failures"] = int(_MAINTENANCE_METRICS["failures"]) + 1
        _MAINTENANCE_METRICS["last_error"] = f"{type(error).__name__}: {error}"


def run_maintenance_job(*, now: Optional[datetime] = None) -> MaintenanceSummary:
    current_time = now or datetime.now(timezone.utc)
    if current_time.tzinfo is None:
        current_time = current_time.replace(tzinfo=timezone.utc)

    _record_run_start(current_time)
    try:
        summary = get_billing_maintenance().run(current_time)
    except Exception as exc:
        _record_run_failure(exc)
        logger.exception("Billing maintenance job failed")
        raise
    _record_run_success(current_time, summary)
    return summary


class _MaintenanceWorker(Thread):
    def __init__(self, *, initial_delay: float, interval: float):
        super().__init__(daemon=True, name="billing-maintenance")
        self._initial_delay = max(0.0, initial_delay)
        self._interval = max(1.0, interval)
        self._stop_event = Event()

    def stop(self) -> None:
        self._stop_event.set()

    def run(self) -> None:  # pragma: no cover - thread execution
        if self._stop_event.wait(self._initial_delay):
            return
        while not self._stop_event.is_set():
            try:
                run_maintenance_job()
            except Exception:
                # Logged inside run_maintenance_job; keep the schedule going.
                pass
            if self._stop_event.wait(self._interval):
                break


def start_maintenance_scheduler(*, interval: float, initial_delay: float = 30.0) -> None:
    global _worker
    with _scheduler_lock:
        if _worker is not None:
            return
        _worker = _MaintenanceWorker(initial_delay=initial_delay, interval=interval)
        _worker.start()
        logger.info(
            "Billing maintenance scheduler started",
            extra={"interval_seconds": interval, "initial_delay_seconds": initial_delay},
        )


def shutdown_maintenance_scheduler() -> None:
    global _worker
    with _scheduler_lock:
        worker = _worker
        _worker = None
        if worker is None:
            return
        worker.stop()
        worker.join(timeout=1.0)
        logger.info("Billing maintenance scheduler stopped")


def is_scheduler_running() -> bool:
    with _scheduler_lock:
        return _worker is not None


def get_maintenance_metrics() -> Dict[str, object]:
    with _metrics_lock:
        snapshot = dict(_MAINTENANCE_METRICS)
    for key in ("last_run_at", "last_success_at"):
        value = snapshot.get(key)
        snapshot[key] = value.isoformat() if isinstance(value, datetime) else None
    return snapshot


def _reset_metrics_for_testing() -> None:  # pragma: no cover - used in tests only
    with _metrics_lock:
        _MAINTENANCE_METRICS.update(
            {
                "runs": 0,
                "records_expired": 0,
                "parked_replayed": 0,
                "ledger_pruned": 0,
                "failures": 0,
                "last_run_at": None,
                "last_success_at": None,
                "last_error": None,
            }
        )


__all__ = [
    "get_maintenance_metrics",
    "is_scheduler_running",
    "run_maintenance_job",
    "shutdown_maintenance_scheduler",
    "start_maintenance_scheduler",
]
