"""Scheduler integration for webhook retries, stuck-entry redrive and stale sweeps."""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from threading import Event, Lock, Thread
from typing import Callable, Dict, Optional

from paysync.app.services.billing import get_billing_sync_service, get_reconciliation_config
from paysync.config import ReconciliationConfig

logger = logging.getLogger(__name__)

RETRY_JOB = "retry_errors"
REDRIVE_JOB = "redrive_stuck"
SWEEP_JOB = "sweep_stale_pending"

_scheduler_lock = Lock()
_workers: Dict[str, "_JobWorker"] = {}


def _empty_metrics() -> Dict[str, object]:
    return {
        "runs": 0,
        "items_processed": 0,
        "failures": 0,
        "last_run_at": None,
        "last_success_at": None,
        "last_error": None,
    }


_JOB_METRICS: Dict[str, Dict[str, object]] = {
    RETRY_JOB: _empty_metrics(),
    REDRIVE_JOB: _empty_metrics(),
    SWEEP_JOB: _empty_metrics(),
}
_metrics_lock = Lock()


def _record_run_start(job: str, started_at: datetime) -> None:
    with _metrics_lock:
        metrics = _JOB_METRICS[job]
        metrics["runs"] = int(metrics.get("runs", 0)) + 1
        metrics["last_run_at"] = started_at


def _record_run_success(job: str, completed_at: datetime, processed: int) -> None:
    with _metrics_lock:
        metrics = _JOB_METRICS[job]
        metrics["items_processed"] = int(metrics.get("items_processed", 0)) + processed
        metrics["last_success_at"] = completed_at
        metrics["last_error"] = None


def _record_run_failure(job: str, error: Exception) -> None:
    with _metrics_lock:
        metrics = _JOB_METRICS[job]
        metrics["failures"] = int(metrics.get("failures", 0)) + 1
        metrics["last_error"] = f"{type(error).__name__}: {error}"


def _run_job(job: str, action: Callable[[], int], *, now: Optional[datetime] = None) -> int:
    current_time = now or datetime.now(timezone.utc)
    if current_time.tzinfo is None:
        current_time = current_time.replace(tzinfo=timezone.utc)

    _record_run_start(job, current_time)
    try:
        processed = action()
    except Exception as exc:
        _record_run_failure(job, exc)
        logger.exception("Billing job failed", extra={"job": job})
        raise
    else:
        _record_run_success(job, current_time, processed)
        logger.info("Billing job completed", extra={"job": job, "processed": processed})
        return processed


def run_retry_job(config: Optional[ReconciliationConfig] = None, *, now: Optional[datetime] = None) -> int:
    config = config or get_reconciliation_config()
    service = get_billing_sync_service()
    return _run_job(
        RETRY_JOB,
        lambda: service.retry_errors(config.retry_batch_limit, max_attempts=config.retry_max_attempts),
        now=now,
    )


def run_redrive_job(config: Optional[ReconciliationConfig] = None, *, now: Optional[datetime] = None) -> int:
    config = config or get_reconciliation_config()
    service = get_billing_sync_service()
    return _run_job(
        REDRIVE_JOB,
        lambda: service.redrive_stuck(
            older_than_minutes=config.stuck_processing_minutes,
            limit=config.retry_batch_limit,
        ),
        now=now,
    )


def run_sweep_job(config: Optional[ReconciliationConfig] = None, *, now: Optional[datetime] = None) -> int:
    config = config or get_reconciliation_config()
    service = get_billing_sync_service()
    return _run_job(
        SWEEP_JOB,
        lambda: service.sweep_stale_pending(config.stale_pending_hours, now=now),
        now=now,
    )


class _JobWorker(Thread):
    def __init__(self, name: str, job: Callable[[], int], *, initial_delay: float, interval: float):
        super().__init__(daemon=True, name=f"billing-{name}")
        self.job_name = name
        self._job = job
        self._initial_delay = max(0.0, initial_delay)
        self._interval = max(1.0, interval)
        self._stop = Event()

    def stop(self) -> None:
        self._stop.set()

    def run(self) -> None:  # pragma: no cover - thread execution
        if self._stop.wait(self._initial_delay):
            return
        while not self._stop.is_set():
            try:
                self._job()
            except Exception:
                # Errors are logged inside _run_job; continue schedule.
                pass
            if self._stop.wait(self._interval):
                break


def start_billing_scheduler(config: Optional[ReconciliationConfig] = None) -> None:
    config = config or get_reconciliation_config()
    with _scheduler_lock:
        if _workers:
            return
        _workers[RETRY_JOB] = _JobWorker(
            RETRY_JOB,
            lambda: run_retry_job(config),
            initial_delay=config.retry_interval_seconds,
            interval=config.retry_interval_seconds,
        )
        _workers[REDRIVE_JOB] = _JobWorker(
            REDRIVE_JOB,
            lambda: run_redrive_job(config),
            initial_delay=config.stuck_processing_minutes * 60,
            interval=config.retry_interval_seconds,
        )
        _workers[SWEEP_JOB] = _JobWorker(
            SWEEP_JOB,
            lambda: run_sweep_job(config),
            initial_delay=config.sweep_interval_seconds,
            interval=config.sweep_interval_seconds,
        )
        for worker in _workers.values():
            worker.start()
        logger.info(
            "Billing scheduler started",
            extra={
                "retry_interval_seconds": config.retry_interval_seconds,
                "sweep_interval_seconds": config.sweep_interval_seconds,
            },
        )


def shutdown_billing_scheduler() -> None:
    with _scheduler_lock:
        workers = list(_workers.values())
        for worker in workers:
            worker.stop()
        for worker in workers:
            worker.join(timeout=1.0)
        _workers.clear()
        logger.info("Billing scheduler stopped")


def get_scheduler_metrics() -> Dict[str, Dict[str, object]]:
    with _metrics_lock:
        snapshot: Dict[str, Dict[str, object]] = {}
        for key, value in _JOB_METRICS.items():
            snapshot[key] = {
                **value,
                "last_run_at": value["last_run_at"].isoformat() if value.get("last_run_at") else None,
                "last_success_at": value["last_success_at"].isoformat() if value.get("last_success_at") else None,
            }
        return snapshot


def _reset_metrics_for_testing() -> None:  # pragma: no cover - used in tests only
    with _metrics_lock:
        for metrics in _JOB_METRICS.values():
            metrics.update(_empty_metrics())


__all__ = [
    "get_scheduler_metrics",
    "run_redrive_job",
    "run_retry_job",
    "run_sweep_job",
    "shutdown_billing_scheduler",
    "start_billing_scheduler",
]
