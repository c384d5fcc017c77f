"""Webhook intake: log, route, reconcile and finalise one provider event."""
from __future__ import annotations

import logging
from typing import Dict, Mapping, Optional, Protocol

from .event_log import EventLog
from .exceptions import DuplicateEvent, UnresolvedAggregate, describe_exception
from .models import (
    ProcessorDomain,
    ReconciliationResult,
    WebhookLogEntry,
    WebhookLogStatus,
    WebhookStatusReport,
)
from .routing import ProcessorRouter

logger = logging.getLogger(__name__)


class Reconciler(Protocol):
    """Applies events of one :class:`ProcessorDomain` to its aggregate."""

    domain: ProcessorDomain

    def reconcile(self, event_type: str, payload: Mapping[str, object]) -> ReconciliationResult:
        ...


class WebhookProcessor:
    """Runs events through the router and reconcilers with the log as the boundary.

    Reconciliation failures never escape :meth:`process_event`; they end up on
    the log entry as ``error`` (or ``ignored`` when nothing matched).
    """

    def __init__(
        self,
        event_log: EventLog,
        router: ProcessorRouter,
        reconcilers: Mapping[ProcessorDomain, Reconciler],
        *,
        cancel_url: Optional[str] = None,
    ) -> None:
        missing = set(ProcessorDomain) - set(reconcilers)
        if missing:
            names = ", ".join(sorted(domain.value for domain in missing))
            raise ValueError(f"No reconciler registered for: {names}")
        self.event_log = event_log
        self.router = router
        self.reconcilers: Dict[ProcessorDomain, Reconciler] = dict(reconcilers)
        self.cancel_url = cancel_url

    def process_event(self, event_id: str, event_type: str, payload: Mapping[str, object]) -> WebhookLogEntry:
        domain = self.router.classify(event_type, payload)
        try:
            entry = self.event_log.open(event_id, event_type, payload, domain)
        except DuplicateEvent as exc:
            if exc.entry is None:
                raise
            logger.info(
                "Duplicate webhook event",
                extra={"event_id": event_id, "event_type": event_type, "status": exc.entry.status.value},
            )
            return exc.entry
        return self.run(entry)

    def dispatch(self, entry: WebhookLogEntry) -> ReconciliationResult:
        domain = self.router.classify(entry.event_type, entry.payload)
        return self.reconcilers[domain].reconcile(entry.event_type, entry.payload)

    def run(self, entry: WebhookLogEntry, *, ignored_reason: Optional[str] = None) -> WebhookLogEntry:
        """Dispatch an owned ``processing`` entry and write its terminal status."""

        log_context = {
            "event_id": entry.event_id,
            "event_type": entry.event_type,
            "domain": entry.processor_domain.value,
            "retry_count": entry.retry_count,
        }
        try:
            result = self.dispatch(entry)
        except UnresolvedAggregate as exc:
            logger.info("Webhook event ignored", extra={**log_context, "reason": str(exc)})
            return self.event_log.mark_ignored(entry, ignored_reason or str(exc))
        except Exception as exc:
            logger.exception("Webhook event failed", extra=log_context)
            return self.event_log.mark_error(
                entry,
                str(exc) or type(exc).__name__,
                describe_exception(exc, retry_count=entry.retry_count),
            )

        finished = self.event_log.mark_success(entry, result.aggregate_id)
        logger.info(
            "Webhook event processed",
            extra={**log_context, "aggregate_id": result.aggregate_id, "detail": result.detail},
        )
        return finished

    def check_status(self, correlation_key: str) -> WebhookStatusReport:
        """Report the state of the newest log entry mentioning ``correlation_key``."""

        entry = self.event_log.latest_for_correlation_key(correlation_key)
        if entry is None:
            return WebhookStatusReport(status="pending", message="Payment in progress")

        common = {
            "event_id": entry.event_id,
            "event_type": entry.event_type,
            "updated_at": entry.updated_at,
        }
        if entry.status == WebhookLogStatus.SUCCESS:
            return WebhookStatusReport(status="success", message="Payment processed successfully", **common)
        if entry.status == WebhookLogStatus.ERROR:
            return WebhookStatusReport(
                status="error",
                message="Payment processing failed",
                error_details=entry.error_message,
                redirect_url=self.cancel_url,
                **common,
            )
        return WebhookStatusReport(status=entry.status.value, message="Payment processing in progress", **common)


__all__ = ["Reconciler", "WebhookProcessor"]
