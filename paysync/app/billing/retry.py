"""Re-drive of failed and stuck webhook log entries."""
from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from .event_log import EventLog
from .events import normalize_event_type
from .exceptions import UnresolvedAggregate, describe_exception
from .models import BillingWebhookEventType, WebhookLogEntry, WebhookLogStatus
from .processor import WebhookProcessor
from .subscriptions import SubscriptionSynthesizer

logger = logging.getLogger(__name__)

IGNORED_ON_RETRY_REASON = "Event not processed on retry"


class RetryCoordinator:
    """Walks ``error`` entries (and abandoned ``processing`` ones) through the processor again.

    Attempts are bounded by the caller: each pass takes at most ``limit``
    entries and the scheduler passes ``max_attempts`` as a ceiling on the
    per-entry retry counter.
    """

    def __init__(
        self,
        event_log: EventLog,
        processor: WebhookProcessor,
        synthesizer: SubscriptionSynthesizer,
    ) -> None:
        self.event_log = event_log
        self.processor = processor
        self.synthesizer = synthesizer

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def retry_errors(self, limit: int, *, max_attempts: Optional[int] = None) -> int:
        successes = 0
        for entry in self.event_log.list_errors(limit, max_retry_count=max_attempts):
            claimed = self.event_log.reopen_for_retry(entry)
            if claimed is None:
                logger.debug("Retry claim lost", extra={"event_id": entry.event_id})
                continue
            if self._attempt(claimed).status == WebhookLogStatus.SUCCESS:
                successes += 1

        logger.info("Webhook retry pass finished", extra={"limit": limit, "successes": successes})
        return successes

    def redrive_stuck(self, older_than: timedelta, limit: int) -> int:
        cutoff = self._now() - older_than
        successes = 0
        for entry in self.event_log.list_stuck(cutoff, limit):
            claimed = self.event_log.reclaim_stuck(entry)
            if claimed is None:
                continue
            logger.warning(
                "Re-driving webhook event stuck in processing",
                extra={"event_id": entry.event_id, "stuck_since": entry.updated_at.isoformat()},
            )
            if self._attempt(claimed).status == WebhookLogStatus.SUCCESS:
                successes += 1
        return successes

    def _attempt(self, entry: WebhookLogEntry) -> WebhookLogEntry:
        if normalize_event_type(entry.event_type) == BillingWebhookEventType.SUBSCRIPTION_CREATED.value:
            try:
                self.synthesizer.ensure_from_event(entry.payload)
            except UnresolvedAggregate as exc:
                return self.event_log.mark_ignored(entry, f"{IGNORED_ON_RETRY_REASON}: {exc}")
            except Exception as exc:
                logger.warning(
                    "Subscription synthesis failed",
                    extra={"event_id": entry.event_id, "code": getattr(exc, "code", None)},
                )
                return self.event_log.mark_error(
                    entry,
                    str(exc) or type(exc).__name__,
                    describe_exception(exc, retry_count=entry.retry_count),
                )
        return self.processor.run(entry, ignored_reason=IGNORED_ON_RETRY_REASON)


__all__ = ["IGNORED_ON_RETRY_REASON", "RetryCoordinator"]
