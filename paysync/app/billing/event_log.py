"""Durable log of received provider events, keyed by provider event id."""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Dict, Mapping, Optional, Sequence

from .exceptions import DuplicateEvent
from .models import ProcessorDomain, WebhookLogEntry, WebhookLogStatus

if TYPE_CHECKING:  # pragma: no cover
    from .service import WebhookLogRepository

logger = logging.getLogger(__name__)

MAX_ERROR_MESSAGE_LENGTH = 500


class EventLog:
    """Owns the status lifecycle of :class:`WebhookLogEntry` records.

    Every transition is written through to the repository before the caller
    continues. Transitions out of ``error`` and out of a stuck ``processing``
    state are conditional updates so only one worker can own an entry.
    """

    def __init__(self, repository: "WebhookLogRepository") -> None:
        self.repository = repository

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def open(
        self,
        event_id: str,
        event_type: str,
        payload: Mapping[str, object],
        domain: ProcessorDomain,
    ) -> WebhookLogEntry:
        now = self._now()
        candidate = WebhookLogEntry(
            event_id=event_id,
            event_type=event_type,
            payload=dict(payload),
            status=WebhookLogStatus.PROCESSING,
            processor_domain=domain,
            created_at=now,
            updated_at=now,
        )
        entry, created = self.repository.insert_log_entry(candidate)
        if created:
            return entry

        if entry.status == WebhookLogStatus.ERROR:
            reopened = self.reopen_for_retry(entry)
            if reopened is not None:
                logger.info(
                    "Reopened failed webhook event on redelivery",
                    extra={"event_id": event_id, "retry_count": reopened.retry_count},
                )
                return reopened
            entry = self.repository.get_log_entry(event_id) or entry

        raise DuplicateEvent(
            f"Event {event_id} already recorded with status {entry.status.value}",
            entry=entry,
        )

    def reopen_for_retry(self, entry: WebhookLogEntry) -> Optional[WebhookLogEntry]:
        """Move an ``error`` entry back to ``processing`` and bump its retry counter."""

        claimed = entry.model_copy(
            update={
                "status": WebhookLogStatus.PROCESSING,
                "retry_count": entry.retry_count + 1,
                "updated_at": self._now(),
            }
        )
        return self.repository.transition_log_entry(
            claimed,
            expected_status=WebhookLogStatus.ERROR,
        )

    def reclaim_stuck(self, entry: WebhookLogEntry) -> Optional[WebhookLogEntry]:
        """Take over a ``processing`` entry abandoned by a crashed attempt."""

        claimed = entry.model_copy(
            update={
                "retry_count": entry.retry_count + 1,
                "updated_at": self._now(),
            }
        )
        return self.repository.transition_log_entry(
            claimed,
            expected_status=WebhookLogStatus.PROCESSING,
            expected_updated_at=entry.updated_at,
        )

    def mark_success(
        self,
        entry: WebhookLogEntry,
        related_aggregate_id: Optional[str] = None,
    ) -> WebhookLogEntry:
        return self._finish(
            entry,
            status=WebhookLogStatus.SUCCESS,
            related_aggregate_id=related_aggregate_id or entry.related_aggregate_id,
            error_message=None,
            error_detail=None,
        )

    def mark_error(
        self,
        entry: WebhookLogEntry,
        message: str,
        detail: Optional[Dict[str, object]] = None,
    ) -> WebhookLogEntry:
        return self._finish(
            entry,
            status=WebhookLogStatus.ERROR,
            related_aggregate_id=entry.related_aggregate_id,
            error_message=(message or "Unknown error")[:MAX_ERROR_MESSAGE_LENGTH],
            error_detail=detail,
        )

    def mark_ignored(self, entry: WebhookLogEntry, reason: str) -> WebhookLogEntry:
        return self._finish(
            entry,
            status=WebhookLogStatus.IGNORED,
            related_aggregate_id=entry.related_aggregate_id,
            error_message=reason[:MAX_ERROR_MESSAGE_LENGTH],
            error_detail=None,
        )

    def _finish(
        self,
        entry: WebhookLogEntry,
        *,
        status: WebhookLogStatus,
        related_aggregate_id: Optional[str],
        error_message: Optional[str],
        error_detail: Optional[Dict[str, object]],
    ) -> WebhookLogEntry:
        now = self._now()
        finished = entry.model_copy(
            update={
                "status": status,
                "related_aggregate_id": related_aggregate_id,
                "error_message": error_message,
                "error_detail": error_detail,
                "processed_at": now,
                "updated_at": now,
            }
        )
        return self.repository.save_log_entry(finished)

    def list_errors(self, limit: int, *, max_retry_count: Optional[int] = None) -> Sequence[WebhookLogEntry]:
        return self.repository.list_log_entries(
            status=WebhookLogStatus.ERROR,
            limit=limit,
            max_retry_count=max_retry_count,
        )

    def list_stuck(self, older_than: datetime, limit: int) -> Sequence[WebhookLogEntry]:
        return self.repository.list_log_entries(
            status=WebhookLogStatus.PROCESSING,
            limit=limit,
            updated_before=older_than,
        )

    def latest_for_correlation_key(self, key: str) -> Optional[WebhookLogEntry]:
        return self.repository.find_latest_log_entry(key)

    def stats(self) -> Dict[str, int]:
        counts = self.repository.count_log_entries_by_status()
        return {status.value: int(counts.get(status.value, 0)) for status in WebhookLogStatus}


__all__ = ["EventLog", "MAX_ERROR_MESSAGE_LENGTH"]
