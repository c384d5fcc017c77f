"""Error taxonomy raised while reconciling provider events."""
from __future__ import annotations

import traceback
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from .models import WebhookLogEntry

_MAX_TRACE_LINES = 40


@dataclass(eq=False)
class BillingSyncError(Exception):
    """Base class for reconciliation failures recorded on the event log."""

    message: str
    code: str = "billing_sync_error"
    retryable: bool = False
    detail: Optional[Mapping[str, Any]] = None

    def __post_init__(self) -> None:
        super().__init__(self.message)

    def __str__(self) -> str:
        return self.message


@dataclass(eq=False)
class DuplicateEvent(BillingSyncError):
    """The event id was already seen and is not eligible for reprocessing."""

    entry: Optional[WebhookLogEntry] = None
    code: str = "duplicate_event"


@dataclass(eq=False)
class UnresolvedAggregate(BillingSyncError):
    """No local aggregate matches the event; recorded as ignored."""

    code: str = "unresolved_aggregate"


@dataclass(eq=False)
class SubscriptionAwaitingSynthesis(BillingSyncError):
    """A lifecycle event arrived for a subscription that does not exist locally yet."""

    code: str = "subscription_not_synthesized"
    retryable: bool = True


@dataclass(eq=False)
class TransientProviderFailure(BillingSyncError):
    """Network, rate-limit or server failure talking to the provider."""

    code: str = "provider_unavailable"
    retryable: bool = True


@dataclass(eq=False)
class ProviderLookupFailed(BillingSyncError):
    """The provider reported that the requested object does not exist."""

    code: str = "provider_lookup_failed"


@dataclass(eq=False)
class DataInconsistency(BillingSyncError):
    """Local and provider state disagree in a way a retry cannot fix."""

    code: str = "data_inconsistency"


@dataclass(eq=False)
class UserResolutionFailure(BillingSyncError):
    """No local user owns the provider customer referenced by the event."""

    code: str = "user_resolution_failed"


def describe_exception(exc: BaseException, *, retry_count: int = 0) -> Dict[str, object]:
    """Build the ``error_detail`` document stored on a failed log entry."""

    trace = traceback.format_exception(type(exc), exc, exc.__traceback__)
    lines = "".join(trace).splitlines()[-_MAX_TRACE_LINES:]
    detail: Dict[str, object] = {
        "exception": type(exc).__name__,
        "code": getattr(exc, "code", "unexpected_error"),
        "retryable": bool(getattr(exc, "retryable", False)),
        "trace": "\n".join(lines),
        "retry_count": retry_count,
    }
    extra = getattr(exc, "detail", None)
    if extra:
        detail["context"] = dict(extra)
    return detail


__all__ = [
    "BillingSyncError",
    "DataInconsistency",
    "DuplicateEvent",
    "ProviderLookupFailed",
    "SubscriptionAwaitingSynthesis",
    "TransientProviderFailure",
    "UnresolvedAggregate",
    "UserResolutionFailure",
    "describe_exception",
]
