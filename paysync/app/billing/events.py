"""Event vocabulary shared by routing, resolution and reconciliation."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Mapping, Optional

from .models import BillingWebhookEventType

PROVIDER_EVENT_ALIASES = {
    "checkout.session.completed": BillingWebhookEventType.CHECKOUT_COMPLETED.value,
    "customer.subscription.created": BillingWebhookEventType.SUBSCRIPTION_CREATED.value,
    "customer.subscription.updated": BillingWebhookEventType.SUBSCRIPTION_UPDATED.value,
    "customer.subscription.deleted": BillingWebhookEventType.SUBSCRIPTION_DELETED.value,
}


def normalize_event_type(event_type: str) -> str:
    """Map provider specific event names onto the canonical vocabulary."""

    cleaned = (event_type or "").strip()
    return PROVIDER_EVENT_ALIASES.get(cleaned, cleaned)


def event_family(event_type: str) -> str:
    """Return the object family of an event, e.g. ``invoice`` for ``invoice.paid``."""

    return normalize_event_type(event_type).split(".", 1)[0]


@dataclass(frozen=True)
class CorrelationKeys:
    """Provider references carried by an event payload."""

    checkout_session_ref: Optional[str] = None
    payment_intent_ref: Optional[str] = None
    subscription_ref: Optional[str] = None
    invoice_ref: Optional[str] = None
    customer_ref: Optional[str] = None


def ref_from(value: object) -> Optional[str]:
    """Return the id of a reference that may be a plain string or an expanded object."""

    if isinstance(value, str):
        return value or None
    if isinstance(value, Mapping):
        identifier = value.get("id")
        return str(identifier) if identifier else None
    return None


def _nested(payload: Mapping[str, object], *path: str) -> object:
    current: object = payload
    for key in path:
        if not isinstance(current, Mapping):
            return None
        current = current.get(key)
    return current


def invoice_subscription_ref(payload: Mapping[str, object]) -> Optional[str]:
    return ref_from(payload.get("subscription")) or ref_from(
        _nested(payload, "parent", "subscription_details", "subscription")
    )


def extract_correlation_keys(event_type: str, payload: Mapping[str, object]) -> CorrelationKeys:
    """Collect the correlation keys relevant to ``event_type`` from ``payload``."""

    family = event_family(event_type)
    own_id = ref_from(payload.get("id"))
    customer_ref = ref_from(payload.get("customer"))

    if family == "checkout":
        return CorrelationKeys(
            checkout_session_ref=own_id,
            payment_intent_ref=ref_from(payload.get("payment_intent")),
            subscription_ref=ref_from(payload.get("subscription")),
            invoice_ref=ref_from(payload.get("invoice")),
            customer_ref=customer_ref,
        )
    if family == "payment_intent":
        return CorrelationKeys(
            payment_intent_ref=own_id,
            invoice_ref=ref_from(payload.get("invoice")),
            customer_ref=customer_ref,
        )
    if family == "charge":
        return CorrelationKeys(
            payment_intent_ref=ref_from(payload.get("payment_intent")),
            invoice_ref=ref_from(payload.get("invoice")),
            customer_ref=customer_ref,
        )
    if family == "subscription":
        return CorrelationKeys(subscription_ref=own_id, customer_ref=customer_ref)
    if family == "invoice":
        return CorrelationKeys(
            payment_intent_ref=ref_from(payload.get("payment_intent")),
            subscription_ref=invoice_subscription_ref(payload),
            invoice_ref=own_id,
            customer_ref=customer_ref,
        )
    return CorrelationKeys(customer_ref=customer_ref)


def timestamp_from(value: object) -> Optional[datetime]:
    """Parse a provider timestamp (unix seconds or ISO-8601) into aware UTC."""

    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, bool):
        raise TypeError("Unsupported timestamp value")
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    if isinstance(value, str):
        if value.isdigit():
            return datetime.fromtimestamp(int(value), tz=timezone.utc)
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    raise TypeError("Unsupported timestamp value")


__all__ = [
    "CorrelationKeys",
    "PROVIDER_EVENT_ALIASES",
    "event_family",
    "extract_correlation_keys",
    "invoice_subscription_ref",
    "normalize_event_type",
    "ref_from",
    "timestamp_from",
]
