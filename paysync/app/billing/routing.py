"""Classification of incoming events into reconciliation domains."""
from __future__ import annotations

from typing import Mapping, Tuple

from .events import event_family, extract_correlation_keys, normalize_event_type
from .models import BillingWebhookEventType, ProcessorDomain

_CHECKOUT_MODES = {
    "subscription": ProcessorDomain.SUBSCRIPTION,
    "payment": ProcessorDomain.PAYMENT_INTENT,
}

_PREFIX_TABLE: Tuple[Tuple[str, ProcessorDomain], ...] = (
    ("subscription.", ProcessorDomain.SUBSCRIPTION),
    ("payment_intent.", ProcessorDomain.PAYMENT_INTENT),
    ("charge.", ProcessorDomain.PAYMENT_INTENT),
)


class ProcessorRouter:
    """Pure mapping from ``(event_type, payload)`` to a :class:`ProcessorDomain`."""

    default_domain = ProcessorDomain.PAYMENT_INTENT

    def classify(self, event_type: str, payload: Mapping[str, object]) -> ProcessorDomain:
        normalized = normalize_event_type(event_type)

        if normalized == BillingWebhookEventType.CHECKOUT_COMPLETED.value:
            domain = _CHECKOUT_MODES.get(str(payload.get("mode") or ""))
            if domain is not None:
                return domain

        if event_family(normalized) == "invoice":
            keys = extract_correlation_keys(normalized, payload)
            if keys.subscription_ref:
                return ProcessorDomain.SUBSCRIPTION
            if keys.payment_intent_ref:
                return ProcessorDomain.PAYMENT_INTENT

        for prefix, domain in _PREFIX_TABLE:
            if normalized.startswith(prefix):
                return domain

        return self.default_domain


__all__ = ["ProcessorRouter"]
