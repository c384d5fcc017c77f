"""Payment state machine driven by provider events."""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Dict, FrozenSet, Mapping, Optional, Tuple

from .events import CorrelationKeys, event_family, extract_correlation_keys, normalize_event_type
from .exceptions import UnresolvedAggregate
from .invoices import provider_invoice_from_payload
from .models import (
    BillingWebhookEventType,
    Payment,
    PaymentStatus,
    ProcessorDomain,
    ProviderInvoice,
    ReconciliationResult,
)

if TYPE_CHECKING:  # pragma: no cover
    from .invoices import InvoiceService
    from .resolver import EntityResolver
    from .service import BillingRepository

logger = logging.getLogger(__name__)

PAYMENT_TRANSITIONS: FrozenSet[Tuple[PaymentStatus, PaymentStatus]] = frozenset(
    {
        (PaymentStatus.PENDING, PaymentStatus.SUCCEEDED),
        (PaymentStatus.PENDING, PaymentStatus.FAILED),
        (PaymentStatus.FAILED, PaymentStatus.SUCCEEDED),
    }
)

_Event = BillingWebhookEventType


def can_transition(current: PaymentStatus, target: PaymentStatus) -> bool:
    return (current, target) in PAYMENT_TRANSITIONS


class PaymentReconciler:
    """Applies payment-intent domain events to :class:`Payment` aggregates."""

    domain = ProcessorDomain.PAYMENT_INTENT

    def __init__(
        self,
        repository: "BillingRepository",
        resolver: "EntityResolver",
        invoices: "InvoiceService",
    ) -> None:
        self.repository = repository
        self.resolver = resolver
        self.invoices = invoices

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def reconcile(self, event_type: str, payload: Mapping[str, object]) -> ReconciliationResult:
        normalized = normalize_event_type(event_type)
        keys = extract_correlation_keys(normalized, payload)

        if normalized == _Event.CHECKOUT_COMPLETED.value:
            target = PaymentStatus.SUCCEEDED if payload.get("payment_status") == "paid" else None
            return self._apply(normalized, keys, target, session_first=True, invoice_ref=keys.invoice_ref)
        if normalized in {_Event.PAYMENT_INTENT_SUCCEEDED.value, _Event.CHARGE_SUCCEEDED.value}:
            return self._apply(normalized, keys, PaymentStatus.SUCCEEDED, invoice_ref=keys.invoice_ref)
        if normalized in {_Event.PAYMENT_INTENT_FAILED.value, _Event.CHARGE_FAILED.value}:
            return self._apply(normalized, keys, PaymentStatus.FAILED, create_invoice=False)
        if normalized in {_Event.INVOICE_PAYMENT_SUCCEEDED.value, _Event.INVOICE_PAID.value}:
            if not keys.payment_intent_ref:
                return self.invoices.handle_invoice_event(normalized, payload)
            return self._apply(
                normalized,
                CorrelationKeys(payment_intent_ref=keys.payment_intent_ref, invoice_ref=keys.invoice_ref),
                PaymentStatus.SUCCEEDED,
                invoice_ref=keys.invoice_ref,
                provider_invoice=provider_invoice_from_payload(payload),
            )
        if event_family(normalized) == "invoice":
            return self.invoices.handle_invoice_event(normalized, payload)

        raise UnresolvedAggregate(f"Unhandled payment event type {event_type}")

    def _apply(
        self,
        event_type: str,
        keys: CorrelationKeys,
        target: Optional[PaymentStatus],
        *,
        session_first: bool = False,
        create_invoice: bool = True,
        invoice_ref: Optional[str] = None,
        provider_invoice: Optional[ProviderInvoice] = None,
    ) -> ReconciliationResult:
        with self.repository.transaction() as repo:
            payment = self.resolver.resolve_payment(repo, keys, session_first=session_first)
            if payment is None:
                raise UnresolvedAggregate(f"No payment matches {event_type}")

            update: Dict[str, object] = self._backfill(payment, keys)
            if target is not None and target != payment.status:
                if can_transition(payment.status, target):
                    update["status"] = target
                else:
                    logger.info(
                        "Skipping payment transition",
                        extra={
                            "payment_id": payment.payment_id,
                            "from_status": payment.status.value,
                            "to_status": target.value,
                        },
                    )
            if update:
                update["updated_at"] = self._now()
                payment = repo.save_payment(payment.model_copy(update=update))

        detail = payment.status.value
        if create_invoice and payment.status == PaymentStatus.SUCCEEDED:
            invoice = self.invoices.create_or_link(
                self.domain, payment, invoice_ref, provider_invoice=provider_invoice
            )
            invoice = self.invoices.mark_paid(invoice)
            detail = f"{detail}; invoice {invoice.invoice_id}"

        return ReconciliationResult(domain=self.domain, aggregate_id=payment.payment_id, detail=detail)

    def _backfill(self, payment: Payment, keys: CorrelationKeys) -> Dict[str, object]:
        update: Dict[str, object] = {}
        if keys.checkout_session_ref and not payment.checkout_session_ref:
            update["checkout_session_ref"] = keys.checkout_session_ref
        if keys.payment_intent_ref and not payment.payment_intent_ref:
            update["payment_intent_ref"] = keys.payment_intent_ref
        return update


__all__ = ["PAYMENT_TRANSITIONS", "PaymentReconciler", "can_transition"]
