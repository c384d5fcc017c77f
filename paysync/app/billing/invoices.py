"""Invoice collaborator: idempotent creation and linking of derived invoices."""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Mapping, Optional, Union
from uuid import uuid4

from .events import extract_correlation_keys, normalize_event_type, ref_from
from .exceptions import DataInconsistency, UnresolvedAggregate, UserResolutionFailure
from .models import (
    BillingWebhookEventType,
    Invoice,
    InvoiceStatus,
    Payment,
    PaymentStatus,
    ProcessorDomain,
    ProviderInvoice,
    ReconciliationResult,
    Subscription,
    SubscriptionStatus,
)

if TYPE_CHECKING:  # pragma: no cover
    from .resolver import EntityResolver
    from .service import BillingRepository, ProviderGateway, UserDirectory

logger = logging.getLogger(__name__)

Aggregate = Union[Payment, Subscription]

_EVENT_INVOICE_STATUS = {
    BillingWebhookEventType.INVOICE_PAYMENT_SUCCEEDED.value: InvoiceStatus.PAID,
    BillingWebhookEventType.INVOICE_PAID.value: InvoiceStatus.PAID,
    BillingWebhookEventType.INVOICE_PAYMENT_FAILED.value: InvoiceStatus.PAST_DUE,
    BillingWebhookEventType.INVOICE_FINALIZED.value: InvoiceStatus.OPEN,
}

_FINAL_INVOICE_STATUSES = {InvoiceStatus.PAID, InvoiceStatus.VOID}


def _provider_status(value: object, *, default: InvoiceStatus) -> InvoiceStatus:
    try:
        return InvoiceStatus(str(value))
    except ValueError:
        return default


def merge_invoice_status(current: InvoiceStatus, incoming: InvoiceStatus) -> InvoiceStatus:
    """Apply ``incoming`` unless the invoice already reached a final state."""

    if current in _FINAL_INVOICE_STATUSES:
        return current
    return incoming


def _aggregate_is_paid(aggregate: Aggregate) -> bool:
    if isinstance(aggregate, Payment):
        return aggregate.status == PaymentStatus.SUCCEEDED
    return aggregate.status in {SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING}


def provider_invoice_from_payload(payload: Mapping[str, object]) -> ProviderInvoice:
    """Build a :class:`ProviderInvoice` from an ``invoice.*`` webhook payload."""

    return ProviderInvoice(
        ref=str(payload["id"]),
        status=str(payload.get("status") or "") or None,
        customer_ref=ref_from(payload.get("customer")),
        amount_due=int(payload.get("amount_due") or 0),
        amount_paid=int(payload.get("amount_paid") or 0),
        currency=str(payload.get("currency") or "usd"),
        pdf_url=str(payload.get("invoice_pdf") or "") or None,
    )


class InvoiceService:
    """Creates, links and refreshes invoices derived from payments and subscriptions.

    Provider calls never run inside a repository transaction so no aggregate
    row stays locked while waiting on the network.
    """

    def __init__(
        self,
        repository: "BillingRepository",
        provider: "ProviderGateway",
        user_directory: "UserDirectory",
        resolver: "EntityResolver",
    ) -> None:
        self.repository = repository
        self.provider = provider
        self.user_directory = user_directory
        self.resolver = resolver

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def create_or_link(
        self,
        domain: ProcessorDomain,
        aggregate: Aggregate,
        provider_invoice_ref: Optional[str] = None,
        *,
        provider_invoice: Optional[ProviderInvoice] = None,
    ) -> Invoice:
        if provider_invoice is not None:
            provider_invoice_ref = provider_invoice.ref

        existing = self._linked_invoice(aggregate, provider_invoice_ref)
        if existing is not None:
            return existing

        if provider_invoice_ref:
            linked = self._link_existing(aggregate, provider_invoice_ref)
            if linked is not None:
                return linked

        if provider_invoice is None:
            provider_invoice = self._fetch_or_create_provider_invoice(domain, aggregate, provider_invoice_ref)
        return self._persist(aggregate, provider_invoice)

    def mark_paid(self, invoice: Invoice) -> Invoice:
        return self.set_status(invoice, InvoiceStatus.PAID)

    def handle_invoice_event(self, event_type: str, payload: Mapping[str, object]) -> ReconciliationResult:
        """Reconcile a standalone ``invoice.*`` event."""

        normalized = normalize_event_type(event_type)
        keys = extract_correlation_keys(normalized, payload)
        if not keys.invoice_ref:
            raise UnresolvedAggregate("Invoice event carries no invoice id")

        provider_invoice = provider_invoice_from_payload(payload)
        event_status = _EVENT_INVOICE_STATUS.get(
            normalized,
            _provider_status(provider_invoice.status, default=InvoiceStatus.DRAFT),
        )

        target: Optional[Aggregate] = None
        domain = ProcessorDomain.PAYMENT_INTENT
        if keys.subscription_ref:
            target = self.resolver.resolve_subscription(self.repository, keys, for_update=False)
            domain = ProcessorDomain.SUBSCRIPTION
        if target is None and keys.payment_intent_ref:
            target = self.resolver.resolve_payment(self.repository, keys, for_update=False)
            domain = ProcessorDomain.PAYMENT_INTENT

        if target is not None:
            invoice = self.create_or_link(domain, target, provider_invoice=provider_invoice)
            invoice = self.set_status(invoice, event_status)
            return ReconciliationResult(domain=domain, aggregate_id=invoice.invoice_id, detail="invoice linked")

        if not keys.customer_ref:
            raise UnresolvedAggregate(f"No payment or subscription for invoice {keys.invoice_ref}")

        invoice = self._upsert_placeholder(provider_invoice, event_status)
        return ReconciliationResult(domain=domain, aggregate_id=invoice.invoice_id, detail="placeholder invoice")

    def sync_from_provider(self, provider_invoice_ref: str) -> Invoice:
        """Refresh a local invoice's status and PDF link from the provider."""

        local = self.repository.find_invoice_by_provider_ref(provider_invoice_ref)
        if local is None:
            raise LookupError(f"Invoice {provider_invoice_ref} is not known locally")

        remote = self.provider.retrieve_invoice(provider_invoice_ref)
        with self.repository.transaction() as repo:
            current = repo.find_invoice_by_provider_ref(provider_invoice_ref, for_update=True) or local
            incoming = _provider_status(remote.status, default=current.status)
            updated = current.model_copy(
                update={
                    "status": merge_invoice_status(current.status, incoming),
                    "pdf_url": remote.pdf_url or current.pdf_url,
                    "updated_at": self._now(),
                }
            )
            return repo.save_invoice(updated)

    def _linked_invoice(self, aggregate: Aggregate, provider_invoice_ref: Optional[str]) -> Optional[Invoice]:
        if isinstance(aggregate, Payment):
            return self.repository.find_invoice_for_payment(aggregate.payment_id)

        invoices = self.repository.find_invoices_for_subscription(aggregate.subscription_id)
        if not provider_invoice_ref:
            return invoices[0] if invoices else None
        for invoice in invoices:
            if invoice.provider_invoice_ref == provider_invoice_ref:
                return invoice
        return None

    def _link_existing(self, aggregate: Aggregate, provider_invoice_ref: str) -> Optional[Invoice]:
        with self.repository.transaction() as repo:
            invoice = repo.find_invoice_by_provider_ref(provider_invoice_ref, for_update=True)
            if invoice is None:
                return None

            update: dict = {"updated_at": self._now()}
            if isinstance(aggregate, Payment):
                if invoice.payment_id and invoice.payment_id != aggregate.payment_id:
                    raise DataInconsistency(
                        f"Invoice {provider_invoice_ref} is linked to another payment",
                        detail={"invoice_id": invoice.invoice_id, "payment_id": invoice.payment_id},
                    )
                update["payment_id"] = aggregate.payment_id
            else:
                if invoice.subscription_id and invoice.subscription_id != aggregate.subscription_id:
                    raise DataInconsistency(
                        f"Invoice {provider_invoice_ref} is linked to another subscription",
                        detail={"invoice_id": invoice.invoice_id, "subscription_id": invoice.subscription_id},
                    )
                update["subscription_id"] = aggregate.subscription_id

            if invoice.user_id is None:
                update["user_id"] = aggregate.user_id
            if invoice.amount == 0 and aggregate.amount:
                update["amount"] = aggregate.amount
                update["currency"] = aggregate.currency
            if _aggregate_is_paid(aggregate):
                update["status"] = merge_invoice_status(invoice.status, InvoiceStatus.PAID)

            linked = repo.save_invoice(invoice.model_copy(update=update))

        logger.info(
            "Linked existing invoice",
            extra={"invoice_id": linked.invoice_id, "provider_invoice_ref": provider_invoice_ref},
        )
        return linked

    def _fetch_or_create_provider_invoice(
        self,
        domain: ProcessorDomain,
        aggregate: Aggregate,
        provider_invoice_ref: Optional[str],
    ) -> ProviderInvoice:
        if provider_invoice_ref:
            return self.provider.retrieve_invoice(provider_invoice_ref)
        if domain == ProcessorDomain.SUBSCRIPTION or isinstance(aggregate, Subscription):
            raise DataInconsistency(
                "Subscription invoices require a provider invoice reference",
                detail={"subscription_id": getattr(aggregate, "subscription_id", None)},
            )
        return self._issue_provider_invoice(aggregate)

    def _issue_provider_invoice(self, payment: Payment) -> ProviderInvoice:
        customer_ref = self._ensure_customer(payment.user_id)
        created = self.provider.create_invoice(
            customer_ref=customer_ref,
            amount=payment.amount,
            currency=payment.currency,
            description=payment.description or f"Payment {payment.payment_id}",
            metadata={"payment_id": payment.payment_id, "user_id": payment.user_id},
            idempotency_key=f"invoice-{payment.payment_id}",
        )
        current = self.provider.retrieve_invoice(created.ref)

        if current.status == InvoiceStatus.DRAFT.value:
            if current.amount_due != payment.amount:
                raise DataInconsistency(
                    f"Provider invoice {current.ref} amount does not match payment {payment.payment_id}",
                    detail={
                        "provider_invoice_ref": current.ref,
                        "amount_due": current.amount_due,
                        "payment_amount": payment.amount,
                    },
                )
            current = self.provider.finalize_invoice(current.ref)

        if payment.status == PaymentStatus.SUCCEEDED and not current.is_paid:
            current = self.provider.mark_invoice_paid(current.ref)
        return current

    def _ensure_customer(self, user_id: str) -> str:
        user = self.user_directory.get_user(user_id)
        if user is None:
            raise UserResolutionFailure(f"User {user_id} not found")
        if user.provider_customer_ref:
            return user.provider_customer_ref

        customer_ref = self.provider.create_customer(
            email=user.email,
            name=user.name,
            metadata={"user_id": user.user_id},
        )
        self.user_directory.attach_customer_ref(user.user_id, customer_ref)
        return customer_ref

    def _persist(self, aggregate: Aggregate, provider_invoice: ProviderInvoice) -> Invoice:
        paid = _aggregate_is_paid(aggregate) or provider_invoice.is_paid
        now = self._now()
        candidate = Invoice(
            invoice_id=f"inv_{uuid4().hex}",
            user_id=aggregate.user_id,
            payment_id=aggregate.payment_id if isinstance(aggregate, Payment) else None,
            subscription_id=aggregate.subscription_id if isinstance(aggregate, Subscription) else None,
            provider_invoice_ref=provider_invoice.ref,
            customer_ref=provider_invoice.customer_ref,
            amount=provider_invoice.amount_paid or provider_invoice.amount_due or aggregate.amount,
            currency=provider_invoice.currency or aggregate.currency,
            status=InvoiceStatus.PAID if paid else InvoiceStatus.OPEN,
            pdf_url=provider_invoice.pdf_url,
            created_at=now,
            updated_at=now,
        )
        with self.repository.transaction() as repo:
            stored, created = repo.insert_invoice_if_absent(candidate)
        if created:
            logger.info(
                "Created invoice",
                extra={"invoice_id": stored.invoice_id, "provider_invoice_ref": provider_invoice.ref},
            )
            return stored

        # A concurrent writer stored the invoice first; converge on that row.
        return (
            self._linked_invoice(aggregate, provider_invoice.ref)
            or self._link_existing(aggregate, provider_invoice.ref)
            or stored
        )

    def _upsert_placeholder(self, provider_invoice: ProviderInvoice, status: InvoiceStatus) -> Invoice:
        with self.repository.transaction() as repo:
            existing = repo.find_invoice_by_provider_ref(provider_invoice.ref, for_update=True)
            if existing is not None:
                return repo.save_invoice(
                    existing.model_copy(
                        update={
                            "status": merge_invoice_status(existing.status, status),
                            "pdf_url": provider_invoice.pdf_url or existing.pdf_url,
                            "updated_at": self._now(),
                        }
                    )
                )

        owner = self.resolver.resolve_owner(provider_invoice.customer_ref)
        now = self._now()
        placeholder = Invoice(
            invoice_id=f"inv_{uuid4().hex}",
            user_id=owner.user_id if owner else None,
            provider_invoice_ref=provider_invoice.ref,
            customer_ref=provider_invoice.customer_ref,
            amount=provider_invoice.amount_paid or provider_invoice.amount_due,
            currency=provider_invoice.currency,
            status=status,
            pdf_url=provider_invoice.pdf_url,
            created_at=now,
            updated_at=now,
        )
        with self.repository.transaction() as repo:
            stored, created = repo.insert_invoice_if_absent(placeholder)
        if created:
            logger.info(
                "Stored placeholder invoice",
                extra={"invoice_id": stored.invoice_id, "provider_invoice_ref": provider_invoice.ref},
            )
        return stored

    def set_status(self, invoice: Invoice, status: InvoiceStatus) -> Invoice:
        if merge_invoice_status(invoice.status, status) == invoice.status:
            return invoice
        with self.repository.transaction() as repo:
            current = invoice
            if invoice.provider_invoice_ref:
                current = repo.find_invoice_by_provider_ref(invoice.provider_invoice_ref, for_update=True) or invoice
            merged = merge_invoice_status(current.status, status)
            if merged == current.status:
                return current
            return repo.save_invoice(current.model_copy(update={"status": merged, "updated_at": self._now()}))


__all__ = ["InvoiceService", "merge_invoice_status", "provider_invoice_from_payload"]
