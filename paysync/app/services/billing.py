"""Application wiring for the billing reconciliation service."""
from __future__ import annotations

import logging
from functools import lru_cache
from threading import Lock
from typing import Dict, Optional
from uuid import uuid4

from ..billing import (
    BillingSyncService,
    ProviderCheckoutSession,
    ProviderGateway,
    ProviderInvoice,
    ProviderLookupFailed,
)
from ..billing.provider import StripeProviderGateway
from ..billing.repository import PostgresBillingRepository, PostgresUserDirectory
from ...config import ReconciliationConfig, load_reconciliation_config


logger = logging.getLogger("billing")


class LocalSandboxProviderGateway:
    """In-memory provider for local development and tests.

    Checkout sessions and subscriptions must be registered up front; invoices
    and customers are created on demand the way the real provider would.
    """

    def __init__(self) -> None:
        self._lock = Lock()
        self.checkout_sessions: Dict[str, ProviderCheckoutSession] = {}
        self.subscriptions: Dict[str, Dict[str, object]] = {}
        self.invoices: Dict[str, ProviderInvoice] = {}
        self.customers: Dict[str, Dict[str, object]] = {}
        self._idempotent_invoices: Dict[str, str] = {}

    def add_checkout_session(self, session: ProviderCheckoutSession) -> None:
        with self._lock:
            self.checkout_sessions[session.ref] = session

    def add_subscription(self, subscription_ref: str, payload: Dict[str, object]) -> None:
        with self._lock:
            self.subscriptions[subscription_ref] = {"id": subscription_ref, **payload}

    def add_invoice(self, invoice: ProviderInvoice) -> None:
        with self._lock:
            self.invoices[invoice.ref] = invoice

    def retrieve_checkout_session(self, session_ref: str) -> ProviderCheckoutSession:
        with self._lock:
            session = self.checkout_sessions.get(session_ref)
        if session is None:
            raise ProviderLookupFailed(f"No such checkout session: {session_ref}")
        return session

    def retrieve_subscription(self, subscription_ref: str) -> Dict[str, object]:
        with self._lock:
            subscription = self.subscriptions.get(subscription_ref)
        if subscription is None:
            raise ProviderLookupFailed(f"No such subscription: {subscription_ref}")
        return dict(subscription)

    def retrieve_invoice(self, invoice_ref: str) -> ProviderInvoice:
        with self._lock:
            invoice = self.invoices.get(invoice_ref)
        if invoice is None:
            raise ProviderLookupFailed(f"No such invoice: {invoice_ref}")
        return invoice

    def create_customer(
        self,
        *,
        email: Optional[str],
        name: Optional[str],
        metadata: Dict[str, str],
    ) -> str:
        customer_ref = f"cus_{uuid4().hex[:14]}"
        with self._lock:
            self.customers[customer_ref] = {"email": email, "name": name, "metadata": dict(metadata)}
        logger.debug("Sandbox customer created %s", customer_ref)
        return customer_ref

    def create_invoice(
        self,
        *,
        customer_ref: str,
        amount: int,
        currency: str,
        description: str,
        metadata: Dict[str, str],
        idempotency_key: Optional[str] = None,
    ) -> ProviderInvoice:
        with self._lock:
            if idempotency_key and idempotency_key in self._idempotent_invoices:
                return self.invoices[self._idempotent_invoices[idempotency_key]]
            invoice = ProviderInvoice(
                ref=f"in_{uuid4().hex[:14]}",
                status="draft",
                customer_ref=customer_ref,
                amount_due=amount,
                currency=currency,
            )
            self.invoices[invoice.ref] = invoice
            if idempotency_key:
                self._idempotent_invoices[idempotency_key] = invoice.ref
        logger.debug("Sandbox invoice created %s amount=%s %s", invoice.ref, amount, currency)
        return invoice

    def finalize_invoice(self, invoice_ref: str) -> ProviderInvoice:
        invoice = self.retrieve_invoice(invoice_ref)
        if invoice.status != "draft":
            return invoice
        finalized = invoice.model_copy(
            update={"status": "open", "pdf_url": f"https://billing.local/invoices/{invoice_ref}.pdf"}
        )
        self.add_invoice(finalized)
        return finalized

    def mark_invoice_paid(self, invoice_ref: str) -> ProviderInvoice:
        invoice = self.retrieve_invoice(invoice_ref)
        paid = invoice.model_copy(update={"status": "paid", "amount_paid": invoice.amount_due})
        self.add_invoice(paid)
        return paid


def build_provider_gateway(config: ReconciliationConfig) -> ProviderGateway:
    if config.stripe_secret_key:
        return StripeProviderGateway(
            config.stripe_secret_key,
            timeout_seconds=config.provider_timeout_seconds,
            max_network_retries=config.provider_max_network_retries,
        )
    logger.warning("STRIPE_SECRET_KEY is not set; using the local sandbox provider")
    return LocalSandboxProviderGateway()


@lru_cache(maxsize=1)
def get_reconciliation_config() -> ReconciliationConfig:
    return load_reconciliation_config()


@lru_cache(maxsize=1)
def get_billing_sync_service() -> BillingSyncService:
    config = get_reconciliation_config()
    service = BillingSyncService(
        repository=PostgresBillingRepository(),
        provider=build_provider_gateway(config),
        user_directory=PostgresUserDirectory(),
        cancel_url=config.cancel_url,
        default_currency=config.default_currency,
    )
    return service


__all__ = [
    "LocalSandboxProviderGateway",
    "build_provider_gateway",
    "get_billing_sync_service",
    "get_reconciliation_config",
]
