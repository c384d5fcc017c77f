"""Stripe implementation of the provider gateway."""
from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Mapping, Optional

import stripe

from .events import ref_from
from .exceptions import BillingSyncError, ProviderLookupFailed, TransientProviderFailure
from .models import ProviderCheckoutSession, ProviderInvoice

logger = logging.getLogger(__name__)


def _field(obj: Any, name: str) -> Any:
    if obj is None:
        return None
    if isinstance(obj, Mapping):
        return obj.get(name)
    return getattr(obj, name, None)


def _to_dict(obj: Any) -> Dict[str, object]:
    to_dict = getattr(obj, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    return dict(obj)


def checkout_session_from_stripe(session: Any) -> ProviderCheckoutSession:
    return ProviderCheckoutSession(
        ref=str(_field(session, "id")),
        status=_field(session, "status"),
        payment_status=_field(session, "payment_status"),
        mode=_field(session, "mode"),
        payment_intent_ref=ref_from(_field(session, "payment_intent")),
        subscription_ref=ref_from(_field(session, "subscription")),
    )


def invoice_from_stripe(invoice: Any) -> ProviderInvoice:
    return ProviderInvoice(
        ref=str(_field(invoice, "id")),
        status=_field(invoice, "status"),
        customer_ref=ref_from(_field(invoice, "customer")),
        amount_due=int(_field(invoice, "amount_due") or 0),
        amount_paid=int(_field(invoice, "amount_paid") or 0),
        currency=str(_field(invoice, "currency") or "usd"),
        pdf_url=_field(invoice, "invoice_pdf"),
    )


@contextmanager
def translate_stripe_errors(operation: str, ref: Optional[str] = None) -> Iterator[None]:
    """Map Stripe SDK exceptions onto the reconciliation error taxonomy."""

    try:
        yield
    except stripe.InvalidRequestError as exc:
        if exc.http_status == 404 or exc.code == "resource_missing":
            raise ProviderLookupFailed(
                f"{operation} {ref or ''}: {exc.user_message or exc}".strip(),
                detail={"operation": operation, "ref": ref},
            ) from exc
        raise BillingSyncError(
            f"{operation} rejected by provider: {exc.user_message or exc}",
            code="provider_rejected",
            detail={"operation": operation, "ref": ref},
        ) from exc
    except (stripe.APIConnectionError, stripe.RateLimitError, stripe.APIError) as exc:
        logger.warning("Stripe call failed", extra={"operation": operation, "ref": ref})
        raise TransientProviderFailure(
            f"{operation} failed: {exc.user_message or exc}",
            detail={"operation": operation, "ref": ref},
        ) from exc
    except stripe.StripeError as exc:
        raise BillingSyncError(
            f"{operation} failed: {exc.user_message or exc}",
            code="provider_error",
            detail={"operation": operation, "ref": ref},
        ) from exc


class StripeProviderGateway:
    """Talks to Stripe through a :class:`stripe.StripeClient` with bounded timeouts."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        *,
        timeout_seconds: float = 10.0,
        max_network_retries: int = 2,
        client: Optional[Any] = None,
    ) -> None:
        if client is None:
            if not api_key:
                raise ValueError("api_key is required when no Stripe client is supplied")
            client = stripe.StripeClient(
                api_key,
                http_client=stripe.new_default_http_client(timeout=timeout_seconds),
                max_network_retries=max_network_retries,
            )
        self._client = client

    def retrieve_checkout_session(self, session_ref: str) -> ProviderCheckoutSession:
        with translate_stripe_errors("retrieve_checkout_session", session_ref):
            session = self._client.v1.checkout.sessions.retrieve(session_ref)
        return checkout_session_from_stripe(session)

    def retrieve_subscription(self, subscription_ref: str) -> Dict[str, object]:
        with translate_stripe_errors("retrieve_subscription", subscription_ref):
            subscription = self._client.v1.subscriptions.retrieve(subscription_ref)
        return _to_dict(subscription)

    def retrieve_invoice(self, invoice_ref: str) -> ProviderInvoice:
        with translate_stripe_errors("retrieve_invoice", invoice_ref):
            invoice = self._client.v1.invoices.retrieve(invoice_ref)
        return invoice_from_stripe(invoice)

    def create_customer(
        self,
        *,
        email: Optional[str],
        name: Optional[str],
        metadata: Dict[str, str],
    ) -> str:
        params: Dict[str, object] = {"metadata": metadata}
        if email:
            params["email"] = email
        if name:
            params["name"] = name
        with translate_stripe_errors("create_customer"):
            customer = self._client.v1.customers.create(params)
        return str(_field(customer, "id"))

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
        options = {"idempotency_key": f"{idempotency_key}-item"} if idempotency_key else {}
        with translate_stripe_errors("create_invoice_item", customer_ref):
            self._client.v1.invoice_items.create(
                {
                    "customer": customer_ref,
                    "amount": amount,
                    "currency": currency.lower(),
                    "description": description,
                    "metadata": metadata,
                },
                options=options,
            )

        options = {"idempotency_key": idempotency_key} if idempotency_key else {}
        with translate_stripe_errors("create_invoice", customer_ref):
            invoice = self._client.v1.invoices.create(
                {
                    "customer": customer_ref,
                    "auto_advance": False,
                    "collection_method": "send_invoice",
                    "days_until_due": 30,
                    "pending_invoice_items_behavior": "include",
                    "description": description,
                    "metadata": metadata,
                },
                options=options,
            )
        return invoice_from_stripe(invoice)

    def finalize_invoice(self, invoice_ref: str) -> ProviderInvoice:
        with translate_stripe_errors("finalize_invoice", invoice_ref):
            invoice = self._client.v1.invoices.finalize_invoice(invoice_ref)
        return invoice_from_stripe(invoice)

    def mark_invoice_paid(self, invoice_ref: str) -> ProviderInvoice:
        with translate_stripe_errors("mark_invoice_paid", invoice_ref):
            invoice = self._client.v1.invoices.pay(invoice_ref, {"paid_out_of_band": True})
        return invoice_from_stripe(invoice)


__all__ = [
    "StripeProviderGateway",
    "checkout_session_from_stripe",
    "invoice_from_stripe",
    "translate_stripe_errors",
]
