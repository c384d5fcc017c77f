from __future__ import annotations

from types import SimpleNamespace

import pytest
import stripe

from paysync.app.billing import BillingSyncError, ProviderLookupFailed, TransientProviderFailure
from paysync.app.billing.provider import StripeProviderGateway
from paysync.app.services.billing import LocalSandboxProviderGateway, build_provider_gateway
from paysync.config import load_reconciliation_config


class RecordingResource:
    def __init__(self, responses=None, error=None):
        self.responses = responses or {}
        self.error = error
        self.calls = []

    def __getattr__(self, method):
        def call(*args, **kwargs):
            self.calls.append((method, args, kwargs))
            if self.error is not None:
                raise self.error
            return self.responses[method]

        return call


def _client(**resources):
    v1 = SimpleNamespace(
        checkout=SimpleNamespace(sessions=resources.get("sessions", RecordingResource())),
        subscriptions=resources.get("subscriptions", RecordingResource()),
        invoices=resources.get("invoices", RecordingResource()),
        invoice_items=resources.get("invoice_items", RecordingResource()),
        customers=resources.get("customers", RecordingResource()),
    )
    return SimpleNamespace(v1=v1)


def test_gateway_requires_key_or_client():
    with pytest.raises(ValueError):
        StripeProviderGateway()


def test_retrieve_checkout_session_maps_expanded_references():
    sessions = RecordingResource(
        {
            "retrieve": {
                "id": "cs_1",
                "status": "complete",
                "payment_status": "paid",
                "mode": "subscription",
                "payment_intent": None,
                "subscription": {"id": "sub_1", "object": "subscription"},
            }
        }
    )
    gateway = StripeProviderGateway(client=_client(sessions=sessions))

    session = gateway.retrieve_checkout_session("cs_1")

    assert session.ref == "cs_1"
    assert session.status == "complete"
    assert session.subscription_ref == "sub_1"
    assert session.payment_intent_ref is None


def test_create_invoice_sends_idempotency_keys():
    invoice_items = RecordingResource({"create": {"id": "ii_1"}})
    invoices = RecordingResource(
        {"create": {"id": "in_1", "status": "draft", "customer": "cus_1", "amount_due": 4200, "currency": "usd"}}
    )
    gateway = StripeProviderGateway(client=_client(invoices=invoices, invoice_items=invoice_items))

    invoice = gateway.create_invoice(
        customer_ref="cus_1",
        amount=4200,
        currency="USD",
        description="Annual donation",
        metadata={"payment_id": "pay_1"},
        idempotency_key="invoice-pay_1",
    )

    assert invoice.ref == "in_1"
    assert invoice.amount_due == 4200
    item_call = invoice_items.calls[0]
    assert item_call[1][0]["currency"] == "usd"
    assert item_call[2]["options"] == {"idempotency_key": "invoice-pay_1-item"}
    invoice_call = invoices.calls[0]
    assert invoice_call[1][0]["auto_advance"] is False
    assert invoice_call[2]["options"] == {"idempotency_key": "invoice-pay_1"}


def test_mark_invoice_paid_is_out_of_band():
    invoices = RecordingResource({"pay": {"id": "in_1", "status": "paid", "amount_due": 500, "amount_paid": 500}})
    gateway = StripeProviderGateway(client=_client(invoices=invoices))

    paid = gateway.mark_invoice_paid("in_1")

    assert paid.status == "paid"
    assert invoices.calls == [("pay", ("in_1", {"paid_out_of_band": True}), {})]


def test_missing_resource_becomes_lookup_failure():
    error = stripe.InvalidRequestError("No such invoice: 'in_404'", "id", code="resource_missing", http_status=404)
    gateway = StripeProviderGateway(client=_client(invoices=RecordingResource(error=error)))

    with pytest.raises(ProviderLookupFailed):
        gateway.retrieve_invoice("in_404")


def test_rejected_request_is_not_retryable():
    error = stripe.InvalidRequestError("Invalid currency", "currency", http_status=400)
    gateway = StripeProviderGateway(client=_client(customers=RecordingResource(error=error)))

    with pytest.raises(BillingSyncError) as exc_info:
        gateway.create_customer(email="reader@example.com", name="reader", metadata={"user_id": "user-1"})

    assert exc_info.value.code == "provider_rejected"
    assert not isinstance(exc_info.value, TransientProviderFailure)


@pytest.mark.parametrize(
    "error",
    [stripe.APIConnectionError("connection reset"), stripe.RateLimitError("slow down")],
)
def test_network_and_rate_limit_errors_are_transient(error):
    gateway = StripeProviderGateway(client=_client(subscriptions=RecordingResource(error=error)))

    with pytest.raises(TransientProviderFailure):
        gateway.retrieve_subscription("sub_1")


def test_build_provider_gateway_selects_implementation():
    sandbox = build_provider_gateway(load_reconciliation_config({}))
    stripe_gateway = build_provider_gateway(load_reconciliation_config({"STRIPE_SECRET_KEY": "sk_test_123"}))

    assert isinstance(sandbox, LocalSandboxProviderGateway)
    assert isinstance(stripe_gateway, StripeProviderGateway)


def test_sandbox_invoice_lifecycle():
    sandbox = LocalSandboxProviderGateway()

    draft = sandbox.create_invoice(
        customer_ref="cus_1",
        amount=1500,
        currency="usd",
        description="Monthly plan",
        metadata={},
        idempotency_key="invoice-pay_1",
    )
    again = sandbox.create_invoice(
        customer_ref="cus_1",
        amount=1500,
        currency="usd",
        description="Monthly plan",
        metadata={},
        idempotency_key="invoice-pay_1",
    )
    finalized = sandbox.finalize_invoice(draft.ref)
    paid = sandbox.mark_invoice_paid(draft.ref)

    assert again.ref == draft.ref
    assert finalized.status == "open"
    assert finalized.pdf_url.endswith(f"{draft.ref}.pdf")
    assert paid.status == "paid"
    assert paid.amount_paid == 1500
    with pytest.raises(ProviderLookupFailed):
        sandbox.retrieve_checkout_session("cs_missing")
