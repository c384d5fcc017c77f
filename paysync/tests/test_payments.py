from paysync.app.billing import InvoiceStatus, PaymentStatus, WebhookLogStatus
from paysync.app.billing.payments import can_transition
from paysync.tests.fakes import make_payment


def _checkout_completed(session_ref="cs_pay_1", intent_ref="pi_1", paid=True):
    return {
        "id": session_ref,
        "mode": "payment",
        "payment_status": "paid" if paid else "unpaid",
        "payment_intent": intent_ref,
        "customer": "cus_1",
    }


def test_checkout_completion_backfills_intent_and_issues_paid_invoice(service, repository, provider):
    repository.save_payment(make_payment())

    entry = service.handle_webhook("evt_cs_1", "checkout.completed", _checkout_completed())

    assert entry.status == WebhookLogStatus.SUCCESS
    assert entry.related_aggregate_id == "pay_1"
    payment = repository.get_payment("pay_1")
    assert payment.status == PaymentStatus.SUCCEEDED
    assert payment.payment_intent_ref == "pi_1"

    invoice = repository.find_invoice_for_payment("pay_1")
    assert invoice is not None
    assert invoice.status == InvoiceStatus.PAID
    assert invoice.amount == 4200
    assert provider.calls_to("create_invoice") == ["invoice-pay_1"]
    assert len(provider.calls_to("finalize_invoice")) == 1


def test_late_intent_event_resolves_through_backfilled_reference(service, repository, provider):
    repository.save_payment(make_payment())
    service.handle_webhook("evt_cs_1", "checkout.completed", _checkout_completed())

    entry = service.handle_webhook("evt_pi_1", "payment_intent.succeeded", {"id": "pi_1", "customer": "cus_1"})

    assert entry.status == WebhookLogStatus.SUCCESS
    assert entry.related_aggregate_id == "pay_1"
    assert len(repository.invoices) == 1
    assert len(provider.calls_to("create_invoice")) == 1


def test_failed_payment_may_later_succeed(service, repository):
    repository.save_payment(make_payment(payment_intent_ref="pi_1"))

    service.handle_webhook("evt_fail", "payment_intent.payment_failed", {"id": "pi_1"})
    assert repository.get_payment("pay_1").status == PaymentStatus.FAILED
    assert repository.invoices == {}

    service.handle_webhook("evt_ok", "payment_intent.succeeded", {"id": "pi_1"})
    assert repository.get_payment("pay_1").status == PaymentStatus.SUCCEEDED


def test_succeeded_payment_never_regresses(service, repository):
    repository.save_payment(make_payment(payment_intent_ref="pi_1"))
    service.handle_webhook("evt_ok", "charge.succeeded", {"id": "ch_1", "payment_intent": "pi_1"})

    entry = service.handle_webhook("evt_fail", "charge.failed", {"id": "ch_2", "payment_intent": "pi_1"})

    assert entry.status == WebhookLogStatus.SUCCESS
    assert repository.get_payment("pay_1").status == PaymentStatus.SUCCEEDED
    assert not can_transition(PaymentStatus.SUCCEEDED, PaymentStatus.FAILED)


def test_unpaid_checkout_completion_leaves_payment_pending(service, repository, provider):
    repository.save_payment(make_payment())

    entry = service.handle_webhook("evt_cs_1", "checkout.completed", _checkout_completed(paid=False))

    assert entry.status == WebhookLogStatus.SUCCESS
    assert repository.get_payment("pay_1").status == PaymentStatus.PENDING
    assert provider.calls_to("create_invoice") == []


def test_unknown_payment_is_ignored(service):
    entry = service.handle_webhook("evt_unknown", "payment_intent.succeeded", {"id": "pi_missing"})

    assert entry.status == WebhookLogStatus.IGNORED
    assert entry.processed_at is not None


def test_customer_created_for_user_without_provider_reference(service, repository, provider, users):
    repository.save_payment(make_payment(user_id="user-2", payment_intent_ref="pi_2", checkout_session_ref=None))

    entry = service.handle_webhook("evt_pi_2", "payment_intent.succeeded", {"id": "pi_2"})

    assert entry.status == WebhookLogStatus.SUCCESS
    assert provider.calls_to("create_customer") == [{"user_id": "user-2"}]
    assert users.get_user("user-2").provider_customer_ref is not None


def test_amount_mismatch_leaves_draft_and_records_error(service, repository, provider):
    repository.save_payment(make_payment())
    provider.draft_amount_override = 1

    entry = service.handle_webhook("evt_cs_1", "checkout.completed", _checkout_completed())

    assert entry.status == WebhookLogStatus.ERROR
    assert entry.error_detail["code"] == "data_inconsistency"
    assert provider.calls_to("finalize_invoice") == []
    assert repository.find_invoice_for_payment("pay_1") is None
