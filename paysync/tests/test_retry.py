from datetime import datetime, timedelta, timezone

import pytest

from paysync.app.billing import (
    ProcessorDomain,
    SubscriptionStatus,
    TransientProviderFailure,
    WebhookLogEntry,
    WebhookLogStatus,
)
from paysync.app.billing.retry import IGNORED_ON_RETRY_REASON
from paysync.tests.fakes import make_payment, make_subscription


def _subscription_created(provider_ref="sub_new", customer="cus_1", **extra):
    payload = {
        "id": provider_ref,
        "status": "active",
        "items": {
            "data": [
                {
                    "price": {
                        "id": "price_monthly",
                        "unit_amount": 900,
                        "currency": "usd",
                        "recurring": {"interval": "month"},
                    },
                    "current_period_start": 1735689600,
                    "current_period_end": 1738368000,
                }
            ]
        },
    }
    if customer is not None:
        payload["customer"] = customer
    payload.update(extra)
    return payload


def _error_entry(event_id, event_type, payload, *, retry_count=0, domain=ProcessorDomain.PAYMENT_INTENT):
    now = datetime.now(timezone.utc)
    return WebhookLogEntry(
        event_id=event_id,
        event_type=event_type,
        payload=payload,
        status=WebhookLogStatus.ERROR,
        processor_domain=domain,
        error_message="earlier failure",
        retry_count=retry_count,
        created_at=now,
        updated_at=now,
        processed_at=now,
    )


def test_transient_provider_failure_recovers_on_retry(service, repository, provider):
    repository.save_payment(make_payment(payment_intent_ref="pi_1"))
    provider.fail_next("create_invoice", TransientProviderFailure("provider timed out"))

    failed = service.handle_webhook("evt_pi", "payment_intent.succeeded", {"id": "pi_1"})
    assert failed.status == WebhookLogStatus.ERROR
    assert failed.error_detail["retryable"] is True

    assert service.retry_errors(10) == 1
    entry = repository.get_log_entry("evt_pi")
    assert entry.status == WebhookLogStatus.SUCCESS
    assert entry.retry_count == 1
    assert len(repository.invoices) == 1


def test_subscription_created_is_synthesized_on_retry(service, repository):
    first = service.handle_webhook("evt_sc", "customer.subscription.created", _subscription_created())
    assert first.status == WebhookLogStatus.ERROR

    assert service.retry_errors(10) == 1

    subscription = repository.find_subscription_by_provider_ref("sub_new")
    assert subscription is not None
    assert subscription.user_id == "user-1"
    assert subscription.amount == 900
    assert subscription.plan_ref == "price_monthly"
    assert subscription.status == SubscriptionStatus.ACTIVE
    assert repository.get_log_entry("evt_sc").related_aggregate_id == subscription.subscription_id


def test_synthesis_attaches_to_local_subscription_named_in_metadata(service, repository):
    repository.save_subscription(make_subscription())
    service.handle_webhook(
        "evt_sc",
        "subscription.created",
        _subscription_created(metadata={"subscription_id": "sub_local_1"}),
    )

    service.retry_errors(10)

    assert len(repository.subscriptions) == 1
    assert repository.get_subscription("sub_local_1").provider_subscription_ref == "sub_new"


def test_synthesis_fetches_customer_from_provider_when_missing(service, repository, provider):
    provider.add_subscription("sub_new", {"customer": "cus_1", "status": "active"})
    service.handle_webhook("evt_sc", "subscription.created", _subscription_created(customer=None))

    assert service.retry_errors(10) == 1
    assert provider.calls_to("retrieve_subscription") == ["sub_new"]
    assert repository.find_subscription_by_provider_ref("sub_new").user_id == "user-1"


def test_synthesis_without_known_owner_stays_in_error(service, repository):
    service.handle_webhook("evt_sc", "subscription.created", _subscription_created(customer="cus_unknown"))

    assert service.retry_errors(10) == 0

    entry = repository.get_log_entry("evt_sc")
    assert entry.status == WebhookLogStatus.ERROR
    assert entry.retry_count == 1
    assert entry.error_detail["code"] == "user_resolution_failed"
    assert repository.subscriptions == {}


def test_unresolved_event_on_retry_is_ignored(service, repository):
    repository.insert_log_entry(_error_entry("evt_old", "payment_intent.succeeded", {"id": "pi_missing"}))

    assert service.retry_errors(10) == 0

    entry = repository.get_log_entry("evt_old")
    assert entry.status == WebhookLogStatus.IGNORED
    assert entry.error_message == IGNORED_ON_RETRY_REASON


def test_retry_respects_attempt_ceiling_and_limit(service, repository):
    repository.save_payment(make_payment(payment_intent_ref="pi_1"))
    repository.insert_log_entry(_error_entry("evt_exhausted", "payment_intent.succeeded", {"id": "pi_1"}, retry_count=5))

    assert service.retry_errors(10, max_attempts=5) == 0
    assert repository.get_log_entry("evt_exhausted").status == WebhookLogStatus.ERROR

    with pytest.raises(ValueError):
        service.retry_errors(0)


def test_redrive_stuck_processing_entries(service, repository):
    repository.save_payment(make_payment(payment_intent_ref="pi_1"))
    stale = datetime.now(timezone.utc) - timedelta(hours=2)
    repository.insert_log_entry(
        WebhookLogEntry(
            event_id="evt_stuck",
            event_type="payment_intent.succeeded",
            payload={"id": "pi_1"},
            processor_domain=ProcessorDomain.PAYMENT_INTENT,
            created_at=stale,
            updated_at=stale,
        )
    )

    assert service.redrive_stuck(older_than_minutes=30, limit=10) == 1

    entry = repository.get_log_entry("evt_stuck")
    assert entry.status == WebhookLogStatus.SUCCESS
    assert entry.retry_count == 1
