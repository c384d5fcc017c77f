from __future__ import annotations

import json

import pytest

from paysync import cli
from paysync.app.billing import ProviderInvoice, TransientProviderFailure, WebhookLogStatus
from paysync.config import load_reconciliation_config
from paysync.tests.fakes import make_payment, make_subscription, utc


@pytest.fixture
def wired(monkeypatch, service):
    monkeypatch.setattr(cli, "_configure_database", lambda: None)
    monkeypatch.setattr(cli, "get_billing_sync_service", lambda: service)
    monkeypatch.setattr(cli, "get_reconciliation_config", lambda: load_reconciliation_config({}))
    return service


def test_stats_prints_counts(wired, capsys):
    wired.handle_webhook("evt_a", "payment_intent.succeeded", {"id": "pi_missing"})

    assert cli.main(["stats"]) == 0

    counts = json.loads(capsys.readouterr().out)
    assert counts["ignored"] == 1


def test_retry_uses_configured_defaults(wired, repository, provider, capsys):
    repository.save_payment(make_payment(payment_intent_ref="pi_1"))
    provider.fail_next("create_invoice", TransientProviderFailure("provider timed out"))
    wired.handle_webhook("evt_pi", "payment_intent.succeeded", {"id": "pi_1"})

    assert cli.main(["retry"]) == 0

    assert "Retried 1 event(s)" in capsys.readouterr().out
    assert repository.get_log_entry("evt_pi").status == WebhookLogStatus.SUCCESS


def test_clean_pending_dry_run_leaves_rows(wired, repository, capsys):
    old = utc(2020, 1, 1)
    repository.save_subscription(make_subscription(checkout_session_ref=None, created_at=old, updated_at=old))

    assert cli.main(["clean-pending", "--hours", "1", "--dry-run"]) == 0

    out = capsys.readouterr().out
    assert "sub_local_1" in out
    assert "1 stale pending subscription(s)" in out
    assert repository.get_subscription("sub_local_1").status.value == "pending"


def test_sync_invoice_reports_refreshed_state(wired, repository, provider, capsys):
    repository.save_payment(make_payment(payment_intent_ref="pi_1"))
    wired.handle_webhook("evt_pi", "payment_intent.succeeded", {"id": "pi_1"})
    invoice = next(iter(repository.invoices.values()))
    provider.add_invoice(
        ProviderInvoice(
            ref=invoice.provider_invoice_ref,
            status="paid",
            customer_ref="cus_1",
            amount_due=4200,
            amount_paid=4200,
            currency="usd",
            pdf_url="https://files.test/receipt.pdf",
        )
    )

    assert cli.main(["sync-invoice", invoice.provider_invoice_ref]) == 0

    assert f"{invoice.invoice_id}\tpaid\thttps://files.test/receipt.pdf" in capsys.readouterr().out


def test_invalid_arguments_return_failure(wired):
    assert cli.main(["retry", "--limit", "-1"]) == 1
