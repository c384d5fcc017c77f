"""In-memory collaborators used across the reconciliation tests."""
from __future__ import annotations

import json
from contextlib import contextmanager
from datetime import datetime, timezone
from itertools import count
from threading import RLock
from typing import Dict, Iterator, List, Optional, Sequence, Tuple

from paysync.app.billing import (
    BillingUser,
    Invoice,
    Payment,
    PaymentStatus,
    Subscription,
    SubscriptionStatus,
    WebhookLogEntry,
    WebhookLogStatus,
)
from paysync.app.services.billing import LocalSandboxProviderGateway

CANCEL_URL = "https://app.test/billing/cancel"


class InMemoryBillingRepository:
    """Mirrors the Postgres repository's conflict and locking rules.

    A single re-entrant lock stands in for row locks: a ``transaction()`` block
    holds it for its whole duration.
    """

    def __init__(self) -> None:
        self._lock = RLock()
        self._sequence = count()
        self.log_entries: Dict[str, WebhookLogEntry] = {}
        self._log_order: Dict[str, int] = {}
        self.payments: Dict[str, Payment] = {}
        self.subscriptions: Dict[str, Subscription] = {}
        self.invoices: Dict[str, Invoice] = {}
        self.transactions_opened = 0

    @contextmanager
    def transaction(self) -> Iterator["InMemoryBillingRepository"]:
        with self._lock:
            self.transactions_opened += 1
            yield self

    # Webhook log -------------------------------------------------------------

    def insert_log_entry(self, entry: WebhookLogEntry) -> Tuple[WebhookLogEntry, bool]:
        with self._lock:
            existing = self.log_entries.get(entry.event_id)
            if existing is not None:
                return existing, False
            self.log_entries[entry.event_id] = entry
            self._log_order[entry.event_id] = next(self._sequence)
            return entry, True

    def get_log_entry(self, event_id: str) -> Optional[WebhookLogEntry]:
        return self.log_entries.get(event_id)

    def save_log_entry(self, entry: WebhookLogEntry) -> WebhookLogEntry:
        with self._lock:
            if entry.event_id not in self.log_entries:
                raise LookupError(f"Webhook event {entry.event_id} not found")
            self.log_entries[entry.event_id] = entry
            return entry

    def transition_log_entry(
        self,
        entry: WebhookLogEntry,
        *,
        expected_status: WebhookLogStatus,
        expected_updated_at: Optional[datetime] = None,
    ) -> Optional[WebhookLogEntry]:
        with self._lock:
            current = self.log_entries.get(entry.event_id)
            if current is None or current.status != expected_status:
                return None
            if expected_updated_at is not None and current.updated_at != expected_updated_at:
                return None
            self.log_entries[entry.event_id] = entry
            return entry

    def list_log_entries(
        self,
        *,
        status: WebhookLogStatus,
        limit: int,
        max_retry_count: Optional[int] = None,
        updated_before: Optional[datetime] = None,
    ) -> List[WebhookLogEntry]:
        with self._lock:
            matching = [
                entry
                for entry in self.log_entries.values()
                if entry.status == status
                and (max_retry_count is None or entry.retry_count < max_retry_count)
                and (updated_before is None or entry.updated_at < updated_before)
            ]
        matching.sort(key=lambda entry: (entry.created_at, self._log_order[entry.event_id]))
        return matching[:limit]

    def find_latest_log_entry(self, correlation_key: str) -> Optional[WebhookLogEntry]:
        needle = f'"{correlation_key}"'
        with self._lock:
            matching = [
                entry
                for entry in self.log_entries.values()
                if entry.payload.get("id") == correlation_key or needle in json.dumps(entry.payload, default=str)
            ]
        if not matching:
            return None
        return max(matching, key=lambda entry: (entry.created_at, self._log_order[entry.event_id]))

    def count_log_entries_by_status(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        with self._lock:
            for entry in self.log_entries.values():
                counts[entry.status.value] = counts.get(entry.status.value, 0) + 1
        return counts

    # Payments ----------------------------------------------------------------

    def find_payment_by_checkout_session(self, session_ref: str, *, for_update: bool = False) -> Optional[Payment]:
        return next((p for p in self.payments.values() if p.checkout_session_ref == session_ref), None)

    def find_payment_by_payment_intent(self, intent_ref: str, *, for_update: bool = False) -> Optional[Payment]:
        return next((p for p in self.payments.values() if p.payment_intent_ref == intent_ref), None)

    def get_payment(self, payment_id: str, *, for_update: bool = False) -> Optional[Payment]:
        return self.payments.get(payment_id)

    def save_payment(self, payment: Payment) -> Payment:
        with self._lock:
            self.payments[payment.payment_id] = payment
            return payment

    # Subscriptions -----------------------------------------------------------

    def find_subscription_by_provider_ref(
        self, provider_ref: str, *, for_update: bool = False
    ) -> Optional[Subscription]:
        return next(
            (s for s in self.subscriptions.values() if s.provider_subscription_ref == provider_ref),
            None,
        )

    def find_subscription_by_checkout_session(
        self, session_ref: str, *, for_update: bool = False
    ) -> Optional[Subscription]:
        matching = [s for s in self.subscriptions.values() if s.checkout_session_ref == session_ref]
        return max(matching, key=lambda s: s.created_at) if matching else None

    def get_subscription(self, subscription_id: str, *, for_update: bool = False) -> Optional[Subscription]:
        return self.subscriptions.get(subscription_id)

    def insert_subscription_if_absent(self, subscription: Subscription) -> Tuple[Subscription, bool]:
        with self._lock:
            for existing in self.subscriptions.values():
                if existing.subscription_id == subscription.subscription_id or (
                    subscription.provider_subscription_ref
                    and existing.provider_subscription_ref == subscription.provider_subscription_ref
                ):
                    return existing, False
            self.subscriptions[subscription.subscription_id] = subscription
            return subscription, True

    def save_subscription(self, subscription: Subscription) -> Subscription:
        with self._lock:
            self.subscriptions[subscription.subscription_id] = subscription
            return subscription

    def list_pending_subscriptions(
        self, *, created_before: datetime, limit: Optional[int] = None
    ) -> List[Subscription]:
        matching = sorted(
            (
                s
                for s in self.subscriptions.values()
                if s.status == SubscriptionStatus.PENDING and s.created_at < created_before
            ),
            key=lambda s: s.created_at,
        )
        return matching if limit is None else matching[:limit]

    # Invoices ----------------------------------------------------------------

    def find_invoice_by_provider_ref(self, provider_ref: str, *, for_update: bool = False) -> Optional[Invoice]:
        return next((i for i in self.invoices.values() if i.provider_invoice_ref == provider_ref), None)

    def find_invoice_for_payment(self, payment_id: str, *, for_update: bool = False) -> Optional[Invoice]:
        return next((i for i in self.invoices.values() if i.payment_id == payment_id), None)

    def find_invoices_for_subscription(self, subscription_id: str) -> Sequence[Invoice]:
        return sorted(
            (i for i in self.invoices.values() if i.subscription_id == subscription_id),
            key=lambda i: i.created_at,
            reverse=True,
        )

    def insert_invoice_if_absent(self, invoice: Invoice) -> Tuple[Invoice, bool]:
        with self._lock:
            for existing in self.invoices.values():
                if (
                    existing.invoice_id == invoice.invoice_id
                    or (invoice.provider_invoice_ref and existing.provider_invoice_ref == invoice.provider_invoice_ref)
                    or (invoice.payment_id and existing.payment_id == invoice.payment_id)
                ):
                    return existing, False
            self.invoices[invoice.invoice_id] = invoice
            return invoice, True

    def save_invoice(self, invoice: Invoice) -> Invoice:
        with self._lock:
            self.invoices[invoice.invoice_id] = invoice
            return invoice


class FakeProviderGateway(LocalSandboxProviderGateway):
    """Sandbox provider that records calls and can be told to fail."""

    def __init__(self) -> None:
        super().__init__()
        self.calls: List[Tuple[str, object]] = []
        self._failures: Dict[str, List[Exception]] = {}
        self.draft_amount_override: Optional[int] = None

    def fail_next(self, method: str, error: Exception, *, times: int = 1) -> None:
        self._failures.setdefault(method, []).extend([error] * times)

    def _record(self, method: str, argument: object) -> None:
        self.calls.append((method, argument))
        pending = self._failures.get(method)
        if pending:
            raise pending.pop(0)

    def calls_to(self, method: str) -> List[object]:
        return [argument for name, argument in self.calls if name == method]

    def retrieve_checkout_session(self, session_ref):
        self._record("retrieve_checkout_session", session_ref)
        return super().retrieve_checkout_session(session_ref)

    def retrieve_subscription(self, subscription_ref):
        self._record("retrieve_subscription", subscription_ref)
        return super().retrieve_subscription(subscription_ref)

    def retrieve_invoice(self, invoice_ref):
        self._record("retrieve_invoice", invoice_ref)
        return super().retrieve_invoice(invoice_ref)

    def create_customer(self, *, email, name, metadata):
        self._record("create_customer", metadata)
        return super().create_customer(email=email, name=name, metadata=metadata)

    def create_invoice(self, *, customer_ref, amount, currency, description, metadata, idempotency_key=None):
        self._record("create_invoice", idempotency_key)
        created = super().create_invoice(
            customer_ref=customer_ref,
            amount=amount,
            currency=currency,
            description=description,
            metadata=metadata,
            idempotency_key=idempotency_key,
        )
        if self.draft_amount_override is not None:
            created = created.model_copy(update={"amount_due": self.draft_amount_override})
            self.add_invoice(created)
        return created

    def finalize_invoice(self, invoice_ref):
        self._record("finalize_invoice", invoice_ref)
        return super().finalize_invoice(invoice_ref)

    def mark_invoice_paid(self, invoice_ref):
        self._record("mark_invoice_paid", invoice_ref)
        return super().mark_invoice_paid(invoice_ref)


class InMemoryUserDirectory:
    def __init__(self) -> None:
        self.users: Dict[str, BillingUser] = {}

    def add(self, user: BillingUser) -> BillingUser:
        self.users[user.user_id] = user
        return user

    def find_user_by_customer_ref(self, customer_ref: str) -> Optional[BillingUser]:
        return next((u for u in self.users.values() if u.provider_customer_ref == customer_ref), None)

    def get_user(self, user_id: str) -> Optional[BillingUser]:
        return self.users.get(user_id)

    def attach_customer_ref(self, user_id: str, customer_ref: str) -> BillingUser:
        user = self.users.get(user_id)
        if user is None:
            raise LookupError(f"User {user_id} not found")
        updated = user.model_copy(update={"provider_customer_ref": customer_ref})
        self.users[user_id] = updated
        return updated


def utc(*args: int) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


def make_payment(**overrides: object) -> Payment:
    values: Dict[str, object] = {
        "payment_id": "pay_1",
        "user_id": "user-1",
        "checkout_session_ref": "cs_pay_1",
        "amount": 4200,
        "currency": "usd",
        "status": PaymentStatus.PENDING,
        "description": "Annual donation",
    }
    values.update(overrides)
    return Payment(**values)


def make_subscription(**overrides: object) -> Subscription:
    values: Dict[str, object] = {
        "subscription_id": "sub_local_1",
        "user_id": "user-1",
        "checkout_session_ref": "cs_sub_1",
        "plan_ref": "price_monthly",
        "amount": 1500,
        "currency": "usd",
        "status": SubscriptionStatus.PENDING,
    }
    values.update(overrides)
    return Subscription(**values)
