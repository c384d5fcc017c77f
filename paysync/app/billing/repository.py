"""Persistence layer for the reconciliation engine."""
from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
from typing import Dict, Iterator, List, Optional, Sequence, Tuple

import psycopg2
import psycopg2.extras
from psycopg2.extensions import connection as PgConnection
from psycopg2.extensions import cursor as PgCursor

from ...app_context import get_conn
from .models import (
    BillingInterval,
    BillingUser,
    Invoice,
    InvoiceStatus,
    Payment,
    PaymentStatus,
    ProcessorDomain,
    Subscription,
    SubscriptionStatus,
    WebhookLogEntry,
    WebhookLogStatus,
)


@contextmanager
def managed_connection(conn: Optional[PgConnection] = None):
    """Context manager that manages transaction boundaries for optional connections."""

    if conn is not None:
        yield conn, False
        return

    connection = get_conn()
    try:
        yield connection, True
        connection.commit()
    except Exception:
        connection.rollback()
        raise
    finally:
        connection.close()


def _row_to_log_entry(row: dict) -> WebhookLogEntry:
    return WebhookLogEntry(
        event_id=row["event_id"],
        event_type=row["event_type"],
        payload=row.get("payload") or {},
        status=WebhookLogStatus(row["status"]),
        processor_domain=ProcessorDomain(row["processor_domain"]),
        related_aggregate_id=row.get("related_aggregate_id"),
        error_message=row.get("error_message"),
        error_detail=row.get("error_detail"),
        retry_count=int(row.get("retry_count") or 0),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        processed_at=row.get("processed_at"),
    )


def _row_to_payment(row: dict) -> Payment:
    return Payment(
        payment_id=row["payment_id"],
        user_id=row["user_id"],
        checkout_session_ref=row.get("checkout_session_ref"),
        payment_intent_ref=row.get("payment_intent_ref"),
        amount=int(row["amount"]),
        currency=row["currency"],
        status=PaymentStatus(row["status"]),
        description=row.get("description"),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_subscription(row: dict) -> Subscription:
    return Subscription(
        subscription_id=row["subscription_id"],
        user_id=row["user_id"],
        provider_subscription_ref=row.get("provider_subscription_ref"),
        checkout_session_ref=row.get("checkout_session_ref"),
        plan_ref=row.get("plan_ref"),
        amount=int(row.get("amount") or 0),
        currency=row["currency"],
        interval=BillingInterval(row["billing_interval"]),
        status=SubscriptionStatus(row["status"]),
        start_date=row.get("start_date"),
        end_date=row.get("end_date"),
        canceled_at=row.get("canceled_at"),
        auto_renew=bool(row.get("auto_renew")),
        retry_count=int(row.get("retry_count") or 0),
        last_error_message=row.get("last_error_message"),
        last_renewal_invoice_ref=row.get("last_renewal_invoice_ref"),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_invoice(row: dict) -> Invoice:
    return Invoice(
        invoice_id=row["invoice_id"],
        user_id=row.get("user_id"),
        payment_id=row.get("payment_id"),
        subscription_id=row.get("subscription_id"),
        provider_invoice_ref=row.get("provider_invoice_ref"),
        customer_ref=row.get("customer_ref"),
        amount=int(row.get("amount") or 0),
        currency=row["currency"],
        status=InvoiceStatus(row["status"]),
        pdf_url=row.get("pdf_url"),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_user(row: dict) -> BillingUser:
    return BillingUser(
        user_id=str(row["id"]),
        email=row.get("email"),
        name=row.get("username"),
        provider_customer_ref=row.get("stripe_customer_id"),
    )


def _log_entry_params(entry: WebhookLogEntry) -> Dict[str, object]:
    return {
        "event_id": entry.event_id,
        "event_type": entry.event_type,
        "payload": psycopg2.extras.Json(entry.payload),
        "status": entry.status.value,
        "processor_domain": entry.processor_domain.value,
        "related_aggregate_id": entry.related_aggregate_id,
        "error_message": entry.error_message,
        "error_detail": psycopg2.extras.Json(entry.error_detail) if entry.error_detail is not None else None,
        "retry_count": entry.retry_count,
        "created_at": entry.created_at,
        "updated_at": entry.updated_at,
        "processed_at": entry.processed_at,
    }


def _subscription_params(subscription: Subscription) -> Dict[str, object]:
    return {
        "subscription_id": subscription.subscription_id,
        "user_id": subscription.user_id,
        "provider_subscription_ref": subscription.provider_subscription_ref,
        "checkout_session_ref": subscription.checkout_session_ref,
        "plan_ref": subscription.plan_ref,
        "amount": subscription.amount,
        "currency": subscription.currency,
        "billing_interval": subscription.interval.value,
        "status": subscription.status.value,
        "start_date": subscription.start_date,
        "end_date": subscription.end_date,
        "canceled_at": subscription.canceled_at,
        "auto_renew": subscription.auto_renew,
        "retry_count": subscription.retry_count,
        "last_error_message": subscription.last_error_message,
        "last_renewal_invoice_ref": subscription.last_renewal_invoice_ref,
        "created_at": subscription.created_at,
        "updated_at": subscription.updated_at,
    }


def _invoice_params(invoice: Invoice) -> Dict[str, object]:
    return {
        "invoice_id": invoice.invoice_id,
        "user_id": invoice.user_id,
        "payment_id": invoice.payment_id,
        "subscription_id": invoice.subscription_id,
        "provider_invoice_ref": invoice.provider_invoice_ref,
        "customer_ref": invoice.customer_ref,
        "amount": invoice.amount,
        "currency": invoice.currency,
        "status": invoice.status.value,
        "pdf_url": invoice.pdf_url,
        "created_at": invoice.created_at,
        "updated_at": invoice.updated_at,
    }


_INSERT_SUBSCRIPTION = """
    INSERT INTO billing_subscriptions (
        subscription_id, user_id, provider_subscription_ref, checkout_session_ref,
        plan_ref, amount, currency, billing_interval, status, start_date, end_date,
        canceled_at, auto_renew, retry_count, last_error_message,
        last_renewal_invoice_ref, created_at, updated_at
    )
    VALUES (%(subscription_id)s, %(user_id)s, %(provider_subscription_ref)s,
            %(checkout_session_ref)s, %(plan_ref)s, %(amount)s, %(currency)s,
            %(billing_interval)s, %(status)s, %(start_date)s, %(end_date)s,
            %(canceled_at)s, %(auto_renew)s, %(retry_count)s, %(last_error_message)s,
            %(last_renewal_invoice_ref)s, %(created_at)s, %(updated_at)s)
"""

_INSERT_INVOICE = """
    INSERT INTO billing_invoices (
        invoice_id, user_id, payment_id, subscription_id, provider_invoice_ref,
        customer_ref, amount, currency, status, pdf_url, created_at, updated_at
    )
    VALUES (%(invoice_id)s, %(user_id)s, %(payment_id)s, %(subscription_id)s,
            %(provider_invoice_ref)s, %(customer_ref)s, %(amount)s, %(currency)s,
            %(status)s, %(pdf_url)s, %(created_at)s, %(updated_at)s)
"""


class PostgresBillingRepository:
    """Concrete repository persisting reconciliation state in PostgreSQL.

    Unbound instances open a connection per call. :meth:`transaction` yields a
    repository bound to one connection so ``for_update`` row locks are held
    until the unit of work commits.
    """

    def __init__(self, *, conn: Optional[PgConnection] = None) -> None:
        self._conn = conn

    @contextmanager
    def transaction(self) -> Iterator["PostgresBillingRepository"]:
        if self._conn is not None:
            yield self
            return
        with managed_connection() as (connection, _):
            yield PostgresBillingRepository(conn=connection)

    @contextmanager
    def _cursor(self) -> Iterator[PgCursor]:
        with managed_connection(self._conn) as (connection, managed):
            cursor = connection.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
            try:
                yield cursor
                if managed:
                    connection.commit()
            except Exception:
                if managed:
                    connection.rollback()
                raise
            finally:
                cursor.close()

    def _fetch_one(self, query: str, params: Sequence[object], *, for_update: bool = False) -> Optional[dict]:
        if for_update:
            query = f"{query}\nFOR UPDATE"
        with self._cursor() as cursor:
            cursor.execute(query, params)
            return cursor.fetchone()

    # Webhook log -------------------------------------------------------------

    def insert_log_entry(self, entry: WebhookLogEntry) -> Tuple[WebhookLogEntry, bool]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO billing_webhook_logs (
                    event_id, event_type, payload, status, processor_domain,
                    related_aggregate_id, error_message, error_detail, retry_count,
                    created_at, updated_at, processed_at
                )
                VALUES (%(event_id)s, %(event_type)s, %(payload)s, %(status)s,
                        %(processor_domain)s, %(related_aggregate_id)s, %(error_message)s,
                        %(error_detail)s, %(retry_count)s, %(created_at)s, %(updated_at)s,
                        %(processed_at)s)
                ON CONFLICT (event_id) DO NOTHING
                RETURNING *
                """,
                _log_entry_params(entry),
            )
            row = cursor.fetchone()
            if row:
                return _row_to_log_entry(row), True
            cursor.execute("SELECT * FROM billing_webhook_logs WHERE event_id = %s", (entry.event_id,))
            existing = cursor.fetchone()
            if not existing:
                raise RuntimeError("Failed to record webhook event")
            return _row_to_log_entry(existing), False

    def get_log_entry(self, event_id: str) -> Optional[WebhookLogEntry]:
        row = self._fetch_one("SELECT * FROM billing_webhook_logs WHERE event_id = %s", (event_id,))
        return _row_to_log_entry(row) if row else None

    def save_log_entry(self, entry: WebhookLogEntry) -> WebhookLogEntry:
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE billing_webhook_logs
                SET status = %(status)s,
                    processor_domain = %(processor_domain)s,
                    related_aggregate_id = %(related_aggregate_id)s,
                    error_message = %(error_message)s,
                    error_detail = %(error_detail)s,
                    retry_count = %(retry_count)s,
                    updated_at = %(updated_at)s,
                    processed_at = %(processed_at)s
                WHERE event_id = %(event_id)s
                RETURNING *
                """,
                _log_entry_params(entry),
            )
            row = cursor.fetchone()
            if not row:
                raise LookupError(f"Webhook event {entry.event_id} not found")
            return _row_to_log_entry(row)

    def transition_log_entry(
        self,
        entry: WebhookLogEntry,
        *,
        expected_status: WebhookLogStatus,
        expected_updated_at: Optional[datetime] = None,
    ) -> Optional[WebhookLogEntry]:
        params = _log_entry_params(entry)
        params["expected_status"] = expected_status.value
        params["expected_updated_at"] = expected_updated_at
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE billing_webhook_logs
                SET status = %(status)s,
                    retry_count = %(retry_count)s,
                    error_message = %(error_message)s,
                    error_detail = %(error_detail)s,
                    updated_at = %(updated_at)s,
                    processed_at = %(processed_at)s
                WHERE event_id = %(event_id)s
                  AND status = %(expected_status)s
                  AND (%(expected_updated_at)s::timestamptz IS NULL OR updated_at = %(expected_updated_at)s)
                RETURNING *
                """,
                params,
            )
            row = cursor.fetchone()
            return _row_to_log_entry(row) if row else None

    def list_log_entries(
        self,
        *,
        status: WebhookLogStatus,
        limit: int,
        max_retry_count: Optional[int] = None,
        updated_before: Optional[datetime] = None,
    ) -> List[WebhookLogEntry]:
        clauses = ["status = %s"]
        params: List[object] = [status.value]
        if max_retry_count is not None:
            clauses.append("retry_count < %s")
            params.append(max_retry_count)
        if updated_before is not None:
            clauses.append("updated_at < %s")
            params.append(updated_before)
        params.append(limit)
        with self._cursor() as cursor:
            cursor.execute(
                f"""
                SELECT *
                FROM billing_webhook_logs
                WHERE {' AND '.join(clauses)}
                ORDER BY created_at ASC
                LIMIT %s
                """,
                params,
            )
            return [_row_to_log_entry(row) for row in cursor.fetchall()]

    def find_latest_log_entry(self, correlation_key: str) -> Optional[WebhookLogEntry]:
        escaped = correlation_key.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        row = self._fetch_one(
            """
            SELECT *
            FROM billing_webhook_logs
            WHERE payload->>'id' = %s
               OR payload::text LIKE %s
            ORDER BY created_at DESC
            LIMIT 1
            """,
            (correlation_key, f'%"{escaped}"%'),
        )
        return _row_to_log_entry(row) if row else None

    def count_log_entries_by_status(self) -> Dict[str, int]:
        with self._cursor() as cursor:
            cursor.execute("SELECT status, COUNT(*) AS total FROM billing_webhook_logs GROUP BY status")
            return {row["status"]: int(row["total"]) for row in cursor.fetchall()}

    # Payments ----------------------------------------------------------------

    def find_payment_by_checkout_session(self, session_ref: str, *, for_update: bool = False) -> Optional[Payment]:
        row = self._fetch_one(
            "SELECT * FROM billing_payments WHERE checkout_session_ref = %s",
            (session_ref,),
            for_update=for_update,
        )
        return _row_to_payment(row) if row else None

    def find_payment_by_payment_intent(self, intent_ref: str, *, for_update: bool = False) -> Optional[Payment]:
        row = self._fetch_one(
            "SELECT * FROM billing_payments WHERE payment_intent_ref = %s",
            (intent_ref,),
            for_update=for_update,
        )
        return _row_to_payment(row) if row else None

    def get_payment(self, payment_id: str, *, for_update: bool = False) -> Optional[Payment]:
        row = self._fetch_one(
            "SELECT * FROM billing_payments WHERE payment_id = %s",
            (payment_id,),
            for_update=for_update,
        )
        return _row_to_payment(row) if row else None

    def save_payment(self, payment: Payment) -> Payment:
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO billing_payments (
                    payment_id, user_id, checkout_session_ref, payment_intent_ref,
                    amount, currency, status, description, created_at, updated_at
                )
                VALUES (%(payment_id)s, %(user_id)s, %(checkout_session_ref)s,
                        %(payment_intent_ref)s, %(amount)s, %(currency)s, %(status)s,
                        %(description)s, %(created_at)s, %(updated_at)s)
                ON CONFLICT (payment_id) DO UPDATE SET
                    checkout_session_ref = EXCLUDED.checkout_session_ref,
                    payment_intent_ref = EXCLUDED.payment_intent_ref,
                    status = EXCLUDED.status,
                    description = EXCLUDED.description,
                    updated_at = EXCLUDED.updated_at
                RETURNING *
                """,
                {
                    "payment_id": payment.payment_id,
                    "user_id": payment.user_id,
                    "checkout_session_ref": payment.checkout_session_ref,
                    "payment_intent_ref": payment.payment_intent_ref,
                    "amount": payment.amount,
                    "currency": payment.currency,
                    "status": payment.status.value,
                    "description": payment.description,
                    "created_at": payment.created_at,
                    "updated_at": payment.updated_at,
                },
            )
            row = cursor.fetchone()
            if not row:
                raise RuntimeError("Failed to persist payment")
            return _row_to_payment(row)

    # Subscriptions -----------------------------------------------------------

    def find_subscription_by_provider_ref(
        self, provider_ref: str, *, for_update: bool = False
    ) -> Optional[Subscription]:
        row = self._fetch_one(
            "SELECT * FROM billing_subscriptions WHERE provider_subscription_ref = %s",
            (provider_ref,),
            for_update=for_update,
        )
        return _row_to_subscription(row) if row else None

    def find_subscription_by_checkout_session(
        self, session_ref: str, *, for_update: bool = False
    ) -> Optional[Subscription]:
        row = self._fetch_one(
            """
            SELECT *
            FROM billing_subscriptions
            WHERE checkout_session_ref = %s
            ORDER BY created_at DESC
            LIMIT 1
            """,
            (session_ref,),
            for_update=for_update,
        )
        return _row_to_subscription(row) if row else None

    def get_subscription(self, subscription_id: str, *, for_update: bool = False) -> Optional[Subscription]:
        row = self._fetch_one(
            "SELECT * FROM billing_subscriptions WHERE subscription_id = %s",
            (subscription_id,),
            for_update=for_update,
        )
        return _row_to_subscription(row) if row else None

    def insert_subscription_if_absent(self, subscription: Subscription) -> Tuple[Subscription, bool]:
        with self._cursor() as cursor:
            cursor.execute(
                f"{_INSERT_SUBSCRIPTION}\nON CONFLICT DO NOTHING\nRETURNING *",
                _subscription_params(subscription),
            )
            row = cursor.fetchone()
            if row:
                return _row_to_subscription(row), True
            cursor.execute(
                """
                SELECT *
                FROM billing_subscriptions
                WHERE provider_subscription_ref = %s OR subscription_id = %s
                LIMIT 1
                """,
                (subscription.provider_subscription_ref, subscription.subscription_id),
            )
            existing = cursor.fetchone()
            if not existing:
                raise RuntimeError("Failed to persist subscription")
            return _row_to_subscription(existing), False

    def save_subscription(self, subscription: Subscription) -> Subscription:
        with self._cursor() as cursor:
            cursor.execute(
                f"""
                {_INSERT_SUBSCRIPTION}
                ON CONFLICT (subscription_id) DO UPDATE SET
                    provider_subscription_ref = EXCLUDED.provider_subscription_ref,
                    checkout_session_ref = EXCLUDED.checkout_session_ref,
                    plan_ref = EXCLUDED.plan_ref,
                    status = EXCLUDED.status,
                    start_date = EXCLUDED.start_date,
                    end_date = EXCLUDED.end_date,
                    canceled_at = EXCLUDED.canceled_at,
                    auto_renew = EXCLUDED.auto_renew,
                    retry_count = EXCLUDED.retry_count,
                    last_error_message = EXCLUDED.last_error_message,
                    last_renewal_invoice_ref = EXCLUDED.last_renewal_invoice_ref,
                    updated_at = EXCLUDED.updated_at
                RETURNING *
                """,
                _subscription_params(subscription),
            )
            row = cursor.fetchone()
            if not row:
                raise RuntimeError("Failed to persist subscription")
            return _row_to_subscription(row)

    def list_pending_subscriptions(
        self, *, created_before: datetime, limit: Optional[int] = None
    ) -> List[Subscription]:
        query = """
            SELECT *
            FROM billing_subscriptions
            WHERE status = %s AND created_at < %s
            ORDER BY created_at ASC
        """
        params: List[object] = [SubscriptionStatus.PENDING.value, created_before]
        if limit is not None:
            query += " LIMIT %s"
            params.append(limit)
        with self._cursor() as cursor:
            cursor.execute(query, params)
            return [_row_to_subscription(row) for row in cursor.fetchall()]

    # Invoices ----------------------------------------------------------------

    def find_invoice_by_provider_ref(self, provider_ref: str, *, for_update: bool = False) -> Optional[Invoice]:
        row = self._fetch_one(
            "SELECT * FROM billing_invoices WHERE provider_invoice_ref = %s",
            (provider_ref,),
            for_update=for_update,
        )
        return _row_to_invoice(row) if row else None

    def find_invoice_for_payment(self, payment_id: str, *, for_update: bool = False) -> Optional[Invoice]:
        row = self._fetch_one(
            "SELECT * FROM billing_invoices WHERE payment_id = %s",
            (payment_id,),
            for_update=for_update,
        )
        return _row_to_invoice(row) if row else None

    def find_invoices_for_subscription(self, subscription_id: str) -> List[Invoice]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM billing_invoices
                WHERE subscription_id = %s
                ORDER BY created_at DESC
                """,
                (subscription_id,),
            )
            return [_row_to_invoice(row) for row in cursor.fetchall()]

    def insert_invoice_if_absent(self, invoice: Invoice) -> Tuple[Invoice, bool]:
        with self._cursor() as cursor:
            cursor.execute(f"{_INSERT_INVOICE}\nON CONFLICT DO NOTHING\nRETURNING *", _invoice_params(invoice))
            row = cursor.fetchone()
            if row:
                return _row_to_invoice(row), True
            cursor.execute(
                """
                SELECT *
                FROM billing_invoices
                WHERE provider_invoice_ref = %s OR payment_id = %s OR invoice_id = %s
                LIMIT 1
                """,
                (invoice.provider_invoice_ref, invoice.payment_id, invoice.invoice_id),
            )
            existing = cursor.fetchone()
            if not existing:
                raise RuntimeError("Failed to persist invoice")
            return _row_to_invoice(existing), False

    def save_invoice(self, invoice: Invoice) -> Invoice:
        with self._cursor() as cursor:
            cursor.execute(
                f"""
                {_INSERT_INVOICE}
                ON CONFLICT (invoice_id) DO UPDATE SET
                    user_id = EXCLUDED.user_id,
                    payment_id = EXCLUDED.payment_id,
                    subscription_id = EXCLUDED.subscription_id,
                    customer_ref = EXCLUDED.customer_ref,
                    amount = EXCLUDED.amount,
                    currency = EXCLUDED.currency,
                    status = EXCLUDED.status,
                    pdf_url = EXCLUDED.pdf_url,
                    updated_at = EXCLUDED.updated_at
                RETURNING *
                """,
                _invoice_params(invoice),
            )
            row = cursor.fetchone()
            if not row:
                raise RuntimeError("Failed to persist invoice")
            return _row_to_invoice(row)


class PostgresUserDirectory:
    """Resolves billing owners from the application's ``users`` table."""

    def __init__(self, *, conn: Optional[PgConnection] = None) -> None:
        self._conn = conn

    @contextmanager
    def _cursor(self) -> Iterator[PgCursor]:
        with managed_connection(self._conn) as (connection, managed):
            cursor = connection.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
            try:
                yield cursor
            finally:
                cursor.close()

    def find_user_by_customer_ref(self, customer_ref: str) -> Optional[BillingUser]:
        with self._cursor() as cursor:
            cursor.execute(
                "SELECT id, email, username, stripe_customer_id FROM users WHERE stripe_customer_id = %s LIMIT 1",
                (customer_ref,),
            )
            row = cursor.fetchone()
            return _row_to_user(row) if row else None

    def get_user(self, user_id: str) -> Optional[BillingUser]:
        with self._cursor() as cursor:
            cursor.execute(
                "SELECT id, email, username, stripe_customer_id FROM users WHERE id = %s",
                (user_id,),
            )
            row = cursor.fetchone()
            return _row_to_user(row) if row else None

    def attach_customer_ref(self, user_id: str, customer_ref: str) -> BillingUser:
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE users
                SET stripe_customer_id = %s
                WHERE id = %s
                RETURNING id, email, username, stripe_customer_id
                """,
                (customer_ref, user_id),
            )
            row = cursor.fetchone()
            if not row:
                raise LookupError(f"User {user_id} not found")
            return _row_to_user(row)


__all__ = ["PostgresBillingRepository", "PostgresUserDirectory", "managed_connection"]
