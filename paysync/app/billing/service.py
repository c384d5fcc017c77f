"""Collaborator interfaces and the facade wiring the reconciliation engine together."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import ContextManager, Dict, Mapping, Optional, Protocol, Sequence, Tuple

from .event_log import EventLog
from .invoices import InvoiceService
from .models import (
    BillingUser,
    Invoice,
    Payment,
    ProcessorDomain,
    ProviderCheckoutSession,
    ProviderInvoice,
    Subscription,
    WebhookLogEntry,
    WebhookLogStatus,
    WebhookStatusReport,
)
from .payments import PaymentReconciler
from .processor import WebhookProcessor
from .resolver import EntityResolver
from .retry import RetryCoordinator
from .routing import ProcessorRouter
from .subscriptions import SubscriptionReconciler, SubscriptionSynthesizer
from .sweeper import StaleStateSweeper


class ProviderGateway(Protocol):
    """External payment provider integration."""

    def retrieve_checkout_session(self, session_ref: str) -> ProviderCheckoutSession:
        """Fetch a checkout session; raises ``ProviderLookupFailed`` when it does not exist."""

    def retrieve_subscription(self, subscription_ref: str) -> Dict[str, object]:
        ...

    def retrieve_invoice(self, invoice_ref: str) -> ProviderInvoice:
        ...

    def create_customer(
        self,
        *,
        email: Optional[str],
        name: Optional[str],
        metadata: Dict[str, str],
    ) -> str:
        """Create a provider customer and return its reference."""

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
        """Create a draft invoice carrying a single line item for ``amount``."""

    def finalize_invoice(self, invoice_ref: str) -> ProviderInvoice:
        ...

    def mark_invoice_paid(self, invoice_ref: str) -> ProviderInvoice:
        """Record the invoice as paid out of band."""


class UserDirectory(Protocol):
    """Lookup of local users by provider customer reference."""

    def find_user_by_customer_ref(self, customer_ref: str) -> Optional[BillingUser]:
        ...

    def get_user(self, user_id: str) -> Optional[BillingUser]:
        ...

    def attach_customer_ref(self, user_id: str, customer_ref: str) -> BillingUser:
        ...


class WebhookLogRepository(Protocol):
    """Persistence operations for the webhook event log."""

    def insert_log_entry(self, entry: WebhookLogEntry) -> Tuple[WebhookLogEntry, bool]:
        """Insert ``entry`` unless its event id exists; return the stored row and whether it was created."""

    def get_log_entry(self, event_id: str) -> Optional[WebhookLogEntry]:
        ...

    def save_log_entry(self, entry: WebhookLogEntry) -> WebhookLogEntry:
        ...

    def transition_log_entry(
        self,
        entry: WebhookLogEntry,
        *,
        expected_status: WebhookLogStatus,
        expected_updated_at: Optional[datetime] = None,
    ) -> Optional[WebhookLogEntry]:
        """Write ``entry`` only if the stored row still has the expected status (and timestamp)."""

    def list_log_entries(
        self,
        *,
        status: WebhookLogStatus,
        limit: int,
        max_retry_count: Optional[int] = None,
        updated_before: Optional[datetime] = None,
    ) -> Sequence[WebhookLogEntry]:
        """Oldest first; ``max_retry_count`` keeps entries with ``retry_count`` below it."""

    def find_latest_log_entry(self, correlation_key: str) -> Optional[WebhookLogEntry]:
        ...

    def count_log_entries_by_status(self) -> Dict[str, int]:
        ...


class PaymentRepository(Protocol):
    def find_payment_by_checkout_session(self, session_ref: str, *, for_update: bool = False) -> Optional[Payment]:
        ...

    def find_payment_by_payment_intent(self, intent_ref: str, *, for_update: bool = False) -> Optional[Payment]:
        ...

    def get_payment(self, payment_id: str, *, for_update: bool = False) -> Optional[Payment]:
        ...

    def save_payment(self, payment: Payment) -> Payment:
        ...


class SubscriptionRepository(Protocol):
    def find_subscription_by_provider_ref(
        self, provider_ref: str, *, for_update: bool = False
    ) -> Optional[Subscription]:
        ...

    def find_subscription_by_checkout_session(
        self, session_ref: str, *, for_update: bool = False
    ) -> Optional[Subscription]:
        ...

    def get_subscription(self, subscription_id: str, *, for_update: bool = False) -> Optional[Subscription]:
        ...

    def insert_subscription_if_absent(self, subscription: Subscription) -> Tuple[Subscription, bool]:
        """Insert unless the provider subscription ref is taken; return the stored row and whether it was created."""

    def save_subscription(self, subscription: Subscription) -> Subscription:
        ...

    def list_pending_subscriptions(
        self, *, created_before: datetime, limit: Optional[int] = None
    ) -> Sequence[Subscription]:
        """Pending subscriptions created before ``created_before``, oldest first."""


class InvoiceRepository(Protocol):
    def find_invoice_by_provider_ref(self, provider_ref: str, *, for_update: bool = False) -> Optional[Invoice]:
        ...

    def find_invoice_for_payment(self, payment_id: str, *, for_update: bool = False) -> Optional[Invoice]:
        ...

    def find_invoices_for_subscription(self, subscription_id: str) -> Sequence[Invoice]:
        """Invoices linked to the subscription, newest first."""

    def insert_invoice_if_absent(self, invoice: Invoice) -> Tuple[Invoice, bool]:
        """Insert unless the provider ref or payment link is taken; return the stored row and whether it was created."""

    def save_invoice(self, invoice: Invoice) -> Invoice:
        ...


class BillingRepository(
    WebhookLogRepository,
    PaymentRepository,
    SubscriptionRepository,
    InvoiceRepository,
    Protocol,
):
    """All persistence operations required by the reconciliation engine."""

    def transaction(self) -> ContextManager["BillingRepository"]:
        """Open a unit of work; ``for_update`` lookups lock rows until it ends."""


@dataclass
class BillingSyncService:
    """Entry point for webhook intake, status queries and operational jobs."""

    repository: BillingRepository
    provider: ProviderGateway
    user_directory: UserDirectory
    cancel_url: Optional[str] = None
    default_currency: str = "USD"
    router: ProcessorRouter = field(default_factory=ProcessorRouter)
    event_log: EventLog = field(init=False)
    resolver: EntityResolver = field(init=False)
    invoices: InvoiceService = field(init=False)
    processor: WebhookProcessor = field(init=False)
    retry_coordinator: RetryCoordinator = field(init=False)
    sweeper: StaleStateSweeper = field(init=False)

    def __post_init__(self) -> None:
        self.event_log = EventLog(self.repository)
        self.resolver = EntityResolver(self.user_directory)
        self.invoices = InvoiceService(self.repository, self.provider, self.user_directory, self.resolver)
        self.processor = WebhookProcessor(
            self.event_log,
            self.router,
            {
                ProcessorDomain.PAYMENT_INTENT: PaymentReconciler(self.repository, self.resolver, self.invoices),
                ProcessorDomain.SUBSCRIPTION: SubscriptionReconciler(self.repository, self.resolver, self.invoices),
            },
            cancel_url=self.cancel_url,
        )
        synthesizer = SubscriptionSynthesizer(
            self.repository,
            self.resolver,
            self.provider,
            default_currency=self.default_currency,
        )
        self.retry_coordinator = RetryCoordinator(self.event_log, self.processor, synthesizer)
        self.sweeper = StaleStateSweeper(self.repository, self.provider)

    def handle_webhook(self, event_id: str, event_type: str, payload: Mapping[str, object]) -> WebhookLogEntry:
        return self.processor.process_event(event_id, event_type, payload)

    def check_status(self, correlation_key: str) -> WebhookStatusReport:
        return self.processor.check_status(correlation_key)

    def retry_errors(self, limit: int, *, max_attempts: Optional[int] = None) -> int:
        if limit < 1:
            raise ValueError("limit must be >= 1")
        return self.retry_coordinator.retry_errors(limit, max_attempts=max_attempts)

    def redrive_stuck(self, *, older_than_minutes: int, limit: int) -> int:
        if older_than_minutes < 1:
            raise ValueError("older_than_minutes must be >= 1")
        return self.retry_coordinator.redrive_stuck(timedelta(minutes=older_than_minutes), limit)

    def sweep_stale_pending(self, threshold_hours: float, *, now: Optional[datetime] = None) -> int:
        if threshold_hours <= 0:
            raise ValueError("threshold_hours must be > 0")
        return self.sweeper.sweep(threshold_hours, now=now)

    def find_stale_pending(self, threshold_hours: float, *, now: Optional[datetime] = None) -> Sequence[Subscription]:
        return self.sweeper.find_stale(threshold_hours, now=now)

    def sync_invoice(self, provider_invoice_ref: str) -> Invoice:
        return self.invoices.sync_from_provider(provider_invoice_ref)

    def webhook_log_stats(self) -> Dict[str, int]:
        return self.event_log.stats()


__all__ = [
    "BillingRepository",
    "BillingSyncService",
    "InvoiceRepository",
    "PaymentRepository",
    "ProviderGateway",
    "SubscriptionRepository",
    "UserDirectory",
    "WebhookLogRepository",
]
