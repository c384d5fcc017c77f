"""Billing reconciliation package: provider webhooks to local payments, subscriptions and invoices."""

from .exceptions import (
    BillingSyncError,
    DataInconsistency,
    DuplicateEvent,
    ProviderLookupFailed,
    SubscriptionAwaitingSynthesis,
    TransientProviderFailure,
    UnresolvedAggregate,
    UserResolutionFailure,
)
from .models import (
    BillingInterval,
    BillingUser,
    BillingWebhookEventType,
    Invoice,
    InvoiceStatus,
    Payment,
    PaymentStatus,
    ProcessorDomain,
    ProviderCheckoutSession,
    ProviderInvoice,
    ReconciliationResult,
    Subscription,
    SubscriptionStatus,
    WebhookLogEntry,
    WebhookLogStatus,
    WebhookStatusReport,
)
from .service import (
    BillingRepository,
    BillingSyncService,
    ProviderGateway,
    UserDirectory,
)

__all__ = [
    "BillingInterval",
    "BillingRepository",
    "BillingSyncError",
    "BillingSyncService",
    "BillingUser",
    "BillingWebhookEventType",
    "DataInconsistency",
    "DuplicateEvent",
    "Invoice",
    "InvoiceStatus",
    "Payment",
    "PaymentStatus",
    "ProcessorDomain",
    "ProviderCheckoutSession",
    "ProviderGateway",
    "ProviderInvoice",
    "ProviderLookupFailed",
    "ReconciliationResult",
    "Subscription",
    "SubscriptionAwaitingSynthesis",
    "SubscriptionStatus",
    "TransientProviderFailure",
    "UnresolvedAggregate",
    "UserDirectory",
    "UserResolutionFailure",
    "WebhookLogEntry",
    "WebhookLogStatus",
    "WebhookStatusReport",
]
