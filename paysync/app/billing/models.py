"""Domain models for the billing reconciliation engine."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WebhookLogStatus(str, Enum):
    """Lifecycle status of a received webhook event."""

    PROCESSING = "processing"
    SUCCESS = "success"
    ERROR = "error"
    IGNORED = "ignored"


class ProcessorDomain(str, Enum):
    """Reconciliation domain an event is dispatched to."""

    PAYMENT_INTENT = "payment_intent"
    SUBSCRIPTION = "subscription"


class BillingWebhookEventType(str, Enum):
    """Canonical webhook event types that the engine reacts to."""

    CHECKOUT_COMPLETED = "checkout.completed"
    PAYMENT_INTENT_SUCCEEDED = "payment_intent.succeeded"
    PAYMENT_INTENT_FAILED = "payment_intent.payment_failed"
    CHARGE_SUCCEEDED = "charge.succeeded"
    CHARGE_FAILED = "charge.failed"
    SUBSCRIPTION_CREATED = "subscription.created"
    SUBSCRIPTION_UPDATED = "subscription.updated"
    SUBSCRIPTION_DELETED = "subscription.deleted"
    INVOICE_CREATED = "invoice.created"
    INVOICE_FINALIZED = "invoice.finalized"
    INVOICE_PAID = "invoice.paid"
    INVOICE_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
    INVOICE_PAYMENT_FAILED = "invoice.payment_failed"


class PaymentStatus(str, Enum):
    """Status of a one-time payment."""

    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class SubscriptionStatus(str, Enum):
    """Local subscription lifecycle states."""

    PENDING = "pending"
    INCOMPLETE = "incomplete"
    ACTIVE = "active"
    TRIALING = "trialing"
    PAST_DUE = "past_due"
    UNPAID = "unpaid"
    CANCELED = "canceled"


class BillingInterval(str, Enum):
    """Supported billing cadences."""

    MONTH = "month"
    YEAR = "year"


class InvoiceStatus(str, Enum):
    """Status of a persisted invoice record."""

    DRAFT = "draft"
    OPEN = "open"
    PAID = "paid"
    VOID = "void"
    UNCOLLECTIBLE = "uncollectible"
    PAST_DUE = "past_due"


class WebhookLogEntry(BaseModel):
    """Durable record of one received provider event."""

    event_id: str
    event_type: str
    payload: Dict[str, object] = Field(default_factory=dict)
    status: WebhookLogStatus = WebhookLogStatus.PROCESSING
    processor_domain: ProcessorDomain
    related_aggregate_id: Optional[str] = None
    error_message: Optional[str] = None
    error_detail: Optional[Dict[str, object]] = None
    retry_count: int = Field(default=0, ge=0)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)
    processed_at: Optional[datetime] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @property
    def is_terminal(self) -> bool:
        return self.status in {
            WebhookLogStatus.SUCCESS,
            WebhookLogStatus.ERROR,
            WebhookLogStatus.IGNORED,
        }


class Payment(BaseModel):
    """One-time payment owned by a local user."""

    payment_id: str
    user_id: str
    checkout_session_ref: Optional[str] = None
    payment_intent_ref: Optional[str] = None
    amount: int = Field(ge=0, description="Amount in minor currency units")
    currency: str = Field(min_length=3, max_length=3)
    status: PaymentStatus = PaymentStatus.PENDING
    description: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @field_validator("currency")
    @classmethod
    def _upper_currency(cls, value: str) -> str:
        return value.upper()


class Subscription(BaseModel):
    """Recurring subscription synchronised from the provider."""

    subscription_id: str
    user_id: str
    provider_subscription_ref: Optional[str] = None
    checkout_session_ref: Optional[str] = None
    plan_ref: Optional[str] = None
    amount: int = Field(default=0, ge=0)
    currency: str = Field(default="USD", min_length=3, max_length=3)
    interval: BillingInterval = BillingInterval.MONTH
    status: SubscriptionStatus = SubscriptionStatus.PENDING
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    canceled_at: Optional[datetime] = None
    auto_renew: bool = True
    retry_count: int = Field(
        default=0,
        ge=0,
        description="Consecutive failed billing attempts",
    )
    last_error_message: Optional[str] = None
    last_renewal_invoice_ref: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @field_validator("currency")
    @classmethod
    def _upper_currency(cls, value: str) -> str:
        return value.upper()

    @property
    def is_canceled(self) -> bool:
        """Return ``True`` once the subscription reached its terminal state."""
        return self.status == SubscriptionStatus.CANCELED


class Invoice(BaseModel):
    """Invoice derived from a payment or a subscription billing cycle."""

    invoice_id: str
    user_id: Optional[str] = None
    payment_id: Optional[str] = None
    subscription_id: Optional[str] = None
    provider_invoice_ref: Optional[str] = None
    customer_ref: Optional[str] = None
    amount: int = Field(default=0, ge=0)
    currency: str = Field(default="USD", min_length=3, max_length=3)
    status: InvoiceStatus = InvoiceStatus.OPEN
    pdf_url: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @field_validator("currency")
    @classmethod
    def _upper_currency(cls, value: str) -> str:
        return value.upper()

    @property
    def is_placeholder(self) -> bool:
        """Return ``True`` while the invoice is not linked to any aggregate."""
        return self.payment_id is None and self.subscription_id is None


class BillingUser(BaseModel):
    """Local user as seen by the billing subsystem."""

    user_id: str
    email: Optional[str] = None
    name: Optional[str] = None
    provider_customer_ref: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class ProviderCheckoutSession(BaseModel):
    """Checkout session state as reported by the provider."""

    ref: str
    status: Optional[str] = None
    payment_status: Optional[str] = None
    mode: Optional[str] = None
    payment_intent_ref: Optional[str] = None
    subscription_ref: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class ProviderInvoice(BaseModel):
    """Invoice state as reported by the provider."""

    ref: str
    status: Optional[str] = None
    customer_ref: Optional[str] = None
    amount_due: int = 0
    amount_paid: int = 0
    currency: str = "USD"
    pdf_url: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @field_validator("currency")
    @classmethod
    def _upper_currency(cls, value: str) -> str:
        return value.upper()

    @property
    def is_paid(self) -> bool:
        return self.status == InvoiceStatus.PAID.value


class ReconciliationResult(BaseModel):
    """Outcome of a reconciler applying one event."""

    domain: ProcessorDomain
    aggregate_id: Optional[str] = None
    detail: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class WebhookStatusReport(BaseModel):
    """Answer to a polling client asking how its checkout is doing."""

    status: str
    message: str
    error_details: Optional[str] = None
    redirect_url: Optional[str] = None
    event_id: Optional[str] = None
    event_type: Optional[str] = None
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)
