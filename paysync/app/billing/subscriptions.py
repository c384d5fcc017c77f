"""Subscription state machine, renewal arithmetic and aggregate synthesis."""
from __future__ import annotations

import calendar
import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Dict, Mapping, Optional, Tuple
from uuid import uuid4

from .events import (
    CorrelationKeys,
    event_family,
    extract_correlation_keys,
    normalize_event_type,
    ref_from,
    timestamp_from,
)
from .exceptions import SubscriptionAwaitingSynthesis, UnresolvedAggregate, UserResolutionFailure
from .invoices import provider_invoice_from_payload
from .models import (
    BillingInterval,
    BillingWebhookEventType,
    InvoiceStatus,
    ProcessorDomain,
    ReconciliationResult,
    Subscription,
    SubscriptionStatus,
)

if TYPE_CHECKING:  # pragma: no cover
    from .invoices import InvoiceService
    from .resolver import EntityResolver
    from .service import BillingRepository, ProviderGateway

logger = logging.getLogger(__name__)

_Event = BillingWebhookEventType

PROVIDER_STATUS_MAP: Dict[str, SubscriptionStatus] = {
    "active": SubscriptionStatus.ACTIVE,
    "canceled": SubscriptionStatus.CANCELED,
    "incomplete": SubscriptionStatus.INCOMPLETE,
    "incomplete_expired": SubscriptionStatus.CANCELED,
    "past_due": SubscriptionStatus.PAST_DUE,
    "trialing": SubscriptionStatus.TRIALING,
    "unpaid": SubscriptionStatus.UNPAID,
}

_LIFECYCLE_EVENTS = {
    _Event.SUBSCRIPTION_CREATED.value,
    _Event.SUBSCRIPTION_UPDATED.value,
    _Event.SUBSCRIPTION_DELETED.value,
}

DEFAULT_PAYMENT_FAILURE_MESSAGE = "Payment failed"
RENEWAL_BILLING_REASON = "subscription_cycle"


def map_provider_status(value: object) -> SubscriptionStatus:
    """Translate a provider subscription status into the local vocabulary."""

    return PROVIDER_STATUS_MAP.get(str(value or ""), SubscriptionStatus.PENDING)


def add_interval(moment: datetime, interval: BillingInterval) -> datetime:
    """Advance ``moment`` by one billing interval, clamping to the end of month."""

    months = 12 if interval == BillingInterval.YEAR else 1
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def _first_item(payload: Mapping[str, object]) -> Mapping[str, object]:
    items = payload.get("items")
    data = items.get("data") if isinstance(items, Mapping) else None
    if isinstance(data, list) and data and isinstance(data[0], Mapping):
        return data[0]
    return {}


def period_bounds(payload: Mapping[str, object]) -> Tuple[Optional[datetime], Optional[datetime]]:
    """Return the current billing period, falling back to the first subscription item."""

    item = _first_item(payload)
    start = payload.get("current_period_start") or item.get("current_period_start")
    end = payload.get("current_period_end") or item.get("current_period_end")
    return timestamp_from(start), timestamp_from(end)


def _renewal_period_end(payload: Mapping[str, object]) -> Optional[datetime]:
    lines = payload.get("lines")
    data = lines.get("data") if isinstance(lines, Mapping) else None
    if isinstance(data, list) and data and isinstance(data[0], Mapping):
        period = data[0].get("period")
        if isinstance(period, Mapping):
            return timestamp_from(period.get("end"))
    return None


def later_of(current: Optional[datetime], candidate: Optional[datetime]) -> Optional[datetime]:
    if current is None:
        return candidate
    if candidate is None:
        return current
    return max(current, candidate)


def _payment_error_message(payload: Mapping[str, object]) -> str:
    error = payload.get("last_payment_error")
    if isinstance(error, Mapping) and error.get("message"):
        return str(error["message"])
    return DEFAULT_PAYMENT_FAILURE_MESSAGE


class SubscriptionReconciler:
    """Applies subscription domain events to :class:`Subscription` aggregates.

    Canceled is terminal. ``end_date`` only moves forward and renewals advance
    it from its current value, never from the processing time.
    """

    domain = ProcessorDomain.SUBSCRIPTION

    def __init__(
        self,
        repository: "BillingRepository",
        resolver: "EntityResolver",
        invoices: "InvoiceService",
    ) -> None:
        self.repository = repository
        self.resolver = resolver
        self.invoices = invoices

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def reconcile(self, event_type: str, payload: Mapping[str, object]) -> ReconciliationResult:
        normalized = normalize_event_type(event_type)
        keys = extract_correlation_keys(normalized, payload)

        if normalized == _Event.CHECKOUT_COMPLETED.value:
            return self._checkout_completed(keys)
        if normalized in _LIFECYCLE_EVENTS:
            return self._lifecycle(normalized, keys, payload)
        if normalized in {_Event.INVOICE_PAYMENT_SUCCEEDED.value, _Event.INVOICE_PAID.value}:
            return self._invoice_paid(keys, payload)
        if normalized == _Event.INVOICE_PAYMENT_FAILED.value:
            return self._invoice_failed(keys, payload)
        if event_family(normalized) == "invoice":
            return self.invoices.handle_invoice_event(normalized, payload)

        raise UnresolvedAggregate(f"Unhandled subscription event type {event_type}")

    def _checkout_completed(self, keys: CorrelationKeys) -> ReconciliationResult:
        with self.repository.transaction() as repo:
            subscription = self.resolver.resolve_subscription(repo, keys)
            if subscription is None:
                raise UnresolvedAggregate(f"No subscription for checkout session {keys.checkout_session_ref}")

            update: Dict[str, object] = {}
            if subscription.status == SubscriptionStatus.PENDING:
                update["status"] = SubscriptionStatus.INCOMPLETE
            if keys.subscription_ref and not subscription.provider_subscription_ref:
                update["provider_subscription_ref"] = keys.subscription_ref
            if keys.checkout_session_ref and not subscription.checkout_session_ref:
                update["checkout_session_ref"] = keys.checkout_session_ref
            subscription = self._save(repo, subscription, update)

        return self._result(subscription)

    def _lifecycle(
        self,
        event_type: str,
        keys: CorrelationKeys,
        payload: Mapping[str, object],
    ) -> ReconciliationResult:
        with self.repository.transaction() as repo:
            subscription = self.resolver.resolve_subscription(repo, keys)
            if subscription is None:
                raise SubscriptionAwaitingSynthesis(
                    f"Subscription {keys.subscription_ref} does not exist locally yet",
                    detail={"provider_subscription_ref": keys.subscription_ref},
                )
            if subscription.is_canceled:
                logger.debug(
                    "Ignoring event for canceled subscription",
                    extra={"subscription_id": subscription.subscription_id, "event_type": event_type},
                )
                return self._result(subscription, detail="already canceled")

            if event_type == _Event.SUBSCRIPTION_DELETED.value:
                update = self._cancel_update(subscription, timestamp_from(payload.get("canceled_at")))
            else:
                update = self._status_update(subscription, payload)
                if event_type == _Event.SUBSCRIPTION_UPDATED.value and "cancel_at_period_end" in payload:
                    update.setdefault("auto_renew", not bool(payload.get("cancel_at_period_end")))
            subscription = self._save(repo, subscription, update)

        return self._result(subscription)

    def _invoice_paid(self, keys: CorrelationKeys, payload: Mapping[str, object]) -> ReconciliationResult:
        with self.repository.transaction() as repo:
            subscription = self._require(repo, keys)
            update: Dict[str, object] = {}
            if not subscription.is_canceled:
                update.update(
                    {
                        "status": SubscriptionStatus.ACTIVE,
                        "last_error_message": None,
                        "retry_count": 0,
                    }
                )
                if payload.get("billing_reason") == RENEWAL_BILLING_REASON and not self._renewal_applied(
                    repo, subscription, keys.invoice_ref
                ):
                    update.update(self._renewal_update(subscription, keys.invoice_ref, payload))
            subscription = self._save(repo, subscription, update)

        invoice = self.invoices.create_or_link(
            self.domain,
            subscription,
            provider_invoice=provider_invoice_from_payload(payload),
        )
        invoice = self.invoices.mark_paid(invoice)
        return self._result(subscription, detail=f"invoice {invoice.invoice_id}")

    def _invoice_failed(self, keys: CorrelationKeys, payload: Mapping[str, object]) -> ReconciliationResult:
        with self.repository.transaction() as repo:
            subscription = self._require(repo, keys)
            update: Dict[str, object] = {}
            if not subscription.is_canceled:
                update = {
                    "status": SubscriptionStatus.PAST_DUE,
                    "retry_count": subscription.retry_count + 1,
                    "last_error_message": _payment_error_message(payload),
                }
            subscription = self._save(repo, subscription, update)

        invoice = self.invoices.create_or_link(
            self.domain,
            subscription,
            provider_invoice=provider_invoice_from_payload(payload),
        )
        self.invoices.set_status(invoice, InvoiceStatus.PAST_DUE)
        return self._result(subscription)

    def _require(self, repo: "BillingRepository", keys: CorrelationKeys) -> Subscription:
        subscription = self.resolver.resolve_subscription(repo, keys)
        if subscription is None:
            raise UnresolvedAggregate(f"No subscription matches {keys.subscription_ref}")
        return subscription

    def _status_update(self, subscription: Subscription, payload: Mapping[str, object]) -> Dict[str, object]:
        status = map_provider_status(payload.get("status"))
        if status == SubscriptionStatus.CANCELED:
            return self._cancel_update(subscription, timestamp_from(payload.get("canceled_at")))

        start, end = period_bounds(payload)
        update: Dict[str, object] = {"status": status}
        if start is not None:
            update["start_date"] = start
        new_end = later_of(subscription.end_date, end)
        if new_end != subscription.end_date:
            update["end_date"] = new_end
        return update

    def _cancel_update(self, subscription: Subscription, canceled_at: Optional[datetime]) -> Dict[str, object]:
        return {
            "status": SubscriptionStatus.CANCELED,
            "canceled_at": subscription.canceled_at or canceled_at or self._now(),
            "auto_renew": False,
        }

    def _renewal_applied(
        self,
        repo: "BillingRepository",
        subscription: Subscription,
        invoice_ref: Optional[str],
    ) -> bool:
        """True when ``invoice_ref`` already renewed this subscription.

        Both ``invoice.paid`` and ``invoice.payment_succeeded`` arrive for every
        invoice, so an older invoice's sibling can land after a newer renewal.
        """

        if not invoice_ref:
            return False
        if invoice_ref == subscription.last_renewal_invoice_ref:
            return True
        invoice = repo.find_invoice_by_provider_ref(invoice_ref, for_update=True)
        return (
            invoice is not None
            and invoice.subscription_id == subscription.subscription_id
            and invoice.status == InvoiceStatus.PAID
        )

    def _renewal_update(
        self,
        subscription: Subscription,
        invoice_ref: Optional[str],
        payload: Mapping[str, object],
    ) -> Dict[str, object]:
        if invoice_ref and invoice_ref == subscription.last_renewal_invoice_ref:
            return {}
        if subscription.end_date is not None:
            new_end = add_interval(subscription.end_date, subscription.interval)
        else:
            new_end = _renewal_period_end(payload)
            if new_end is None:
                logger.warning(
                    "Renewal without a known billing period end",
                    extra={"subscription_id": subscription.subscription_id},
                )
                return {}
        return {"end_date": new_end, "last_renewal_invoice_ref": invoice_ref}

    def _save(
        self,
        repo: "BillingRepository",
        subscription: Subscription,
        update: Dict[str, object],
    ) -> Subscription:
        changes = {key: value for key, value in update.items() if getattr(subscription, key) != value}
        if not changes:
            return subscription
        changes["updated_at"] = self._now()
        return repo.save_subscription(subscription.model_copy(update=changes))

    def _result(self, subscription: Subscription, *, detail: Optional[str] = None) -> ReconciliationResult:
        return ReconciliationResult(
            domain=self.domain,
            aggregate_id=subscription.subscription_id,
            detail=detail or subscription.status.value,
        )


class SubscriptionSynthesizer:
    """Creates the local subscription for a provider-initiated ``subscription.created``."""

    def __init__(
        self,
        repository: "BillingRepository",
        resolver: "EntityResolver",
        provider: "ProviderGateway",
        *,
        default_currency: str = "USD",
    ) -> None:
        self.repository = repository
        self.resolver = resolver
        self.provider = provider
        self.default_currency = default_currency

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def ensure_from_event(self, payload: Mapping[str, object]) -> Subscription:
        provider_ref = ref_from(payload.get("id"))
        if not provider_ref:
            raise UnresolvedAggregate("Subscription payload carries no id")

        existing = self.repository.find_subscription_by_provider_ref(provider_ref)
        if existing is not None:
            return existing

        attached = self._attach_to_local(provider_ref, payload)
        if attached is not None:
            return attached

        customer_ref = ref_from(payload.get("customer"))
        if not customer_ref:
            remote = self.provider.retrieve_subscription(provider_ref)
            customer_ref = ref_from(remote.get("customer"))
        owner = self.resolver.resolve_owner(customer_ref)
        if owner is None:
            raise UserResolutionFailure(
                f"No user owns provider customer {customer_ref}",
                detail={"customer_ref": customer_ref, "provider_subscription_ref": provider_ref},
            )

        plan_ref, amount, currency, interval = self._plan_from(payload)
        start, end = period_bounds(payload)
        status = map_provider_status(payload.get("status"))
        now = self._now()
        candidate = Subscription(
            subscription_id=f"sub_{uuid4().hex}",
            user_id=owner.user_id,
            provider_subscription_ref=provider_ref,
            plan_ref=plan_ref,
            amount=amount,
            currency=currency,
            interval=interval,
            status=status,
            start_date=start,
            end_date=end,
            canceled_at=now if status == SubscriptionStatus.CANCELED else None,
            auto_renew=not bool(payload.get("cancel_at_period_end")) and status != SubscriptionStatus.CANCELED,
            created_at=now,
            updated_at=now,
        )
        with self.repository.transaction() as repo:
            stored, created = repo.insert_subscription_if_absent(candidate)
        if created:
            logger.info(
                "Synthesized subscription from provider event",
                extra={"subscription_id": stored.subscription_id, "provider_subscription_ref": provider_ref},
            )
        return stored

    def _attach_to_local(self, provider_ref: str, payload: Mapping[str, object]) -> Optional[Subscription]:
        metadata = payload.get("metadata")
        local_id = metadata.get("subscription_id") if isinstance(metadata, Mapping) else None
        if not local_id:
            return None

        with self.repository.transaction() as repo:
            local = repo.get_subscription(str(local_id), for_update=True)
            if local is None or local.provider_subscription_ref:
                return None
            attached = repo.save_subscription(
                local.model_copy(update={"provider_subscription_ref": provider_ref, "updated_at": self._now()})
            )
        logger.info(
            "Attached provider subscription to local record",
            extra={"subscription_id": attached.subscription_id, "provider_subscription_ref": provider_ref},
        )
        return attached

    def _plan_from(self, payload: Mapping[str, object]) -> Tuple[Optional[str], int, str, BillingInterval]:
        plan = payload.get("plan")
        if not isinstance(plan, Mapping):
            item = _first_item(payload)
            plan = item.get("price") or item.get("plan") or {}
        if not isinstance(plan, Mapping):
            plan = {}

        recurring = plan.get("recurring")
        interval_value = plan.get("interval") or (recurring.get("interval") if isinstance(recurring, Mapping) else None)
        interval = BillingInterval.YEAR if interval_value == "year" else BillingInterval.MONTH
        amount = plan.get("amount")
        if amount is None:
            amount = plan.get("unit_amount")
        currency = str(plan.get("currency") or payload.get("currency") or self.default_currency)
        plan_ref = str(plan["id"]) if plan.get("id") else None
        return plan_ref, int(amount or 0), currency, interval


__all__ = [
    "PROVIDER_STATUS_MAP",
    "SubscriptionReconciler",
    "SubscriptionSynthesizer",
    "add_interval",
    "map_provider_status",
    "period_bounds",
]
