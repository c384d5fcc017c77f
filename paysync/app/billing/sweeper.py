"""Janitor for subscriptions that never received their completion webhook."""
from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Dict, Optional, Sequence

from .exceptions import BillingSyncError, ProviderLookupFailed, TransientProviderFailure
from .models import Subscription, SubscriptionStatus

if TYPE_CHECKING:  # pragma: no cover
    from .service import BillingRepository, ProviderGateway

logger = logging.getLogger(__name__)

SESSION_COMPLETE = "complete"
SESSION_EXPIRED = "expired"


class StaleStateSweeper:
    """Cancels pending subscriptions by asking the provider for the truth.

    The provider is consulted before the row is locked; the row is then
    re-read under lock and left alone if it moved out of ``pending`` meanwhile.
    """

    def __init__(self, repository: "BillingRepository", provider: "ProviderGateway") -> None:
        self.repository = repository
        self.provider = provider

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def find_stale(self, threshold_hours: float, *, now: Optional[datetime] = None) -> Sequence[Subscription]:
        cutoff = (now or self._now()) - timedelta(hours=threshold_hours)
        return self.repository.list_pending_subscriptions(created_before=cutoff)

    def sweep(self, threshold_hours: float, *, now: Optional[datetime] = None) -> int:
        cleaned = 0
        for subscription in self.find_stale(threshold_hours, now=now):
            if self._sweep_one(subscription):
                cleaned += 1
        logger.info(
            "Stale pending subscription sweep finished",
            extra={"threshold_hours": threshold_hours, "cleaned": cleaned},
        )
        return cleaned

    def _sweep_one(self, subscription: Subscription) -> bool:
        update: Dict[str, object]
        counted = True
        session_ref = subscription.checkout_session_ref
        if not session_ref:
            update = self._cancel(subscription, None)
        else:
            try:
                session = self.provider.retrieve_checkout_session(session_ref)
            except TransientProviderFailure:
                logger.warning(
                    "Provider unavailable while sweeping subscription",
                    extra={"subscription_id": subscription.subscription_id, "session_ref": session_ref},
                )
                return False
            except ProviderLookupFailed as exc:
                update = self._cancel(subscription, f"Session lookup failed: {exc}")
            except BillingSyncError as exc:
                logger.warning(
                    "Provider rejected session lookup while sweeping subscription",
                    extra={
                        "subscription_id": subscription.subscription_id,
                        "session_ref": session_ref,
                        "code": exc.code,
                    },
                )
                return False
            else:
                if session.status == SESSION_COMPLETE:
                    update = {"status": SubscriptionStatus.INCOMPLETE}
                    if session.subscription_ref:
                        update["provider_subscription_ref"] = session.subscription_ref
                    counted = False
                elif session.status == SESSION_EXPIRED:
                    update = self._cancel(subscription, "Checkout session expired")
                else:
                    update = self._cancel(subscription, None)

        with self.repository.transaction() as repo:
            current = repo.get_subscription(subscription.subscription_id, for_update=True)
            if current is None or current.status != SubscriptionStatus.PENDING:
                return False
            if current.provider_subscription_ref and "provider_subscription_ref" in update:
                update.pop("provider_subscription_ref")
            if current.canceled_at is not None and "canceled_at" in update:
                update["canceled_at"] = current.canceled_at
            update["updated_at"] = self._now()
            repo.save_subscription(current.model_copy(update=update))

        logger.info(
            "Swept pending subscription",
            extra={
                "subscription_id": subscription.subscription_id,
                "new_status": update["status"].value,
            },
        )
        return counted

    def _cancel(self, subscription: Subscription, error_message: Optional[str]) -> Dict[str, object]:
        update: Dict[str, object] = {
            "status": SubscriptionStatus.CANCELED,
            "canceled_at": subscription.canceled_at or self._now(),
            "auto_renew": False,
        }
        if error_message:
            update["last_error_message"] = error_message
        return update


__all__ = ["StaleStateSweeper"]
