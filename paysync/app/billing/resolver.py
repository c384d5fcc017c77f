"""Locate local aggregates from the correlation keys carried by an event."""
from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Callable, List, Optional, Tuple, TypeVar, Union

from .events import CorrelationKeys
from .exceptions import DataInconsistency
from .models import BillingUser, Payment, ProcessorDomain, Subscription

if TYPE_CHECKING:  # pragma: no cover
    from .service import BillingRepository, UserDirectory

logger = logging.getLogger(__name__)

Aggregate = Union[Payment, Subscription]
_T = TypeVar("_T", Payment, Subscription)


class EntityResolver:
    """Resolves payments, subscriptions and owners without ever guessing.

    Keys are tried from most to least specific. When two keys point at two
    different aggregates the event is inconsistent with local state and a
    :class:`DataInconsistency` is raised instead of picking one of them.
    """

    def __init__(self, user_directory: "UserDirectory") -> None:
        self.user_directory = user_directory

    def resolve(
        self,
        repository: "BillingRepository",
        domain: ProcessorDomain,
        keys: CorrelationKeys,
        *,
        for_update: bool = True,
    ) -> Optional[Aggregate]:
        if domain == ProcessorDomain.SUBSCRIPTION:
            return self.resolve_subscription(repository, keys, for_update=for_update)
        return self.resolve_payment(repository, keys, for_update=for_update)

    def resolve_payment(
        self,
        repository: "BillingRepository",
        keys: CorrelationKeys,
        *,
        for_update: bool = True,
        session_first: bool = False,
    ) -> Optional[Payment]:
        lookups: List[Tuple[str, Optional[str], Callable[..., Optional[Payment]]]] = [
            ("payment_intent_ref", keys.payment_intent_ref, repository.find_payment_by_payment_intent),
            ("checkout_session_ref", keys.checkout_session_ref, repository.find_payment_by_checkout_session),
        ]
        if session_first:
            lookups.reverse()
        return self._first_match(lookups, for_update=for_update, identity=lambda p: p.payment_id)

    def resolve_subscription(
        self,
        repository: "BillingRepository",
        keys: CorrelationKeys,
        *,
        for_update: bool = True,
    ) -> Optional[Subscription]:
        lookups: List[Tuple[str, Optional[str], Callable[..., Optional[Subscription]]]] = [
            ("subscription_ref", keys.subscription_ref, repository.find_subscription_by_provider_ref),
            ("checkout_session_ref", keys.checkout_session_ref, repository.find_subscription_by_checkout_session),
        ]
        return self._first_match(lookups, for_update=for_update, identity=lambda s: s.subscription_id)

    def resolve_owner(self, customer_ref: Optional[str]) -> Optional[BillingUser]:
        if not customer_ref:
            return None
        return self.user_directory.find_user_by_customer_ref(customer_ref)

    def _first_match(
        self,
        lookups: List[Tuple[str, Optional[str], Callable[..., Optional[_T]]]],
        *,
        for_update: bool,
        identity: Callable[[_T], str],
    ) -> Optional[_T]:
        found: Optional[_T] = None
        found_by: Optional[str] = None
        for key_name, value, finder in lookups:
            if not value:
                continue
            candidate = finder(value, for_update=for_update)
            if candidate is None:
                continue
            if found is None:
                found, found_by = candidate, key_name
                continue
            if identity(candidate) != identity(found):
                raise DataInconsistency(
                    f"{found_by} and {key_name} resolve to different records",
                    detail={
                        found_by or "first": identity(found),
                        key_name: identity(candidate),
                    },
                )
        if found is not None:
            logger.debug("Resolved aggregate", extra={"aggregate_id": identity(found), "resolved_by": found_by})
        return found


__all__ = ["Aggregate", "EntityResolver"]
