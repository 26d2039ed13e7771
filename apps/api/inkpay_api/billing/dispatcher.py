"""Event dispatcher: provider event type → reconciler calls.

Kinds are a closed enum; anything the provider sends that is not listed
parses to EventKind.UNKNOWN and is skipped, never failed. ROUTES must cover
every known kind (checked at import).
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Optional, Protocol

from sqlalchemy.orm import Session

from inkpay_api.billing.reconcilers import (
    EntitlementReconciler,
    OrderReconciler,
    SubscriptionReconciler,
)

logger = logging.getLogger(__name__)

_SEPARATORS = re.compile(r"[\s._-]+")


def _normalize(value: str) -> str:
    return ".".join(part for part in _SEPARATORS.split(value.strip().lower()) if part)


class EventKind(str, Enum):
    """Provider event types understood by the pipeline."""

    CHECKOUT_COMPLETED = "checkout.completed"
    SUBSCRIPTION_ACTIVE = "subscription.active"
    SUBSCRIPTION_PAID = "subscription.paid"
    SUBSCRIPTION_UPDATE = "subscription.update"
    SUBSCRIPTION_TRIALING = "subscription.trialing"
    SUBSCRIPTION_SCHEDULED_CANCEL = "subscription.scheduled_cancel"
    SUBSCRIPTION_CANCELED = "subscription.canceled"
    SUBSCRIPTION_EXPIRED = "subscription.expired"
    SUBSCRIPTION_PAUSED = "subscription.paused"
    SUBSCRIPTION_UNPAID = "subscription.unpaid"
    SUBSCRIPTION_PAST_DUE = "subscription.past_due"
    REFUND_CREATED = "refund.created"
    DISPUTE_CREATED = "dispute.created"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: Any) -> "EventKind":
        """Map a raw type string to a kind, ignoring case and separator style.

        "checkout.completed", "checkout completed" and "CHECKOUT_COMPLETED"
        all parse to CHECKOUT_COMPLETED.
        """
        if not isinstance(value, str):
            return cls.UNKNOWN
        return _BY_NORMALIZED.get(_normalize(value), cls.UNKNOWN)


_BY_NORMALIZED = {
    _normalize(kind.value): kind for kind in EventKind if kind is not EventKind.UNKNOWN
}


class Outcome(str, Enum):
    SUCCESS = "success"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class Route:
    """Reconciler actions for one event kind."""

    order_status: Optional[str] = None
    subscription_status: Optional[str] = None
    cancel_at_period_end: bool = False
    keep_latest_period_end: bool = False
    grant_entitlement: bool = False


ROUTES: dict[EventKind, Route] = {
    EventKind.CHECKOUT_COMPLETED: Route(order_status="completed", grant_entitlement=True),
    EventKind.SUBSCRIPTION_ACTIVE: Route(subscription_status="active", keep_latest_period_end=True),
    EventKind.SUBSCRIPTION_PAID: Route(subscription_status="active", keep_latest_period_end=True),
    EventKind.SUBSCRIPTION_UPDATE: Route(subscription_status="active", keep_latest_period_end=True),
    EventKind.SUBSCRIPTION_TRIALING: Route(subscription_status="trialing", keep_latest_period_end=True),
    EventKind.SUBSCRIPTION_SCHEDULED_CANCEL: Route(
        subscription_status="active", cancel_at_period_end=True
    ),
    EventKind.SUBSCRIPTION_CANCELED: Route(subscription_status="canceled"),
    EventKind.SUBSCRIPTION_EXPIRED: Route(subscription_status="expired"),
    EventKind.SUBSCRIPTION_PAUSED: Route(subscription_status="paused"),
    EventKind.SUBSCRIPTION_UNPAID: Route(subscription_status="past_due"),
    EventKind.SUBSCRIPTION_PAST_DUE: Route(subscription_status="past_due"),
    # Entitlements are left in place on refund/dispute; revocation is manual
    EventKind.REFUND_CREATED: Route(order_status="refunded"),
    EventKind.DISPUTE_CREATED: Route(order_status="disputed"),
}

_unrouted = [kind.value for kind in EventKind if kind is not EventKind.UNKNOWN and kind not in ROUTES]
if _unrouted:
    raise RuntimeError(f"Event kinds without a route: {', '.join(_unrouted)}")


class DispatchableEvent(Protocol):
    event_id: str
    type: str
    payload: Any
    received_at: datetime


class EventDispatcher:
    """Applies the route for an event's kind. Reconciler errors propagate."""

    def __init__(
        self,
        orders: OrderReconciler,
        subscriptions: SubscriptionReconciler,
        entitlements: EntitlementReconciler,
    ):
        self.orders = orders
        self.subscriptions = subscriptions
        self.entitlements = entitlements

    @classmethod
    def for_session(cls, db: Session, provider: Optional[str] = None) -> "EventDispatcher":
        return cls(
            OrderReconciler(db, provider),
            SubscriptionReconciler(db, provider),
            EntitlementReconciler(db),
        )

    def dispatch(self, event: DispatchableEvent) -> Outcome:
        kind = EventKind.parse(event.type)
        route = ROUTES.get(kind)
        if route is None:
            logger.info("BILLING_EVENT_TYPE_UNKNOWN", extra={"event_type": str(event.type)[:64]})
            return Outcome.SKIPPED

        payload = event.payload
        if route.order_status is not None:
            self.orders.apply(payload, route.order_status, event_time=event.received_at)
        if route.subscription_status is not None:
            self.subscriptions.apply(
                payload,
                route.subscription_status,
                cancel_at_period_end=route.cancel_at_period_end,
                keep_latest_period_end=route.keep_latest_period_end,
                event_time=event.received_at,
            )
        if route.grant_entitlement:
            self.entitlements.grant(payload, source_event_id=event.event_id)

        logger.debug("BILLING_EVENT_DISPATCHED", extra={"kind": kind.value})
        return Outcome.SUCCESS
