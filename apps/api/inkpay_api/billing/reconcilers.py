"""State reconcilers: project webhook payloads onto orders, subscriptions, entitlements.

Each write is one INSERT ... ON CONFLICT statement, so replaying an event is
idempotent and concurrent processors never observe a half-written row.

Out-of-order deliveries: orders and subscriptions remember the received_at of
the last event applied (last_event_at). The conflict branch only runs when
the incoming event is not older than that, so a late redelivery of an old
event cannot roll a row back. Events without a time keep plain
last-write-wins.

None of these commit; the batch processor owns the transaction.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import case, func, or_
from sqlalchemy.orm import Session

from inkpay_api.billing.payload import (
    ensure_utc,
    get_amount,
    get_checkout_id,
    get_currency,
    get_current_period_end,
    get_novel_id,
    get_paid_at,
    get_subscription_id,
    get_user_id,
)
from inkpay_api.config.env import get_billing_provider
from inkpay_api.db.models import Entitlement, Order, Subscription
from inkpay_api.db.upsert import dialect_insert

logger = logging.getLogger(__name__)

WHOLE_BOOK_SCOPE = "whole book"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _not_older(last_event_at_col, event_time: Optional[datetime]):
    """ON CONFLICT ... WHERE guard; None means always apply."""
    if event_time is None:
        return None
    return or_(last_event_at_col.is_(None), last_event_at_col <= event_time)


class OrderReconciler:
    """Upserts the orders row keyed by provider_checkout_id."""

    def __init__(self, db: Session, provider: Optional[str] = None):
        self.db = db
        self.provider = provider or get_billing_provider()

    def apply(
        self,
        payload: Any,
        status: str,
        event_time: Optional[datetime] = None,
    ) -> bool:
        """Write status/amount/currency/paid_at/user_id for the payload's checkout.

        Returns:
            True if the row was inserted or updated; False when the payload has
            no checkout id or the stored row is newer than ``event_time``.
        """
        checkout_id = get_checkout_id(payload)
        if checkout_id is None:
            logger.info("BILLING_ORDER_NO_CHECKOUT_ID", extra={"status": status})
            return False

        event_time = ensure_utc(event_time) if event_time else None
        now = _utcnow()
        table = Order.__table__

        stmt = dialect_insert(self.db, table).values(
            provider=self.provider,
            provider_checkout_id=checkout_id,
            status=status,
            amount=get_amount(payload),
            currency=get_currency(payload),
            paid_at=get_paid_at(payload),
            user_id=get_user_id(payload),
            last_event_at=event_time,
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[table.c.provider_checkout_id],
            set_={
                "status": stmt.excluded.status,
                "amount": stmt.excluded.amount,
                "currency": stmt.excluded.currency,
                "paid_at": stmt.excluded.paid_at,
                "user_id": stmt.excluded.user_id,
                "last_event_at": func.coalesce(stmt.excluded.last_event_at, table.c.last_event_at),
                "updated_at": now,
            },
            where=_not_older(table.c.last_event_at, event_time),
        )
        result = self.db.execute(stmt)

        applied = result.rowcount == 1
        if not applied:
            logger.info(
                "BILLING_ORDER_STALE_EVENT_IGNORED",
                extra={"checkout_id": checkout_id, "status": status},
            )
        return applied


class SubscriptionReconciler:
    """Upserts the subscriptions row keyed by provider_subscription_id.

    The status is whatever label the dispatcher resolved; there is no
    internal state machine.
    """

    def __init__(self, db: Session, provider: Optional[str] = None):
        self.db = db
        self.provider = provider or get_billing_provider()

    def apply(
        self,
        payload: Any,
        status: str,
        cancel_at_period_end: bool = False,
        keep_latest_period_end: bool = False,
        event_time: Optional[datetime] = None,
    ) -> bool:
        """Write status/current_period_end/cancel_at_period_end/user_id.

        With ``keep_latest_period_end`` the stored current_period_end only
        moves forward (a renewal reported late cannot shorten the period).
        """
        subscription_id = get_subscription_id(payload)
        if subscription_id is None:
            logger.info("BILLING_SUBSCRIPTION_NO_ID", extra={"status": status})
            return False

        event_time = ensure_utc(event_time) if event_time else None
        now = _utcnow()
        table = Subscription.__table__

        stmt = dialect_insert(self.db, table).values(
            provider=self.provider,
            provider_subscription_id=subscription_id,
            status=status,
            current_period_end=get_current_period_end(payload),
            cancel_at_period_end=cancel_at_period_end,
            user_id=get_user_id(payload),
            last_event_at=event_time,
            created_at=now,
            updated_at=now,
        )

        period_end = stmt.excluded.current_period_end
        if keep_latest_period_end:
            stored = table.c.current_period_end
            period_end = case(
                (or_(stored.is_(None), stmt.excluded.current_period_end > stored), stmt.excluded.current_period_end),
                else_=stored,
            )

        stmt = stmt.on_conflict_do_update(
            index_elements=[table.c.provider_subscription_id],
            set_={
                "status": stmt.excluded.status,
                "current_period_end": period_end,
                "cancel_at_period_end": stmt.excluded.cancel_at_period_end,
                "user_id": stmt.excluded.user_id,
                "last_event_at": func.coalesce(stmt.excluded.last_event_at, table.c.last_event_at),
                "updated_at": now,
            },
            where=_not_older(table.c.last_event_at, event_time),
        )
        result = self.db.execute(stmt)

        applied = result.rowcount == 1
        if not applied:
            logger.info(
                "BILLING_SUBSCRIPTION_STALE_EVENT_IGNORED",
                extra={"subscription_id": subscription_id, "status": status},
            )
        return applied


class EntitlementReconciler:
    """Grants whole-book access from checkout metadata. Insert-if-absent only."""

    def __init__(self, db: Session):
        self.db = db

    def grant(self, payload: Any, source_event_id: Optional[str] = None) -> bool:
        """Grant (user_id, novel_id, "whole book") unless it already exists.

        Returns:
            True if a new entitlement row was created.
        """
        user_id = get_user_id(payload)
        novel_id = get_novel_id(payload)
        if user_id is None or novel_id is None:
            logger.info(
                "BILLING_ENTITLEMENT_MISSING_METADATA",
                extra={"has_user_id": user_id is not None, "has_novel_id": novel_id is not None},
            )
            return False

        table = Entitlement.__table__
        stmt = (
            dialect_insert(self.db, table)
            .values(
                user_id=user_id,
                novel_id=novel_id,
                scope=WHOLE_BOOK_SCOPE,
                granted_at=_utcnow(),
                source_event_id=source_event_id,
            )
            .on_conflict_do_nothing(
                index_elements=[table.c.user_id, table.c.novel_id, table.c.scope]
            )
        )
        result = self.db.execute(stmt)

        created = result.rowcount == 1
        logger.info(
            "BILLING_ENTITLEMENT_GRANTED" if created else "BILLING_ENTITLEMENT_EXISTS",
            extra={"novel_id": novel_id, "scope": WHOLE_BOOK_SCOPE},
        )
        return created
