"""SQLAlchemy ORM Models for the billing pipeline.

webhook_events is the append-only source of truth; orders, subscriptions and
entitlements are projections rebuilt from it and written only by the
reconcilers in inkpay_api.billing.
"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    BIGINT,
    BOOLEAN,
    INTEGER,
    JSON,
    NUMERIC,
    TEXT,
    TIMESTAMP,
    Index,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# SQLite only autoincrements INTEGER PRIMARY KEY
BigIntPK = BIGINT().with_variant(INTEGER(), "sqlite")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


class ProcessStatus:
    """WebhookEvent.process_status values."""

    PENDING = "pending"
    PROCESSING = "processing"
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"
    DEAD_LETTER = "dead_letter"

    # Never claimed again, never overwritten
    TERMINAL = (SUCCESS, SKIPPED, DEAD_LETTER)
    # Eligible for a claim (processing only once its lease expired)
    RETRYABLE = (PENDING, FAILED)


class WebhookEvent(Base):
    """WebhookEvent model - one row per provider notification.

    (provider, event_id) is the provider-assigned dedup key. Rows are never
    deleted; only the processing columns change after insert.
    """

    __tablename__ = "webhook_events"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)

    provider: Mapped[str] = mapped_column(TEXT, nullable=False, default="creem")
    event_id: Mapped[str] = mapped_column(TEXT, nullable=False)
    type: Mapped[str] = mapped_column(TEXT, nullable=False)  # checkout.completed, etc.
    payload: Mapped[dict] = mapped_column(JSON, nullable=False)

    received_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        default=utcnow,
    )

    # Processing lifecycle
    process_status: Mapped[str] = mapped_column(
        TEXT, nullable=False, default=ProcessStatus.PENDING
    )  # pending | processing | success | failed | skipped | dead_letter
    processed_at: Mapped[Optional[datetime]] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )
    error: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    attempts: Mapped[int] = mapped_column(INTEGER, nullable=False, default=0)

    # Claim lease (exclusive while lease_expires_at is in the future)
    claim_token: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    lease_expires_at: Mapped[Optional[datetime]] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )

    __table_args__ = (
        UniqueConstraint("provider", "event_id", name="uq_webhook_events_provider_event"),
        Index("idx_webhook_events_status_received", "process_status", "received_at"),
        Index("idx_webhook_events_lease", "process_status", "lease_expires_at"),
    )


class Order(Base):
    """Order model - reconciled view of a one-time purchase."""

    __tablename__ = "orders"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)

    provider: Mapped[str] = mapped_column(TEXT, nullable=False, default="creem")
    provider_checkout_id: Mapped[str] = mapped_column(TEXT, nullable=False)

    status: Mapped[str] = mapped_column(TEXT, nullable=False)  # completed | refunded | disputed
    amount: Mapped[Optional[Decimal]] = mapped_column(NUMERIC(18, 4), nullable=True)
    currency: Mapped[str] = mapped_column(TEXT, nullable=False, default="USD")
    paid_at: Mapped[Optional[datetime]] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )
    user_id: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)

    # received_at of the last event applied to this row
    last_event_at: Mapped[Optional[datetime]] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        default=utcnow,
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    __table_args__ = (
        UniqueConstraint("provider_checkout_id", name="uq_orders_provider_checkout"),
        Index("idx_orders_user", "user_id"),
    )


class Subscription(Base):
    """Subscription model - provider's latest reported state of a recurring plan."""

    __tablename__ = "subscriptions"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)

    provider: Mapped[str] = mapped_column(TEXT, nullable=False, default="creem")
    provider_subscription_id: Mapped[str] = mapped_column(TEXT, nullable=False)

    status: Mapped[str] = mapped_column(TEXT, nullable=False)
    # active | trialing | canceled | expired | past_due | paused
    current_period_end: Mapped[Optional[datetime]] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )
    cancel_at_period_end: Mapped[bool] = mapped_column(BOOLEAN, nullable=False, default=False)
    user_id: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)

    last_event_at: Mapped[Optional[datetime]] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        default=utcnow,
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    __table_args__ = (
        UniqueConstraint("provider_subscription_id", name="uq_subscriptions_provider_subscription"),
        Index("idx_subscriptions_user", "user_id"),
    )


class Entitlement(Base):
    """Entitlement model - a user's access grant to a novel.

    Insert-if-absent only: a grant is never updated or removed here.
    """

    __tablename__ = "entitlements"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(TEXT, nullable=False)
    novel_id: Mapped[str] = mapped_column(TEXT, nullable=False)
    scope: Mapped[str] = mapped_column(TEXT, nullable=False)  # "whole book"

    granted_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        default=utcnow,
    )
    # Audit only, no FK to webhook_events
    source_event_id: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)

    __table_args__ = (
        UniqueConstraint("user_id", "novel_id", "scope", name="uq_entitlements_user_novel_scope"),
        Index("idx_entitlements_user", "user_id"),
    )
