"""Webhook event store: append, claim and outcome write-back.

Claims use a DB compare-and-set so exactly one processor owns an event:

  (A) select_claimable: ids in FIFO order (received_at ASC) WHERE
        provider=:p AND attempts < :max_attempts AND
        (process_status IN ('pending','failed')
         OR (process_status='processing' AND lease_expires_at < :now))
  (B) try_claim, per id:
        UPDATE ... SET process_status='processing', claim_token=:token,
                       lease_expires_at=:now + lease, attempts=attempts+1
        WHERE id=:id AND <claimable condition>
      rowcount 1 → winner; 0 → another processor got there first.

Terminal statuses (success, skipped, dead_letter) are never claimed and never
overwritten. mark_outcome() with a claim_token only lands while the row still
carries that token, so a processor whose lease was taken over cannot clobber
the new owner's result.

Before reconciling, the processor renews its lease with renew_lease(); a
row re-claimed in the meantime no longer carries the token and is skipped.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from sqlalchemy import and_, or_, select, update
from sqlalchemy.orm import Session

from inkpay_api.billing.payload import ensure_utc
from inkpay_api.config.env import get_billing_provider, get_claim_lease_seconds, get_max_attempts
from inkpay_api.db.models import ProcessStatus, WebhookEvent
from inkpay_api.db.upsert import dialect_insert

logger = logging.getLogger(__name__)

# Statuses mark_outcome() may write
_OUTCOME_STATUSES = frozenset({
    ProcessStatus.SUCCESS,
    ProcessStatus.SKIPPED,
    ProcessStatus.FAILED,
    ProcessStatus.DEAD_LETTER,
})


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _resolve_now(now: Optional[datetime]) -> datetime:
    return ensure_utc(now) if now is not None else _utcnow()


def new_claim_token() -> str:
    return str(uuid.uuid4())


@dataclass(frozen=True)
class ClaimedEvent:
    """Snapshot of a webhook_events row taken at claim time."""

    id: int
    event_id: str
    type: str
    payload: Any
    received_at: datetime
    attempts: int
    claim_token: str


class EventStore:
    """Access layer for the webhook_events table.

    Every write except renew_lease() commits on the injected session;
    callers never see a half-applied claim or outcome.
    """

    def __init__(
        self,
        db: Session,
        provider: Optional[str] = None,
        max_attempts: Optional[int] = None,
        lease_seconds: Optional[int] = None,
    ):
        self.db = db
        self.provider = provider or get_billing_provider()
        self.max_attempts = max_attempts if max_attempts is not None else get_max_attempts()
        self.lease_seconds = lease_seconds if lease_seconds is not None else get_claim_lease_seconds()

    def append(
        self,
        event_id: str,
        event_type: str,
        payload: Any,
        received_at: Optional[datetime] = None,
    ) -> bool:
        """Record a provider notification as pending (insert-or-ignore).

        Returns:
            True if a new row was created, False for a duplicate delivery.
        """
        stmt = (
            dialect_insert(self.db, WebhookEvent.__table__)
            .values(
                provider=self.provider,
                event_id=event_id,
                type=event_type,
                payload=payload,
                received_at=ensure_utc(received_at) if received_at else _utcnow(),
                process_status=ProcessStatus.PENDING,
                attempts=0,
            )
            .on_conflict_do_nothing(index_elements=["provider", "event_id"])
        )
        result = self.db.execute(stmt)
        self.db.commit()
        return result.rowcount == 1

    def fetch_outstanding(self, limit: int) -> list[WebhookEvent]:
        """Pending/failed events under the attempt cap, oldest first.

        Read-only; grants no exclusivity. Use claim_outstanding() to process.
        """
        stmt = (
            select(WebhookEvent)
            .where(
                WebhookEvent.provider == self.provider,
                WebhookEvent.process_status.in_(ProcessStatus.RETRYABLE),
                WebhookEvent.attempts < self.max_attempts,
            )
            .order_by(WebhookEvent.received_at.asc(), WebhookEvent.id.asc())
            .limit(limit)
        )
        return list(self.db.scalars(stmt).all())

    def _claimable(self, now: datetime):
        return and_(
            WebhookEvent.provider == self.provider,
            WebhookEvent.attempts < self.max_attempts,
            or_(
                WebhookEvent.process_status.in_(ProcessStatus.RETRYABLE),
                and_(
                    WebhookEvent.process_status == ProcessStatus.PROCESSING,
                    WebhookEvent.lease_expires_at < now,
                ),
            ),
        )

    def select_claimable(self, limit: int, now: Optional[datetime] = None) -> list[int]:
        """Ids of events a processor may claim, FIFO by received_at."""
        now = _resolve_now(now)
        stmt = (
            select(WebhookEvent.id)
            .where(self._claimable(now))
            .order_by(WebhookEvent.received_at.asc(), WebhookEvent.id.asc())
            .limit(limit)
        )
        return list(self.db.scalars(stmt).all())

    def try_claim(
        self,
        row_id: int,
        claim_token: str,
        now: Optional[datetime] = None,
    ) -> Optional[ClaimedEvent]:
        """Atomically move one event to processing under ``claim_token``.

        Returns:
            The claimed event, or None if another processor won the race or
            the event is no longer claimable.
        """
        now = _resolve_now(now)
        stmt = (
            update(WebhookEvent)
            .where(WebhookEvent.id == row_id, self._claimable(now))
            .values(
                process_status=ProcessStatus.PROCESSING,
                claim_token=claim_token,
                lease_expires_at=now + timedelta(seconds=self.lease_seconds),
                attempts=WebhookEvent.attempts + 1,
            )
            .execution_options(synchronize_session=False)
        )
        result = self.db.execute(stmt)
        if result.rowcount != 1:
            self.db.commit()
            logger.debug("BILLING_CLAIM_LOST", extra={"row_id": row_id})
            return None

        row = self.db.execute(
            select(
                WebhookEvent.id,
                WebhookEvent.event_id,
                WebhookEvent.type,
                WebhookEvent.payload,
                WebhookEvent.received_at,
                WebhookEvent.attempts,
            ).where(WebhookEvent.id == row_id)
        ).one()
        self.db.commit()

        return ClaimedEvent(
            id=row.id,
            event_id=row.event_id,
            type=row.type,
            payload=row.payload,
            received_at=ensure_utc(row.received_at),
            attempts=row.attempts,
            claim_token=claim_token,
        )

    def renew_lease(self, row_id: int, claim_token: str, now: Optional[datetime] = None) -> bool:
        """Extend the lease of an event still owned by ``claim_token``.

        Runs in the caller's transaction and does not commit: on PostgreSQL
        the updated row stays locked until the reconcile commits, so no other
        processor can take the event over mid-reconcile.

        Returns:
            False if the event was re-claimed by another processor or is no
            longer processing.
        """
        now = _resolve_now(now)
        stmt = (
            update(WebhookEvent)
            .where(
                WebhookEvent.id == row_id,
                WebhookEvent.claim_token == claim_token,
                WebhookEvent.process_status == ProcessStatus.PROCESSING,
            )
            .values(lease_expires_at=now + timedelta(seconds=self.lease_seconds))
            .execution_options(synchronize_session=False)
        )
        return self.db.execute(stmt).rowcount == 1

    def claim_outstanding(
        self,
        limit: int,
        claim_token: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> list[ClaimedEvent]:
        """Claim up to ``limit`` events; ids lost to a concurrent processor are dropped."""
        now = _resolve_now(now)
        claim_token = claim_token or new_claim_token()

        candidates = self.select_claimable(limit, now)
        claimed = []
        for row_id in candidates:
            event = self.try_claim(row_id, claim_token, now)
            if event is not None:
                claimed.append(event)

        if candidates:
            logger.info(
                "BILLING_EVENTS_CLAIMED",
                extra={"candidates": len(candidates), "claimed": len(claimed)},
            )
        return claimed

    def failure_status(self, attempts: int) -> str:
        """Status for a failed attempt: dead_letter once the attempt cap is reached."""
        if attempts >= self.max_attempts:
            return ProcessStatus.DEAD_LETTER
        return ProcessStatus.FAILED

    def mark_outcome(
        self,
        event_id: str,
        outcome: str,
        error: Optional[str] = None,
        claim_token: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        """Write the processing result of an event.

        Rows already in a terminal status are left untouched. With
        ``claim_token``, only a row still owned by that token is written.

        Returns:
            True if the row was updated.

        Raises:
            ValueError: If ``outcome`` is not success/skipped/failed/dead_letter.
        """
        if outcome not in _OUTCOME_STATUSES:
            raise ValueError(f"Invalid outcome status: {outcome!r}")

        conditions = [
            WebhookEvent.provider == self.provider,
            WebhookEvent.event_id == event_id,
            WebhookEvent.process_status.not_in(ProcessStatus.TERMINAL),
        ]
        if claim_token is not None:
            conditions.append(WebhookEvent.claim_token == claim_token)

        stmt = (
            update(WebhookEvent)
            .where(*conditions)
            .values(
                process_status=outcome,
                processed_at=_resolve_now(now),
                error=error,
                lease_expires_at=None,
            )
            .execution_options(synchronize_session=False)
        )
        result = self.db.execute(stmt)
        self.db.commit()

        applied = result.rowcount == 1
        if not applied:
            logger.warning(
                "BILLING_OUTCOME_NOT_APPLIED",
                extra={"outcome": outcome, "claim_token_given": claim_token is not None},
            )
        return applied

    def dead_letter_expired_claims(self, now: Optional[datetime] = None) -> int:
        """Dead-letter abandoned claims that have no attempts left.

        Returns:
            Number of rows moved to dead_letter.
        """
        now = _resolve_now(now)
        stmt = (
            update(WebhookEvent)
            .where(
                WebhookEvent.provider == self.provider,
                WebhookEvent.process_status == ProcessStatus.PROCESSING,
                WebhookEvent.lease_expires_at < now,
                WebhookEvent.attempts >= self.max_attempts,
            )
            .values(
                process_status=ProcessStatus.DEAD_LETTER,
                processed_at=now,
                error="Claim lease expired with no attempts left",
                lease_expires_at=None,
            )
            .execution_options(synchronize_session=False)
        )
        result = self.db.execute(stmt)
        self.db.commit()

        count = result.rowcount or 0
        if count:
            logger.warning("BILLING_EXPIRED_CLAIMS_DEAD_LETTERED", extra={"count": count})
        return count

    def list_dead_letters(self, limit: int = 50) -> list[WebhookEvent]:
        """Most recent dead-lettered events for operator inspection."""
        stmt = (
            select(WebhookEvent)
            .where(
                WebhookEvent.provider == self.provider,
                WebhookEvent.process_status == ProcessStatus.DEAD_LETTER,
            )
            .order_by(WebhookEvent.processed_at.desc(), WebhookEvent.id.desc())
            .limit(limit)
        )
        return list(self.db.scalars(stmt).all())
