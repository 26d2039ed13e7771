"""Batch processor: claim outstanding webhook events and reconcile them.

One run:
  1. dead-letter abandoned claims with no attempts left
  2. claim up to ``limit`` events under a fresh claim token (errors propagate)
  3. per event, in FIFO order: renew the lease (skip the event if another
     processor took it over), dispatch inside its own transaction bounded by
     a statement timeout, commit, record success/skipped; on any error roll
     back, record failed (dead_letter once attempts are exhausted) and move on

Only step 2 can fail the run. A failed outcome write is logged and counted
as failed; the row stays 'processing'.

A crash mid-run leaves claimed rows in 'processing'; they become claimable
again once their lease expires.
"""

from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass
from typing import Optional

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from inkpay_api.billing.dispatcher import EventDispatcher, Outcome
from inkpay_api.billing.event_store import ClaimedEvent, EventStore, new_claim_token
from inkpay_api.config.env import (
    get_billing_provider,
    get_claim_lease_seconds,
    get_max_attempts,
    get_reconcile_timeout_ms,
)
from inkpay_api.context import claim_token_var, event_id_var
from inkpay_api.db.models import ProcessStatus
from inkpay_api.db.upsert import dialect_name
from inkpay_api.utils.sanitize import error_message

logger = logging.getLogger(__name__)


@dataclass
class BatchSummary:
    """Counts for one run.

    processed: events handled without error (success + skipped)
    failed: events whose reconcile raised (dead-lettered ones included)
    dead_lettered: events moved to dead_letter during this run
    """

    processed: int = 0
    skipped: int = 0
    failed: int = 0
    dead_lettered: int = 0

    def as_dict(self) -> dict[str, int]:
        return asdict(self)


class BatchProcessor:
    def __init__(
        self,
        db: Session,
        store: EventStore,
        dispatcher: EventDispatcher,
        reconcile_timeout_ms: int = 5000,
    ):
        self.db = db
        self.store = store
        self.dispatcher = dispatcher
        self.reconcile_timeout_ms = reconcile_timeout_ms

    def run(self, limit: int) -> BatchSummary:
        """Process up to ``limit`` outstanding events.

        Raises:
            SQLAlchemyError: If claiming fails; no event is touched in that case.
        """
        summary = BatchSummary()
        summary.dead_lettered += self.store.dead_letter_expired_claims()

        claim_token = new_claim_token()
        ctx_token = claim_token_var.set(claim_token)
        try:
            events = self.store.claim_outstanding(limit, claim_token)
            for event in events:
                self._process_event(event, summary)
        finally:
            claim_token_var.reset(ctx_token)

        logger.info(
            "BILLING_BATCH_COMPLETED",
            extra={"limit": limit, "claimed": len(events), **summary.as_dict()},
        )
        return summary

    def _process_event(self, event: ClaimedEvent, summary: BatchSummary) -> None:
        ctx_token = event_id_var.set(event.event_id)
        started = time.monotonic()
        try:
            try:
                self._apply_statement_timeout()
                if not self.store.renew_lease(event.id, event.claim_token):
                    self.db.rollback()
                    logger.warning("BILLING_CLAIM_SUPERSEDED", extra={"stage": "before_dispatch"})
                    return
                outcome = self.dispatcher.dispatch(event)
                self.db.commit()
            except Exception as exc:
                self.db.rollback()
                status = self.store.failure_status(event.attempts)
                logger.error(
                    "BILLING_EVENT_FAILED",
                    exc_info=True,
                    extra={
                        "event_type": event.type,
                        "attempts": event.attempts,
                        "next_status": status,
                    },
                )
                written = self._record(event, status, error=error_message(exc))
                summary.failed += 1
                if written and status == ProcessStatus.DEAD_LETTER:
                    summary.dead_lettered += 1
                return

            elapsed_ms = int((time.monotonic() - started) * 1000)
            if elapsed_ms > self.reconcile_timeout_ms:
                logger.warning(
                    "BILLING_EVENT_SLOW",
                    extra={"elapsed_ms": elapsed_ms, "timeout_ms": self.reconcile_timeout_ms},
                )

            if not self._record(event, outcome.value):
                # Reconcile committed but the row stays processing; the
                # idempotent reconcile is re-applied once the lease expires
                summary.failed += 1
                return
            summary.processed += 1
            if outcome is Outcome.SKIPPED:
                summary.skipped += 1
        finally:
            event_id_var.reset(ctx_token)

    def _apply_statement_timeout(self) -> None:
        """Bound every statement of the current transaction (PostgreSQL only)."""
        if dialect_name(self.db) == "postgresql":
            self.db.execute(text(f"SET LOCAL statement_timeout = {int(self.reconcile_timeout_ms)}"))

    def _record(self, event: ClaimedEvent, status: str, error: Optional[str] = None) -> bool:
        """Write the event's outcome.

        Returns:
            False if the write itself failed; the batch carries on regardless.
        """
        try:
            applied = self.store.mark_outcome(
                event.event_id, status, error=error, claim_token=event.claim_token
            )
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.error(
                "BILLING_OUTCOME_WRITE_FAILED",
                exc_info=True,
                extra={"status": status, "error_type": type(exc).__name__},
            )
            return False

        if not applied:
            # Lease expired and another processor re-claimed the event
            logger.warning("BILLING_CLAIM_SUPERSEDED", extra={"stage": "outcome", "status": status})
        return True


def build_processor(db: Session, provider: Optional[str] = None) -> BatchProcessor:
    """BatchProcessor wired from environment configuration."""
    provider = provider or get_billing_provider()
    store = EventStore(
        db,
        provider=provider,
        max_attempts=get_max_attempts(),
        lease_seconds=get_claim_lease_seconds(),
    )
    return BatchProcessor(
        db,
        store,
        EventDispatcher.for_session(db, provider),
        reconcile_timeout_ms=get_reconcile_timeout_ms(),
    )
