"""Batch processor scenarios: end-to-end checkout, skips, retries, dead letters."""

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import patch

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from inkpay_api.billing.dispatcher import EventDispatcher
from inkpay_api.billing.payload import ensure_utc
from inkpay_api.billing.processor import BatchProcessor, BatchSummary, build_processor
from inkpay_api.db.models import Entitlement, Order, ProcessStatus, Subscription, WebhookEvent


def _event(db, event_id: str) -> WebhookEvent:
    db.expire_all()
    return db.scalars(select(WebhookEvent).where(WebhookEvent.event_id == event_id)).one()


def _count(db, model) -> int:
    return db.scalar(select(func.count()).select_from(model))


class FlakyDispatcher:
    """Raises for the first ``failures`` dispatches, then delegates."""

    def __init__(self, inner: EventDispatcher, failures: int):
        self.inner = inner
        self.failures = failures
        self.calls = 0

    def dispatch(self, event):
        self.calls += 1
        if self.calls <= self.failures:
            raise RuntimeError("reconcile exploded for Bearer sk_live_abc")
        return self.inner.dispatch(event)


@pytest.fixture
def flaky_processor(db_session, store):
    def _make(failures: int) -> BatchProcessor:
        dispatcher = FlakyDispatcher(EventDispatcher.for_session(db_session, "creem"), failures)
        return BatchProcessor(db_session, store, dispatcher, reconcile_timeout_ms=5000)

    return _make


def test_end_to_end_checkout(processor, store, db_session):
    store.append(
        "evt_checkout",
        "checkout completed",
        {
            "data": {
                "object": {
                    "id": "co_1",
                    "order": {"amount": 999, "currency": "usd", "paid_at": "2024-01-01T00:00:00Z"},
                },
                "metadata": {"userId": "u1", "novelId": "n1"},
            }
        },
    )

    summary = processor.run(limit=25)

    assert summary == BatchSummary(processed=1, skipped=0, failed=0, dead_lettered=0)

    db_session.expire_all()
    order = db_session.scalars(select(Order)).one()
    assert order.provider_checkout_id == "co_1"
    assert order.status == "completed"
    assert order.amount == Decimal("999")
    assert order.currency == "USD"
    assert ensure_utc(order.paid_at) == datetime(2024, 1, 1, tzinfo=timezone.utc)
    assert order.user_id == "u1"

    ent = db_session.scalars(select(Entitlement)).one()
    assert (ent.user_id, ent.novel_id, ent.scope) == ("u1", "n1", "whole book")
    assert ent.source_event_id == "evt_checkout"

    event = _event(db_session, "evt_checkout")
    assert event.process_status == ProcessStatus.SUCCESS
    assert event.processed_at is not None
    assert event.attempts == 1


def test_unknown_type_is_skipped(processor, store, db_session):
    store.append("evt_x", "customer.updated", {"data": {"object": {"id": "cus_1"}}})

    summary = processor.run(limit=25)

    # processed counts every event handled without error, skips included
    assert summary == BatchSummary(processed=1, skipped=1, failed=0, dead_lettered=0)
    assert _event(db_session, "evt_x").process_status == ProcessStatus.SKIPPED
    assert _count(db_session, Order) == 0
    assert _count(db_session, Subscription) == 0


def test_uncorrelatable_payload_is_success_noop(processor, store, db_session):
    store.append("evt_bare", "checkout.completed", {"data": {"object": {}}})

    summary = processor.run(limit=25)

    assert summary.processed == 1
    assert _event(db_session, "evt_bare").process_status == ProcessStatus.SUCCESS
    assert _count(db_session, Order) == 0
    assert _count(db_session, Entitlement) == 0


def test_empty_queue(processor):
    assert processor.run(limit=25) == BatchSummary()


def test_fifo_and_limit(processor, store, db_session, at):
    for i in range(5):
        store.append(f"evt_{i}", "customer.updated", {}, received_at=at(10 - i))

    summary = processor.run(limit=2)

    assert summary.processed == 2
    done = {e.event_id for e in db_session.scalars(select(WebhookEvent)) if e.process_status == "skipped"}
    assert done == {"evt_4", "evt_3"}


def test_failure_is_recorded_and_batch_continues(flaky_processor, store, db_session, at):
    store.append("evt_a", "checkout.completed", {"data": {"object": {"id": "co_a"}}}, received_at=at(0))
    store.append("evt_b", "checkout.completed", {"data": {"object": {"id": "co_b"}}}, received_at=at(1))

    summary = flaky_processor(failures=1).run(limit=25)

    assert summary == BatchSummary(processed=1, skipped=0, failed=1, dead_lettered=0)

    failed = _event(db_session, "evt_a")
    assert failed.process_status == ProcessStatus.FAILED
    assert failed.error.startswith("RuntimeError: reconcile exploded")
    assert "sk_live_abc" not in failed.error
    assert _event(db_session, "evt_b").process_status == ProcessStatus.SUCCESS


def test_failed_reconcile_is_rolled_back(db_session, store):
    class PartialDispatcher:
        def __init__(self, inner):
            self.inner = inner

        def dispatch(self, event):
            self.inner.dispatch(event)
            raise RuntimeError("after writes")

    processor = BatchProcessor(
        db_session, store, PartialDispatcher(EventDispatcher.for_session(db_session, "creem")), 5000
    )
    store.append("evt_1", "checkout.completed", {"data": {"object": {"id": "co_1"}, "metadata": {"userId": "u1", "novelId": "n1"}}})

    processor.run(limit=25)

    assert _event(db_session, "evt_1").process_status == ProcessStatus.FAILED
    assert _count(db_session, Order) == 0
    assert _count(db_session, Entitlement) == 0


def test_retry_recovers(flaky_processor, store, db_session, checkout_payload):
    processor = flaky_processor(failures=1)
    store.append("evt_1", "checkout.completed", checkout_payload())

    first = processor.run(limit=25)
    assert first.failed == 1
    assert _event(db_session, "evt_1").process_status == ProcessStatus.FAILED

    second = processor.run(limit=25)
    assert second == BatchSummary(processed=1, skipped=0, failed=0, dead_lettered=0)

    event = _event(db_session, "evt_1")
    assert event.process_status == ProcessStatus.SUCCESS
    assert event.attempts == 2
    assert event.error is None
    assert _count(db_session, Order) == 1


def test_dead_letter_after_max_attempts(flaky_processor, store, db_session):
    processor = flaky_processor(failures=100)
    store.append("evt_1", "checkout.completed", {"data": {"object": {"id": "co_1"}}})

    for _ in range(store.max_attempts - 1):
        summary = processor.run(limit=25)
        assert summary.failed == 1 and summary.dead_lettered == 0
        assert _event(db_session, "evt_1").process_status == ProcessStatus.FAILED

    last = processor.run(limit=25)
    assert last == BatchSummary(processed=0, skipped=0, failed=1, dead_lettered=1)

    event = _event(db_session, "evt_1")
    assert event.process_status == ProcessStatus.DEAD_LETTER
    assert event.attempts == store.max_attempts

    assert processor.run(limit=25) == BatchSummary()


def test_processing_twice_is_idempotent(processor, store, db_session, checkout_payload):
    store.append("evt_1", "checkout.completed", checkout_payload())
    processor.run(limit=25)

    # Duplicate delivery, then the same checkout under a new event id
    assert store.append("evt_1", "checkout.completed", checkout_payload()) is False
    store.append("evt_1_redelivered", "checkout.completed", checkout_payload())
    processor.run(limit=25)

    assert _count(db_session, Order) == 1
    assert _count(db_session, Entitlement) == 1
    assert db_session.scalars(select(Order)).one().status == "completed"


def test_terminal_events_are_never_reprocessed(processor, store, db_session, checkout_payload):
    store.append("evt_1", "checkout.completed", checkout_payload())
    processor.run(limit=25)
    processed_at = _event(db_session, "evt_1").processed_at

    assert processor.run(limit=25) == BatchSummary()

    event = _event(db_session, "evt_1")
    assert event.process_status == ProcessStatus.SUCCESS
    assert event.processed_at == processed_at
    assert event.attempts == 1


def test_refund_keeps_entitlement(processor, store, db_session, checkout_payload, at):
    store.append("evt_checkout", "checkout.completed", checkout_payload(), received_at=at(0))
    store.append(
        "evt_refund",
        "refund.created",
        {"data": {"object": {"id": "rf_1", "checkout": {"id": "co_1"}}, "metadata": {"userId": "u1"}}},
        received_at=at(5),
    )

    summary = processor.run(limit=25)

    assert summary.processed == 2
    db_session.expire_all()
    assert db_session.scalars(select(Order)).one().status == "refunded"
    assert _count(db_session, Entitlement) == 1


def test_stale_redelivery_cannot_regress_order(processor, store, db_session, checkout_payload, at):
    store.append("evt_checkout", "checkout.completed", checkout_payload(), received_at=at(0))
    store.append("evt_dispute", "dispute.created", {"data": {"object": {"id": "dp_1", "checkout_id": "co_1"}}}, received_at=at(5))
    processor.run(limit=25)

    # A checkout notification created before the dispute arrives late
    store.append("evt_checkout_old", "checkout.completed", checkout_payload(), received_at=at(2))
    summary = processor.run(limit=25)

    assert summary == BatchSummary(processed=1, skipped=0, failed=0, dead_lettered=0)
    assert _event(db_session, "evt_checkout_old").process_status == ProcessStatus.SUCCESS
    db_session.expire_all()
    assert db_session.scalars(select(Order)).one().status == "disputed"


def test_subscription_lifecycle(processor, store, db_session, at):
    def sub_payload(period_end=None):
        obj = {"id": "sub_1"}
        if period_end:
            obj["current_period_end"] = period_end
        return {"data": {"object": obj, "metadata": {"userId": "u1"}}}

    store.append("evt_1", "subscription.active", sub_payload("2024-02-01T00:00:00Z"), received_at=at(0))
    store.append("evt_2", "subscription.paid", sub_payload("2024-03-01T00:00:00Z"), received_at=at(1))
    store.append("evt_3", "subscription.update", sub_payload("2024-02-15T00:00:00Z"), received_at=at(2))
    store.append("evt_4", "subscription.scheduled_cancel", sub_payload("2024-03-01T00:00:00Z"), received_at=at(3))
    processor.run(limit=25)

    db_session.expire_all()
    sub = db_session.scalars(select(Subscription)).one()
    assert sub.status == "active"
    assert sub.cancel_at_period_end is True
    assert ensure_utc(sub.current_period_end) == datetime(2024, 3, 1, tzinfo=timezone.utc)
    assert _count(db_session, Entitlement) == 0

    store.append("evt_5", "subscription.unpaid", sub_payload(), received_at=at(4))
    processor.run(limit=25)
    db_session.expire_all()
    sub = db_session.scalars(select(Subscription)).one()
    assert sub.status == "past_due"
    assert sub.cancel_at_period_end is False


def test_expired_exhausted_claim_is_dead_lettered_on_run(processor, store, db_session):
    store.append("evt_stuck", "checkout.completed", {})
    long_ago = datetime.now(timezone.utc) - timedelta(hours=2)
    for _ in range(store.max_attempts):
        store.claim_outstanding(limit=1, claim_token="crashed", now=long_ago)
        long_ago += timedelta(minutes=10)

    summary = processor.run(limit=25)

    assert summary.dead_lettered == 1
    assert summary.failed == 0
    assert _event(db_session, "evt_stuck").process_status == ProcessStatus.DEAD_LETTER


def test_abandoned_claim_is_picked_up_after_lease_expiry(processor, store, db_session, checkout_payload):
    store.append("evt_1", "checkout.completed", checkout_payload())
    store.claim_outstanding(limit=1, claim_token="crashed", now=datetime.now(timezone.utc) - timedelta(hours=1))

    summary = processor.run(limit=25)

    assert summary.processed == 1
    event = _event(db_session, "evt_1")
    assert event.process_status == ProcessStatus.SUCCESS
    assert event.attempts == 2


def test_claim_failure_propagates(processor, store):
    store.append("evt_1", "checkout.completed", {})
    with patch.object(
        store, "claim_outstanding", side_effect=OperationalError("SELECT", {}, Exception("db down"))
    ):
        with pytest.raises(OperationalError):
            processor.run(limit=25)


def test_outcome_write_failure_does_not_abort_batch(processor, store, db_session, checkout_payload, at):
    store.append("evt_a", "checkout.completed", checkout_payload(checkout_id="co_a"), received_at=at(0))
    store.append("evt_b", "checkout.completed", checkout_payload(checkout_id="co_b"), received_at=at(1))
    real_mark_outcome = store.mark_outcome
    calls = []

    def _mark_outcome(*args, **kwargs):
        calls.append(args[0])
        if len(calls) == 1:
            raise OperationalError("UPDATE", {}, Exception("connection reset"))
        return real_mark_outcome(*args, **kwargs)

    with patch.object(store, "mark_outcome", side_effect=_mark_outcome):
        summary = processor.run(limit=25)

    assert summary == BatchSummary(processed=1, skipped=0, failed=1, dead_lettered=0)
    assert calls == ["evt_a", "evt_b"]
    # Reconcile committed; the row waits for its lease to expire and is retried
    assert _event(db_session, "evt_a").process_status == ProcessStatus.PROCESSING
    assert _event(db_session, "evt_b").process_status == ProcessStatus.SUCCESS
    assert _count(db_session, Order) == 2


def test_failure_write_failure_does_not_abort_batch(flaky_processor, store, db_session):
    store.append("evt_1", "checkout.completed", {"data": {"object": {"id": "co_1"}}})
    processor = flaky_processor(failures=1)

    with patch.object(
        store, "mark_outcome", side_effect=OperationalError("UPDATE", {}, Exception("db down"))
    ):
        summary = processor.run(limit=25)

    assert summary == BatchSummary(processed=0, skipped=0, failed=1, dead_lettered=0)
    assert _event(db_session, "evt_1").process_status == ProcessStatus.PROCESSING


def test_event_reclaimed_mid_batch_is_skipped(processor, store, db_session, session_factory, make_store, checkout_payload, at):
    store.append("evt_a", "customer.updated", {}, received_at=at(0))
    store.append("evt_b", "checkout.completed", checkout_payload(checkout_id="co_b"), received_at=at(1))
    real_mark_outcome = store.mark_outcome
    other_db = session_factory()
    taken_over = []

    def _mark_outcome(*args, **kwargs):
        applied = real_mark_outcome(*args, **kwargs)
        if not taken_over:
            # evt_b's lease has run out while evt_a was reconciled; another
            # processor claims it before this one gets there
            later = datetime.now(timezone.utc) + timedelta(seconds=store.lease_seconds + 60)
            taken_over.extend(make_store(other_db).claim_outstanding(limit=10, claim_token="tok-other", now=later))
        return applied

    try:
        with patch.object(store, "mark_outcome", side_effect=_mark_outcome):
            summary = processor.run(limit=25)
    finally:
        other_db.close()

    assert [e.event_id for e in taken_over] == ["evt_b"]
    assert summary == BatchSummary(processed=1, skipped=1, failed=0, dead_lettered=0)

    event = _event(db_session, "evt_b")
    assert event.process_status == ProcessStatus.PROCESSING
    assert event.claim_token == "tok-other"
    assert event.attempts == 2
    assert _count(db_session, Order) == 0
    assert _count(db_session, Entitlement) == 0


def test_build_processor_uses_configuration(db_session, monkeypatch):
    monkeypatch.setenv("BILLING_MAX_ATTEMPTS", "7")
    monkeypatch.setenv("BILLING_CLAIM_LEASE_SECONDS", "42")
    monkeypatch.setenv("BILLING_RECONCILE_TIMEOUT_MS", "1500")
    monkeypatch.setenv("BILLING_PROVIDER", "creem")

    processor = build_processor(db_session)

    assert processor.store.max_attempts == 7
    assert processor.store.lease_seconds == 42
    assert processor.store.provider == "creem"
    assert processor.reconcile_timeout_ms == 1500
