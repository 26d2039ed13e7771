"""Pytest configuration and fixtures."""

import os
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from inkpay_api.billing.dispatcher import EventDispatcher
from inkpay_api.billing.event_store import EventStore
from inkpay_api.billing.processor import BatchProcessor
from inkpay_api.db.engine import build_sessionmaker
from inkpay_api.db.models import Base

# Set TEST_DATABASE_URL to run against PostgreSQL; default is a SQLite file per test
TEST_DATABASE_URL = os.getenv("TEST_DATABASE_URL")

TEST_PROVIDER = "creem"
TEST_MAX_ATTEMPTS = 3

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


@pytest.fixture(scope="function")
def engine(tmp_path):
    """Fresh schema per test.

    SQLite uses a file (not :memory:) so separate sessions get separate
    connections, like two processors would.
    """
    if TEST_DATABASE_URL:
        engine = create_engine(TEST_DATABASE_URL)
        Base.metadata.drop_all(engine)
    else:
        engine = create_engine(
            f"sqlite:///{tmp_path / 'inkpay_test.db'}",
            connect_args={"check_same_thread": False},
        )

    Base.metadata.create_all(engine)
    try:
        yield engine
    finally:
        if TEST_DATABASE_URL:
            Base.metadata.drop_all(engine)
        engine.dispose()


@pytest.fixture
def session_factory(engine) -> sessionmaker[Session]:
    return build_sessionmaker(engine)


@pytest.fixture
def db_session(session_factory) -> Session:
    """
    Create a fresh database session for each test.
    """
    session = session_factory()
    try:
        yield session
        session.rollback()
    finally:
        session.close()


@pytest.fixture
def make_store():
    """Factory for EventStore bound to a given session."""

    def _make(db: Session, max_attempts: int = TEST_MAX_ATTEMPTS, lease_seconds: int = 300) -> EventStore:
        return EventStore(db, provider=TEST_PROVIDER, max_attempts=max_attempts, lease_seconds=lease_seconds)

    return _make


@pytest.fixture
def store(db_session, make_store) -> EventStore:
    return make_store(db_session)


@pytest.fixture
def processor(db_session, store) -> BatchProcessor:
    return BatchProcessor(
        db_session,
        store,
        EventDispatcher.for_session(db_session, TEST_PROVIDER),
        reconcile_timeout_ms=5000,
    )


@pytest.fixture
def at():
    """``at(minutes)`` → T0 + minutes, for deterministic received_at values."""

    def _at(minutes: int = 0) -> datetime:
        return T0 + timedelta(minutes=minutes)

    return _at


@pytest.fixture
def checkout_payload():
    """Checkout-completed payload as delivered by the provider."""

    def _payload(
        checkout_id: str = "co_1",
        amount=999,
        currency: str = "usd",
        user_id: str = "u1",
        novel_id: str = "n1",
    ) -> dict:
        return {
            "data": {
                "object": {
                    "id": checkout_id,
                    "order": {
                        "amount": amount,
                        "currency": currency,
                        "paid_at": "2024-01-01T00:00:00Z",
                    },
                },
                "metadata": {"userId": user_id, "novelId": novel_id},
            }
        }

    return _payload
