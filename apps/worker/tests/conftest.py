"""Pytest configuration and fixtures for the billing worker."""

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from inkpay_api.db.engine import build_sessionmaker
from inkpay_api.db.models import Base
from inkpay_worker.loops import billing_loop as billing_loop_module


@pytest.fixture
def worker_engine(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'inkpay_worker_test.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(engine)
    try:
        yield engine
    finally:
        engine.dispose()


@pytest.fixture
def worker_session_factory(worker_engine) -> sessionmaker[Session]:
    return build_sessionmaker(worker_engine)


@pytest.fixture(autouse=True)
def reset_shutdown_event(monkeypatch):
    """Each test starts with the loop not shut down and default billing env."""
    for name in ("BILLING_PROVIDER", "BILLING_MAX_ATTEMPTS", "BILLING_CLAIM_LEASE_SECONDS"):
        monkeypatch.delenv(name, raising=False)
    billing_loop_module._shutdown_event.clear()
    yield
    billing_loop_module._shutdown_event.clear()
