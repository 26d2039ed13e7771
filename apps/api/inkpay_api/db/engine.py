"""Database engine builder (SSOT).

- Default pool: NullPool (PgBouncer / Supabase pooler friendly)
- pool_pre_ping=True
- ENV: INKPAY_DB_POOL=nullpool|queuepool (default: nullpool)
- SQLite URLs (tests, local tooling) get check_same_thread=False
"""

import logging
import os
import re
from typing import Any

from sqlalchemy import Engine, NullPool, create_engine
from sqlalchemy.orm import Session, sessionmaker

from inkpay_api.config.env import get_database_url

logger = logging.getLogger(__name__)


def _mask_password(url: str) -> str:
    """Mask password in database URL for safe logging."""
    return re.sub(r"://([^:]+):([^@]+)@", r"://\1:***@", url)


def build_engine(database_url: str | None = None) -> Engine:
    """Build SQLAlchemy engine.

    Args:
        database_url: Database URL. If None, resolved via config.env.get_database_url().

    Returns:
        SQLAlchemy Engine instance.

    Raises:
        ValueError: On an invalid INKPAY_DB_POOL value.
    """
    url = database_url or get_database_url()

    connect_args: dict[str, Any] = {}
    if url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    else:
        app_name = os.getenv("INKPAY_DB_APPLICATION_NAME", "inkpay-billing")
        if app_name:
            connect_args["application_name"] = app_name

    pool_mode = os.getenv("INKPAY_DB_POOL", "nullpool").lower()

    if pool_mode == "nullpool":
        engine = create_engine(
            url,
            poolclass=NullPool,
            pool_pre_ping=True,
            connect_args=connect_args,
        )
    elif pool_mode == "queuepool":
        pool_size = int(os.getenv("INKPAY_DB_POOL_SIZE", "5"))
        max_overflow = int(os.getenv("INKPAY_DB_MAX_OVERFLOW", "10"))
        engine = create_engine(
            url,
            pool_pre_ping=True,
            pool_size=pool_size,
            max_overflow=max_overflow,
            connect_args=connect_args,
        )
    else:
        raise ValueError(
            f"Invalid INKPAY_DB_POOL value: {pool_mode}. "
            "Must be 'nullpool' or 'queuepool'."
        )

    logger.debug(
        "Database engine created: pool=%s, url=%s",
        engine.pool.__class__.__name__,
        _mask_password(url),
    )
    return engine


def build_sessionmaker(engine: Engine) -> sessionmaker[Session]:
    """Build sessionmaker with autocommit=False, autoflush=False.

    expire_on_commit=False keeps claimed rows readable after the claim commit.
    """
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)
