"""Inkpay billing worker main entry point.

Runs the billing loop in the foreground until SIGTERM/SIGINT.
"""

import logging
import os

from inkpay_api.config import env
from inkpay_api.db.engine import build_engine, build_sessionmaker
from inkpay_api.utils import configure_json_logging
from inkpay_worker.loops.billing_loop import billing_loop, install_signal_handlers

logger = logging.getLogger(__name__)


def main() -> None:
    """Main entry point for the billing worker."""
    configure_json_logging(log_level=os.getenv("LOG_LEVEL", "INFO"))

    # Fail-fast configuration (raises RuntimeError/ValueError)
    database_url = env.get_database_url()
    interval_seconds = env.get_loop_interval_seconds()
    batch_size = env.get_batch_size()

    logger.info(
        "BILLING_WORKER_STARTING",
        extra={
            "environment": env.get_inkpay_env(),
            "provider": env.get_billing_provider(),
            "interval_seconds": interval_seconds,
            "batch_size": batch_size,
        },
    )

    engine = build_engine(database_url)
    session_factory = build_sessionmaker(engine)

    install_signal_handlers()
    try:
        billing_loop(
            session_factory,
            interval_seconds=interval_seconds,
            batch_size=batch_size,
        )
    finally:
        engine.dispose()
        logger.info("BILLING_WORKER_STOPPED")


if __name__ == "__main__":
    main()
