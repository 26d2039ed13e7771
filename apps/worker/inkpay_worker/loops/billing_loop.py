"""Billing loop: periodically reconcile outstanding webhook events.

- Each iteration opens a fresh session and runs one BatchProcessor batch
- Interval: 60 seconds (BILLING_LOOP_INTERVAL_SECONDS)
- Safe to run next to the HTTP cron trigger; claims are exclusive
"""

import logging
import signal
import threading
import time
from typing import Callable, Optional

from sqlalchemy.orm import Session

from inkpay_api.billing.processor import BatchProcessor, BatchSummary, build_processor

logger = logging.getLogger(__name__)

# Global shutdown event for graceful termination
_shutdown_event = threading.Event()


def _signal_handler(signum, frame):
    """Handle shutdown signals (SIGTERM, SIGINT) gracefully."""
    sig_name = signal.Signals(signum).name
    logger.info("SHUTDOWN_SIGNAL_RECEIVED", extra={"signal": sig_name})
    _shutdown_event.set()


def install_signal_handlers() -> None:
    """Register SIGTERM/SIGINT handlers. Main thread only."""
    signal.signal(signal.SIGTERM, _signal_handler)
    signal.signal(signal.SIGINT, _signal_handler)


def request_shutdown() -> None:
    _shutdown_event.set()


def run_once(
    session_factory: Callable[[], Session],
    batch_size: int,
    processor_factory: Callable[[Session], BatchProcessor] = build_processor,
) -> BatchSummary:
    """Run one batch on a fresh session."""
    db = session_factory()
    try:
        return processor_factory(db).run(batch_size)
    finally:
        db.close()


def billing_loop(
    session_factory: Callable[[], Session],
    interval_seconds: int = 60,
    batch_size: int = 25,
    stop_after_one_iteration: bool = False,
    processor_factory: Optional[Callable[[Session], BatchProcessor]] = None,
) -> None:
    """Main billing loop - process a batch, sleep, repeat until shutdown.

    Args:
        session_factory: Callable returning a new Session (e.g. a sessionmaker)
        interval_seconds: Sleep interval between batches (default 60)
        batch_size: Max events claimed per batch (default 25)
        stop_after_one_iteration: For testing only - exit after one batch
        processor_factory: Builds the BatchProcessor for a session (default: build_processor)

    Returns:
        None (runs forever unless stop_after_one_iteration=True)
    """
    processor_factory = processor_factory or build_processor

    logger.info(
        "BILLING_LOOP_STARTED",
        extra={"interval_seconds": interval_seconds, "batch_size": batch_size},
    )

    iteration = 0
    totals = BatchSummary()

    while not _shutdown_event.is_set():
        iteration += 1
        iteration_start = time.time()

        try:
            summary = run_once(session_factory, batch_size, processor_factory)

            totals.processed += summary.processed
            totals.skipped += summary.skipped
            totals.failed += summary.failed
            totals.dead_lettered += summary.dead_lettered

            duration_ms = int((time.time() - iteration_start) * 1000)
            logger.info(
                "BILLING_LOOP_ITERATION",
                extra={"iteration": iteration, "duration_ms": duration_ms, **summary.as_dict()},
            )
        except Exception as e:
            logger.error(
                "BILLING_LOOP_ITERATION_FAILED",
                exc_info=True,
                extra={"iteration": iteration, "error_type": type(e).__name__},
            )

        # For testing: stop after one iteration
        if stop_after_one_iteration:
            logger.info("BILLING_LOOP_SINGLE_ITERATION_DONE")
            break

        # Interruptible sleep - allows immediate shutdown on signal
        _shutdown_event.wait(interval_seconds)

    logger.info(
        "BILLING_LOOP_STOPPED",
        extra={"total_iterations": iteration, **{f"total_{k}": v for k, v in totals.as_dict().items()}},
    )
