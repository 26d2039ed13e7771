"""Inkpay API - FastAPI Application Entry Point."""

import logging
import os
import time
import uuid

from fastapi import FastAPI, Request

from inkpay_api import __version__
from inkpay_api.context import claim_token_var, event_id_var, request_id_var
from inkpay_api.routers import cron, health
from inkpay_api.utils import configure_json_logging

app = FastAPI(
    title="Inkpay Billing API",
    description="Payment webhook reconciliation: orders, subscriptions and book entitlements.",
    version=__version__,
)

# Set INKPAY_JSON_LOGS=false to disable (defaults to true for production)
if os.getenv("INKPAY_JSON_LOGS", "true").lower() != "false":
    configure_json_logging(log_level=os.getenv("LOG_LEVEL", "INFO"))
    logger = logging.getLogger(__name__)
    logger.info("Structured JSON logging enabled")


# ============================================================================
# HTTP Request Completion Logging Middleware
# ============================================================================


@app.middleware("http")
async def http_completion_logging_middleware(request: Request, call_next):
    """Log every HTTP request completion with method, path, status_code, duration_ms.

    Per-request contextvars are cleared before and after so batch context
    never leaks into the next request.
    """
    event_id_var.set("")
    claim_token_var.set("")

    start_time = time.perf_counter()
    status_code = 500  # Default to 500 in case of unhandled exception

    try:
        response = await call_next(request)
        status_code = response.status_code
        return response
    finally:
        duration_ms = (time.perf_counter() - start_time) * 1000
        logging.getLogger(__name__).info(
            "http.request.completed",
            extra={
                "method": request.method,
                "path": request.url.path,
                "status_code": status_code,
                "duration_ms": round(duration_ms, 2),
            },
        )
        event_id_var.set("")
        claim_token_var.set("")


# ============================================================================
# Request ID Middleware (MUST BE OUTERMOST)
# ============================================================================


@app.middleware("http")
async def request_id_middleware(request: Request, call_next):
    """Accept X-Request-ID from the caller or generate one; echo it back."""
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request_id_var.set(request_id)

    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


app.include_router(health.router, tags=["health"])
app.include_router(cron.router)
