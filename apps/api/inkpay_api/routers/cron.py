"""Internal trigger endpoints for the billing pipeline.

Hit by the platform scheduler (Vercel/cron-style GET) or manually (POST).

WARNING: These endpoints are NOT for public use.
- Protected by ``Authorization: Bearer <CRON_SECRET>``
- Production refuses to run them without a configured secret
"""

import logging
import secrets
from typing import Optional

from fastapi import APIRouter, Depends, Header, Query, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from inkpay_api.billing.event_store import EventStore
from inkpay_api.billing.processor import build_processor
from inkpay_api.config.env import get_batch_size, get_cron_secret, is_production_env
from inkpay_api.db.session import get_db
from inkpay_api.utils.sanitize import error_message

router = APIRouter(prefix="/internal", tags=["internal"])
logger = logging.getLogger(__name__)

MAX_LIMIT = 500


def _authorize(authorization: Optional[str]) -> Optional[JSONResponse]:
    """Check the cron bearer secret.

    Returns:
        None when the caller may proceed, otherwise the error response.
    """
    secret = get_cron_secret()
    if secret is None:
        if is_production_env():
            logger.error("CRON_SECRET_NOT_CONFIGURED")
            return JSONResponse(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                content={"ok": False, "error": "CRON_SECRET_NOT_CONFIGURED"},
            )
        return None

    expected = f"Bearer {secret}".encode("utf-8")
    if not secrets.compare_digest((authorization or "").encode("utf-8"), expected):
        logger.warning("CRON_UNAUTHORIZED")
        return JSONResponse(
            status_code=status.HTTP_401_UNAUTHORIZED,
            content={"ok": False, "error": "UNAUTHORIZED"},
            headers={"WWW-Authenticate": "Bearer"},
        )
    return None


@router.api_route("/cron/process-billing-events", methods=["GET", "POST"])
def process_billing_events(
    limit: Optional[int] = Query(None, ge=1, le=MAX_LIMIT),
    authorization: Optional[str] = Header(None),
    db: Session = Depends(get_db),
):
    """
    Run one batch of the billing reconcile pipeline.

    Returns:
        200 {ok: true, processed, skipped, failed, dead_lettered}
        401 {ok: false, error: "UNAUTHORIZED"}
        500 {ok: false, error}: the batch could not be claimed/run
    """
    denied = _authorize(authorization)
    if denied is not None:
        return denied

    batch_limit = limit or get_batch_size()
    try:
        summary = build_processor(db).run(batch_limit)
    except Exception as exc:
        logger.error("BILLING_CRON_RUN_FAILED", exc_info=True, extra={"limit": batch_limit})
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"ok": False, "error": error_message(exc)},
        )

    return {"ok": True, **summary.as_dict()}


@router.get("/billing/dead-letters")
def list_dead_letters(
    limit: int = Query(50, ge=1, le=MAX_LIMIT),
    authorization: Optional[str] = Header(None),
    db: Session = Depends(get_db),
):
    """Dead-lettered events, newest first. Payloads are not returned."""
    denied = _authorize(authorization)
    if denied is not None:
        return denied

    events = EventStore(db).list_dead_letters(limit)
    return {
        "ok": True,
        "events": [
            {
                "event_id": event.event_id,
                "type": event.type,
                "attempts": event.attempts,
                "error": event.error,
                "received_at": event.received_at.isoformat() if event.received_at else None,
                "processed_at": event.processed_at.isoformat() if event.processed_at else None,
            }
            for event in events
        ],
    }
