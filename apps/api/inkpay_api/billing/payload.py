"""Tolerant field extraction from provider webhook payloads.

Creem wraps the resource as ``{"data": {"object": {...}, "metadata": {...}}}``
in current deliveries and as ``{"data": {...}}`` in older ones. Every reader
tolerates missing or wrongly typed fields and returns None instead of raising;
a payload that cannot be correlated is a no-op for the reconcilers, not an error.
"""

from __future__ import annotations

import math
import re
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

DEFAULT_CURRENCY = "USD"

# checkout request_id convention: "novel:<novel_id>:user:<user_id>"
_REQUEST_ID_RE = re.compile(r"^novel:(?P<novel>[^:]+):user:(?P<user>[^:]+)$")

_USER_ID_KEYS = ("userId", "user_id", "userid")
_NOVEL_ID_KEYS = ("novelId", "novel_id")
_PERIOD_END_KEYS = ("current_period_end", "period_end", "ends_at")


def _as_dict(value: Any) -> dict:
    return value if isinstance(value, dict) else {}


def _as_str(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value.strip()
    if isinstance(value, int) and not isinstance(value, bool):
        return str(value)
    return None


def _first_str(source: dict, keys: tuple[str, ...]) -> Optional[str]:
    for key in keys:
        value = _as_str(source.get(key))
        if value is not None:
            return value
    return None


def get_data(payload: Any) -> dict:
    """The ``data`` envelope, or the payload itself when there is none."""
    payload = _as_dict(payload)
    data = payload.get("data")
    return data if isinstance(data, dict) else payload


def get_object(payload: Any) -> dict:
    """The resource the event is about: ``data.object`` > ``data`` > payload."""
    data = get_data(payload)
    obj = data.get("object")
    return obj if isinstance(obj, dict) else data


def get_metadata(payload: Any) -> dict:
    """Checkout metadata, searched from the innermost level outwards."""
    for source in (get_object(payload), get_data(payload), _as_dict(payload)):
        metadata = source.get("metadata")
        if isinstance(metadata, dict) and metadata:
            return metadata
    return {}


def _nested_id(obj: dict, key: str) -> Optional[str]:
    nested = obj.get(key)
    if isinstance(nested, dict):
        return _as_str(nested.get("id"))
    return _as_str(nested)


def get_checkout_id(payload: Any) -> Optional[str]:
    """Nested ``checkout.id`` > ``checkout_id`` > the object's own ``id``."""
    obj = get_object(payload)
    return _nested_id(obj, "checkout") or _as_str(obj.get("checkout_id")) or _as_str(obj.get("id"))


def get_subscription_id(payload: Any) -> Optional[str]:
    """Nested ``subscription.id`` > ``subscription_id`` > the object's own ``id``."""
    obj = get_object(payload)
    return (
        _nested_id(obj, "subscription")
        or _as_str(obj.get("subscription_id"))
        or _as_str(obj.get("id"))
    )


def _order_source(payload: Any) -> dict:
    obj = get_object(payload)
    order = obj.get("order")
    return order if isinstance(order, dict) else obj


def parse_amount(value: Any) -> Optional[Decimal]:
    """Parse a numeric amount; bools, NaN/inf and garbage yield None."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, float) and not math.isfinite(value):
        return None
    try:
        amount = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return None
    if not amount.is_finite():
        return None
    return amount


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 string (``Z`` suffix accepted) into an aware UTC datetime."""
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    else:
        return None
    return ensure_utc(parsed)


def ensure_utc(value: datetime) -> datetime:
    """Naive datetimes are UTC (SQLite drops tzinfo on round-trip)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def get_amount(payload: Any) -> Optional[Decimal]:
    return parse_amount(_order_source(payload).get("amount"))


def get_currency(payload: Any) -> str:
    currency = _as_str(_order_source(payload).get("currency"))
    return currency.upper() if currency else DEFAULT_CURRENCY


def get_paid_at(payload: Any) -> Optional[datetime]:
    order = _order_source(payload)
    return parse_timestamp(order.get("paid_at") or order.get("paidAt"))


def get_current_period_end(payload: Any) -> Optional[datetime]:
    obj = get_object(payload)
    for key in _PERIOD_END_KEYS:
        value = parse_timestamp(obj.get(key))
        if value is not None:
            return value
    subscription = obj.get("subscription")
    if isinstance(subscription, dict):
        return parse_timestamp(subscription.get("current_period_end"))
    return None


def _request_id_part(payload: Any, part: str) -> Optional[str]:
    metadata = get_metadata(payload)
    request_id = _as_str(metadata.get("request_id")) or _as_str(
        get_object(payload).get("request_id")
    )
    if request_id is None:
        return None
    match = _REQUEST_ID_RE.match(request_id)
    return match.group(part) if match else None


def get_user_id(payload: Any) -> Optional[str]:
    return _first_str(get_metadata(payload), _USER_ID_KEYS) or _request_id_part(payload, "user")


def get_novel_id(payload: Any) -> Optional[str]:
    return _first_str(get_metadata(payload), _NOVEL_ID_KEYS) or _request_id_part(payload, "novel")
