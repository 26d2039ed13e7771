"""Secret / PII scrubbing for log output and stored error strings.

Strings pass a size gate before any regex runs:
 1. > MAX_STR_LOG        → replaced by length + sha256 prefix
 2. > MAX_STR_FOR_REGEX  → only the Bearer/Basic prefix is checked
 3. otherwise            → full pattern replacement
"""

import hashlib
import re
from typing import Any

MAX_STR_LOG: int = 2048
MAX_STR_FOR_REGEX: int = 512
MAX_DEPTH: int = 6
MAX_ERROR_LEN: int = 1000

# Lower-cased dict keys whose values are never logged
_SENSITIVE_KEYS: frozenset[str] = frozenset({
    "authorization", "token", "access_token", "refresh_token",
    "api_key", "secret", "signature", "creem-signature", "email",
    "phone", "card", "last4", "customer", "billing_address",
    "payload", "payload_json",
})

_PATTERNS: list[re.Pattern[str]] = [
    re.compile(r"Bearer \S+"),
    re.compile(r"Basic \S+"),
    re.compile(r"api_key=\S+"),
    re.compile(r"password=\S+"),
    re.compile(r"[\w.+-]+@[\w-]+\.[\w.-]+"),
]

_AUTH_PREFIXES = ("Bearer ", "Basic ")


def is_sensitive_key(key: Any) -> bool:
    """True for dict / log-extra keys whose values are never logged."""
    return isinstance(key, str) and key.lower() in _SENSITIVE_KEYS


def _redact_patterns(s: str) -> str:
    for pattern in _PATTERNS:
        s = pattern.sub("[REDACTED]", s)
    return s


def sanitize_str(s: str) -> str:
    """Return a redacted / truncated copy of ``s``."""
    if not isinstance(s, str):
        return s  # type: ignore[return-value]

    n = len(s)
    if n > MAX_STR_LOG:
        digest = hashlib.sha256(s.encode("utf-8", errors="replace")).hexdigest()[:16]
        return f"[TRUNCATED len={n} sha256={digest}]"

    if n > MAX_STR_FOR_REGEX:
        if s.startswith(_AUTH_PREFIXES):
            return "[REDACTED]"
        return s

    return _redact_patterns(s)


def sanitize_obj(obj: Any, depth: int = 0) -> Any:
    """Recursively sanitize a log extra value.

    Sensitive dict keys are redacted, strings go through sanitize_str().
    """
    if depth >= MAX_DEPTH:
        return "[DEPTH_LIMIT]"

    if isinstance(obj, dict):
        result: dict[str, Any] = {}
        for key, value in obj.items():
            if is_sensitive_key(key):
                result[key] = "[REDACTED]"
            else:
                result[key] = sanitize_obj(value, depth + 1)
        return result

    if isinstance(obj, (list, tuple)):
        return [sanitize_obj(item, depth + 1) for item in obj]

    if isinstance(obj, str):
        return sanitize_str(obj)

    return obj


def error_message(exc: BaseException) -> str:
    """Operator-facing error string stored on a failed event row.

    ``<ExceptionType>: <message>``, scrubbed and capped at MAX_ERROR_LEN.
    Patterns are redacted before truncation so a long driver error cannot
    slip past the regex size gate of sanitize_str().
    """
    text = str(exc).strip()
    message = f"{type(exc).__name__}: {text}" if text else type(exc).__name__
    # SQLAlchemy appends the full SQL + parameters; keep only the first line
    message = _redact_patterns(message.splitlines()[0][:MAX_STR_LOG])
    if len(message) > MAX_ERROR_LEN:
        message = message[: MAX_ERROR_LEN - 3] + "..."
    return message
