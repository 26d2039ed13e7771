"""Utility functions and helpers."""

from inkpay_api.utils.logging import JSONFormatter, configure_json_logging
from inkpay_api.utils.sanitize import error_message, sanitize_obj, sanitize_str

__all__ = [
    "JSONFormatter",
    "configure_json_logging",
    "error_message",
    "sanitize_obj",
    "sanitize_str",
]
