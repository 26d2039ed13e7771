"""Inkpay billing worker."""
