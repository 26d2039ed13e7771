"""Billing webhook reconciliation."""
