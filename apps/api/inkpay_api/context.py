"""Context variables for log correlation.

Request ID for HTTP triggers; event ID and claim token while a batch runs.
"""

from contextvars import ContextVar

# Request ID - unique per HTTP request
request_id_var: ContextVar[str] = ContextVar("request_id", default="")

# Webhook event currently being reconciled
event_id_var: ContextVar[str] = ContextVar("event_id", default="")

# Claim token of the running batch
claim_token_var: ContextVar[str] = ContextVar("claim_token", default="")
