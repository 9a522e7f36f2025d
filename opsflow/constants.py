"""Shared constants for opsflow."""

TRIGGER_CONTEXT_KEY = "trigger"

DATA_QUERY_ACTION = "data.query"

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BASE_DELAY = 1.0
DEFAULT_BACKOFF_MULTIPLIER = 2.0
DEFAULT_MAX_DELAY = 300.0

DEFAULT_CATCH_UP_LIMIT = 10

DEFAULT_EVENT_ID_HEADERS = ("X-Event-Id", "X-Webhook-Id", "X-GitHub-Delivery")

RUNS_TOPIC = "opsflow.runs"
