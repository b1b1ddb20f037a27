"""Shared defaults."""

DEFAULT_TIMELINE_LIMIT = 50
MAX_TIMELINE_LIMIT = 500

DEFAULT_MAX_RETRIES = 3
DEFAULT_INITIAL_DELAY_MS = 1000
DEFAULT_MAX_DELAY_MS = 10000
DEFAULT_BACKOFF_MULTIPLIER = 2.0

DEFAULT_WEBHOOK_TIMEOUT = 30.0
DEFAULT_WORKERS = 4
DEFAULT_QUEUE_SIZE = 1000
DEFAULT_EXECUTION_LOG_SIZE = 500

USER_AGENT = "ProcessCore/1.0"

PERMISSION_WEBHOOKS_TRIGGER = "webhooks:trigger"
PERMISSION_WEBHOOKS_CALLBACK = "webhooks:callback"
PERMISSION_WEBHOOKS_EVENTS = "webhooks:events"
PERMISSION_INSTANCES_READ = "instances:read"
PERMISSION_INSTANCES_WRITE = "instances:write"
