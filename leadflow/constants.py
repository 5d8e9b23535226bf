"""Shared constants."""

# Lead statuses that end outreach; inactivity triggers never select them.
TERMINAL_LEAD_STATUSES = frozenset(
    {"closed_won", "closed_lost", "unqualified", "do_not_contact"}
)

LEAD_EVENTS_TOPIC = "lead-events"

DEFAULT_BATCH_SIZE = 50
DEFAULT_LEASE_SECONDS = 300
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_NO_RESPONSE_DAYS = 7
