"""Keyword tables, scoring weights and default limits."""

from __future__ import annotations

# -- Discovery event types --

EVENT_DISCOVERY_STARTED = "discovery_started"
EVENT_DISPATCHED = "dispatched"
EVENT_COMPLETED = "completed"
EVENT_FAILED = "failed"
EVENT_RETRY_QUEUED = "retry_queued"
EVENT_DROPPED = "dropped"
EVENT_DISCOVERY_STOPPED = "discovery_stopped"

EVENT_TYPES: frozenset[str] = frozenset({
	EVENT_DISCOVERY_STARTED,
	EVENT_DISPATCHED,
	EVENT_COMPLETED,
	EVENT_FAILED,
	EVENT_RETRY_QUEUED,
	EVENT_DROPPED,
	EVENT_DISCOVERY_STOPPED,
})

# Keyword -> theme tag. Keywords match at the start of a word, so "install"
# also covers "installation" and "installer". Extend freely.
THEME_KEYWORDS: dict[str, str] = {
	"emergency": "emergency_service",
	"urgent": "emergency_service",
	"maintenance": "maintenance",
	"tune-up": "maintenance",
	"repair": "repair",
	"fix": "repair",
	"install": "installation",
	"replace": "installation",
	"quote": "pricing",
	"price": "pricing",
	"pricing": "pricing",
	"cost": "pricing",
	"estimate": "pricing",
	"schedule": "scheduling",
	"appointment": "scheduling",
	"availability": "scheduling",
	"name": "personal_info",
	"address": "personal_info",
	"phone": "personal_info",
	"email": "personal_info",
	"air conditioning": "ac_service",
	"heating": "heating",
	"furnace": "heating",
	"plumbing": "plumbing",
	"pipe": "plumbing",
	"warranty": "warranty",
	"financing": "financing",
	"payment": "financing",
	"cancel": "cancellation",
	"trade-in": "trade_in",
	"test drive": "test_drive",
}

# A candidate mentioning any of these gets the urgency bonus.
URGENCY_KEYWORDS: tuple[str, ...] = ("emergency", "urgent", "asap", "immediately")

# Closing phrases used by the terminal-state heuristic.
TERMINAL_PHRASES: tuple[str, ...] = (
	"goodbye",
	"thank you for calling",
	"have a nice day",
	"have a great",
	"is there anything else",
	"end of our call",
	"bye",
)

# Priority weights
NEW_THEME_WEIGHT = 2
URGENCY_BONUS = 3
ACTIVE_THEME_PENALTY = 1
PRIORITY_FLOOR = -2

INITIAL_PROMPT = """\
You are a customer making your first call to this business.
When the agent answers:
1. Express general interest in learning about their services
2. Ask clear questions about their primary service offerings
3. Show interest but avoid committing to any service yet
Your goal is to understand what services they offer and how they handle initial inquiries."""

DEFAULT_LIMITS: dict[str, int] = {
	"max_depth": 5,
	"max_children": 4,
	"max_retry_attempts": 3,
	"max_concurrent_calls": 3,
	"http_retries": 3,
}
