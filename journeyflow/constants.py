"""Shared constants for the journey execution engine."""

SECONDS_PER_DAY = 86400

# Idempotency guard entries outlive any realistic redelivery window.
DEFAULT_IDEMPOTENCY_TTL_SECONDS = 7 * SECONDS_PER_DAY
MIN_DELAY_IDEMPOTENCY_TTL_SECONDS = 7 * SECONDS_PER_DAY

STEP_EXEC_KEY_PREFIX = "step-exec"
SEND_IDEMPOTENCY_PREFIX = "journey"

DEFAULT_STALE_AFTER_DAYS = 7
DEFAULT_MAX_ATTEMPTS = 5

DEFAULT_MIN_SCORE = 80
DEFAULT_DELAY_DURATION = 1
DEFAULT_DELAY_UNIT = "hours"

CHANNEL_ACTIONS = {
    "send_email": "email",
    "send_sms": "sms",
    "send_push": "push",
}
