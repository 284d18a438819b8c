"""Engine-wide constants."""

# Tolerance for budget conservation across a plan's legs.
BUDGET_TOLERANCE = 0.01

# Leg amounts are rounded to this many decimals.
AMOUNT_DECIMALS = 6

DEFAULT_MAX_EVENT_HISTORY = 1000
DEFAULT_EVENT_MAX_AGE_SECONDS = 24 * 60 * 60
STALE_SUBSCRIPTION_SECONDS = 60 * 60

DEFAULT_TICK_INTERVAL_SECONDS = 30.0
DEFAULT_IDLE_LOG_THRESHOLD = 10
DEFAULT_SUBMISSION_TIMEOUT_SECONDS = 30.0

DEFAULT_WEBHOOK_TIMEOUT_SECONDS = 10.0
DEFAULT_MAX_CALLBACK_HISTORY = 1000

DEFAULT_MAX_METRICS_HISTORY = 1000
DEFAULT_MAX_ALERTS = 100

DEFAULT_CLEANUP_INTERVAL_SECONDS = 300.0
DEFAULT_HEARTBEAT_SECONDS = 30.0
DEFAULT_STREAM_IDLE_SECONDS = 300.0

DEFAULT_SESSION_TIMEOUT_SECONDS = 24 * 60 * 60
DEFAULT_SESSION_CLEANUP_SECONDS = 60 * 60
DEFAULT_MAX_SESSION_SNAPSHOTS = 50

# Re-plan bounds used by final optimization when validation fails.
OPTIMIZED_MAX_LEGS = 12
OPTIMIZED_MIN_INTERVAL_MINUTES = 45
