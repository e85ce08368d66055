"""Runtime configuration read from the environment."""
import os


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        return default


# Upstash Redis - standard env var names per docs
UPSTASH_REDIS_REST_URL = os.environ.get("UPSTASH_REDIS_REST_URL", "")
UPSTASH_REDIS_REST_TOKEN = os.environ.get("UPSTASH_REDIS_REST_TOKEN", "")

# Retry/backoff for cart loads and stream re-subscription
LOAD_RETRY_ATTEMPTS = max(1, _env_int("CART_LOAD_RETRY_ATTEMPTS", 3))
RETRY_MIN_WAIT_SECS = _env_float("CART_RETRY_MIN_WAIT_SECS", 0.5)
RETRY_MAX_WAIT_SECS = _env_float("CART_RETRY_MAX_WAIT_SECS", 8.0)

# Change stream polling (upstash REST API does not support blocking xread)
POLL_INTERVAL_SECS = _env_float("CART_POLL_INTERVAL_SECS", 1.0)
MAX_EVENTS_PER_POLL = _env_int("CART_MAX_EVENTS_PER_POLL", 50)

# Display currency for cart surfaces
CURRENCY = os.environ.get("CART_CURRENCY", "INR").upper()
