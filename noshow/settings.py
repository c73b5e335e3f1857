import os
from decimal import Decimal, InvalidOperation


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.environ.get(name, default))
    except (TypeError, ValueError):
        return default


def _env_decimal(name: str, default: str) -> Decimal:
    try:
        value = Decimal(os.environ.get(name, default))
    except InvalidOperation:
        return Decimal(default)
    # NaN and Infinity parse but break fee arithmetic
    return value if value.is_finite() else Decimal(default)


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


db_url = os.environ.get("DB_URL", "sqlite://:memory:")
REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379/0")
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

square_access_token = os.environ.get("SQUARE_ACCESS_TOKEN", "")
square_environment = os.environ.get("SQUARE_ENVIRONMENT", "sandbox")
square_api_version = os.environ.get("SQUARE_API_VERSION", "2024-06-04")
square_location_id = os.environ.get("SQUARE_LOCATION_ID") or None
square_base_url = (
    "https://connect.squareup.com"
    if square_environment == "production"
    else "https://connect.squareupsandbox.com"
)

GRACE_PERIOD_HOURS = _env_int("NO_SHOW_GRACE_PERIOD_HOURS", 24)
LOOKBACK_DAYS = _env_int("NO_SHOW_LOOKBACK_DAYS", 30)
FEE_PERCENT = _env_decimal("NO_SHOW_FEE_PERCENT", "30")
REVIEW_WINDOW_HOURS = _env_int("NO_SHOW_REVIEW_WINDOW_HOURS", 48)
DEFAULT_CURRENCY = os.environ.get("NO_SHOW_DEFAULT_CURRENCY", "USD")
PAGE_SIZE = _env_int("NO_SHOW_PAGE_SIZE", 100)

CRON_SECRET = (
    os.environ.get("NO_SHOW_CRON_SECRET") or os.environ.get("CRON_SECRET") or None
)
CRON_ENABLED = _env_bool("NO_SHOW_CRON_ENABLED", True)
RUN_LOCK_TTL = _env_int("NO_SHOW_RUN_LOCK_TTL", 900)  # 15 minutes
