import os
from dataclasses import dataclass
from datetime import datetime

import pytz
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

# Check if running in pytest
TESTING = "PYTEST_CURRENT_TEST" in os.environ or os.getenv("TESTING", "False").lower() in ["true", "1", "yes"]

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# Admin/webhook API
WEBAPP_HOST = os.getenv("WEBAPP_HOST", "0.0.0.0")
WEBAPP_PORT = int(os.getenv("WEBAPP_PORT", os.getenv("PORT", "8000")))
ADMIN_API_TOKEN = os.getenv("ADMIN_API_TOKEN", "test_admin_token" if TESTING else None)
LESSON_WEBHOOK_SECRET = os.getenv("LESSON_WEBHOOK_SECRET", "webhook_secret" if TESTING else "")
WEBHOOK_RATE_LIMIT = int(os.getenv("WEBHOOK_RATE_LIMIT", "30"))  # Requests per 10 seconds

# Database configuration
DB_HOST = os.getenv("DB_HOST", "localhost")
DB_PORT = int(os.getenv("DB_PORT", "5432"))
DB_NAME = os.getenv("DB_NAME", "tutorpay_test" if TESTING else "tutorpay")
DB_USER = os.getenv("DB_USER", "postgres")
DB_PASSWORD = os.getenv("DB_PASSWORD", "")

DB_URL = os.getenv("DATABASE_URL", f"postgres://{DB_USER}:{DB_PASSWORD}@{DB_HOST}:{DB_PORT}/{DB_NAME}")
if TESTING:
    # Use SQLite in-memory for testing
    DB_URL = "sqlite://:memory:"

TORTOISE_ORM = {
    "connections": {"default": DB_URL},
    "apps": {
        "models": {
            "models": ["tutorpay.models", "aerich.models"],
            "default_connection": "default",
        },
    },
    "use_tz": True,
    "timezone": "UTC",
}

# Telegram notifications
BOT_TOKEN = os.getenv("BOT_TOKEN", "")
ADMIN_CHAT_ID = os.getenv("ADMIN_CHAT_ID", "12345" if TESTING else None)

# Payment rail configuration
PAYMENT_RAIL_URL = os.getenv("PAYMENT_RAIL_URL", "https://test-rail.example" if TESTING else "")
PAYMENT_RAIL_API_KEY = os.getenv("PAYMENT_RAIL_API_KEY", "test_api_key" if TESTING else "")
PAYMENT_RAIL_TIMEOUT = float(os.getenv("PAYMENT_RAIL_TIMEOUT", "30"))

# Ledger behaviour
HOLD_PERIOD_DAYS = int(os.getenv("HOLD_PERIOD_DAYS", "7"))
MIN_STUDENTS_FOR_RETENTION = int(os.getenv("MIN_STUDENTS_FOR_RETENTION", "5"))
DEFAULT_CURRENCY = os.getenv("DEFAULT_CURRENCY", "gbp")
PAYOUT_CONCURRENCY = int(os.getenv("PAYOUT_CONCURRENCY", "1"))
STALE_BATCH_MINUTES = int(os.getenv("STALE_BATCH_MINUTES", "60"))
AUTO_DEMOTION_ENABLED = os.getenv("AUTO_DEMOTION_ENABLED", "True").lower() in ["true", "1", "yes"]

# Scheduler intervals (seconds)
CLEARING_INTERVAL = int(os.getenv("CLEARING_INTERVAL", "900"))
SETTLEMENT_INTERVAL = int(os.getenv("SETTLEMENT_INTERVAL", "86400"))
NOTIFICATION_INTERVAL = int(os.getenv("NOTIFICATION_INTERVAL", "60"))
STALE_BATCH_INTERVAL = int(os.getenv("STALE_BATCH_INTERVAL", "3600"))

UTC = pytz.utc


def get_current_time() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(UTC)


@dataclass(frozen=True)
class LedgerSettings:
    """Tunables passed explicitly into the ledger, payout and tier components."""

    hold_period_days: int = 7
    min_students_for_retention: int = 5
    currency: str = "gbp"
    transfer_timeout_seconds: float = 30.0
    payout_concurrency: int = 1
    stale_batch_minutes: int = 60
    auto_demotion_enabled: bool = True


def load_settings() -> LedgerSettings:
    """Build ledger settings from the environment."""
    return LedgerSettings(
        hold_period_days=HOLD_PERIOD_DAYS,
        min_students_for_retention=MIN_STUDENTS_FOR_RETENTION,
        currency=DEFAULT_CURRENCY,
        transfer_timeout_seconds=PAYMENT_RAIL_TIMEOUT,
        payout_concurrency=max(1, PAYOUT_CONCURRENCY),
        stale_batch_minutes=STALE_BATCH_MINUTES,
        auto_demotion_enabled=AUTO_DEMOTION_ENABLED,
    )
