import os
import pathlib
from dotenv import load_dotenv
from dateutil import tz

# .env lives at the repository root
env_path = pathlib.Path(__file__).parent.parent.parent / '.env'
load_dotenv(dotenv_path=env_path)

SUPABASE_URL = os.environ.get("SUPABASE_URL", "")
SUPABASE_KEY = os.environ.get("SUPABASE_KEY", "")

ENVIRONMENT = os.environ.get("ENVIRONMENT", "production")
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
SENTRY_DSN = os.environ.get("SENTRY_DSN")

# Local timezone used to place "HH:MM" schedule times on the calendar
APP_TIMEZONE = os.environ.get("APP_TIMEZONE", "UTC")

DEFAULT_SNOOZE_MINUTES = int(os.environ.get("DEFAULT_SNOOZE_MINUTES", "10"))
ADHERENCE_WINDOW_DAYS = int(os.environ.get("ADHERENCE_WINDOW_DAYS", "7"))
STREAK_LOOKBACK_DAYS = int(os.environ.get("STREAK_LOOKBACK_DAYS", "365"))

DEV_TOKENS = ("test-token", "fake-token", "dev-token")
DEV_USER_ID = "00000000-0000-0000-0000-000000000000"

ALLOWED_ORIGINS = [
    "http://localhost:3000",
    "http://localhost:5173",
    "http://localhost:8080",
]
ALLOWED_ORIGINS.extend(
    origin.strip() for origin in os.environ.get("ALLOWED_ORIGINS", "").split(",") if origin.strip()
)


def is_development() -> bool:
    return os.environ.get("ENVIRONMENT", ENVIRONMENT) == "development"


def app_timezone():
    """tzinfo for APP_TIMEZONE, UTC when the name is unknown"""
    return tz.gettz(APP_TIMEZONE) or tz.UTC
