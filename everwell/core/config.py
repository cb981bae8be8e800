import os
from pathlib import Path
from typing import Optional

APP_NAME = "EverWell"
DEFAULT_OPENAI_MODEL = "gpt-4o-mini"
DEFAULT_OPENAI_BASE_URL = "https://api.openai.com/v1"

INSIGHTS_DAILY_LIMIT = int(os.getenv("INSIGHTS_DAILY_LIMIT", "5"))
INSIGHTS_CACHE_TTL_HOURS = float(os.getenv("INSIGHTS_CACHE_TTL_HOURS", "24"))
INSIGHTS_CACHE_RETENTION_DAYS = 7
INSIGHTS_MIN_DAYS = 5
INSIGHTS_WINDOW_DAYS = 30

ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "60"))


# Presence checks are read at call time so feature gates follow the live environment.
def openai_api_key() -> Optional[str]:
    value = os.getenv("OPENAI_API_KEY", "").strip()
    return value or None


def openai_model() -> str:
    return os.getenv("OPENAI_MODEL", "").strip() or DEFAULT_OPENAI_MODEL


def openai_base_url() -> str:
    return (os.getenv("OPENAI_BASE_URL", "").strip() or DEFAULT_OPENAI_BASE_URL).rstrip("/")


def secret_key() -> str:
    return os.getenv("SECRET_KEY", "").strip() or "dev-secret-change-me"


def cron_secret() -> Optional[str]:
    value = os.getenv("CRON_SECRET", "").strip()
    return value or None


def resend_api_key() -> Optional[str]:
    value = os.getenv("RESEND_API_KEY", "").strip()
    return value or None


def email_from() -> str:
    return os.getenv("EMAIL_FROM", "").strip() or "EverWell <noreply@everwell.com>"


def app_base_url() -> str:
    return (os.getenv("APP_BASE_URL", "").strip() or "http://localhost:8000").rstrip("/")


def is_development() -> bool:
    return os.getenv("APP_ENV", "development").strip().lower() == "development"


def avatar_dir() -> Path:
    raw = os.getenv("AVATAR_DIR", "").strip() or "./data/avatars"
    path = Path(raw).expanduser().resolve()
    path.mkdir(parents=True, exist_ok=True)
    return path
