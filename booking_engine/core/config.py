import os

from dotenv import load_dotenv


load_dotenv()


def _get_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _get_list(value: str | None, default: list[str]) -> list[str]:
    if not value:
        return default
    return [item.strip() for item in value.split(",") if item.strip()]

APP_ENV = os.getenv("APP_ENV", "development")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./booking_engine.db")

CORS_ORIGINS = _get_list(os.getenv("CORS_ORIGINS"), ["http://localhost:5173"])

JWT_SECRET_KEY = os.getenv("JWT_SECRET_KEY", "change-me")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
JWT_EXPIRES_MINUTES = int(os.getenv("JWT_EXPIRES_MINUTES", "60"))

# Booking policy
DEFAULT_DAILY_LIMIT = int(os.getenv("DEFAULT_DAILY_LIMIT", "3"))
BATCH_MAX_SIZE = int(os.getenv("BATCH_MAX_SIZE", "100"))
ADMISSION_MAX_RETRIES = int(os.getenv("ADMISSION_MAX_RETRIES", "3"))

# Traffic admission
RATE_LIMIT_ENABLED = _get_bool(os.getenv("RATE_LIMIT_ENABLED"), default=True)
RATE_LIMIT_STORAGE = os.getenv("RATE_LIMIT_STORAGE", "memory").lower()
REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")

# "log" or "redis"
NOTIFIER_BACKEND = os.getenv("NOTIFIER_BACKEND", "log").lower()
NOTIFIER_CHANNEL_PREFIX = os.getenv("NOTIFIER_CHANNEL_PREFIX", "booking")


def validate_runtime_config() -> None:
    if APP_ENV.lower() == "production" and JWT_SECRET_KEY == "change-me":
        raise RuntimeError("JWT_SECRET_KEY must be set in production.")
    if RATE_LIMIT_STORAGE not in {"memory", "redis"}:
        raise RuntimeError("RATE_LIMIT_STORAGE must be 'memory' or 'redis'.")
    if NOTIFIER_BACKEND not in {"log", "redis"}:
        raise RuntimeError("NOTIFIER_BACKEND must be 'log' or 'redis'.")
