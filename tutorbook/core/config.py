import os

from dotenv import load_dotenv


load_dotenv()


def _get_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _get_list(value: str | None, default: list[str]) -> list[str]:
    if value is None:
        return default
    return [item.strip() for item in value.split(",") if item.strip()]

APP_ENV = os.getenv("APP_ENV", "development")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./tutorbook.db")
DATABASE_ECHO = _get_bool(os.getenv("DATABASE_ECHO"), default=False)
SQLITE_BUSY_TIMEOUT_SECONDS = float(os.getenv("SQLITE_BUSY_TIMEOUT_SECONDS", "30"))

MAX_SLOT_RANGE_DAYS = int(os.getenv("MAX_SLOT_RANGE_DAYS", "90"))
DEFAULT_SLOT_DURATION_MINUTES = int(os.getenv("DEFAULT_SLOT_DURATION_MINUTES", "60"))

MAX_SUBJECT_LENGTH = int(os.getenv("MAX_SUBJECT_LENGTH", "120"))
MAX_APPOINTMENT_NOTES_LENGTH = int(os.getenv("MAX_APPOINTMENT_NOTES_LENGTH", "600"))
MAX_CANCELLATION_NOTE_LENGTH = int(os.getenv("MAX_CANCELLATION_NOTE_LENGTH", "300"))

CONFLICT_RETRY_ATTEMPTS = int(os.getenv("CONFLICT_RETRY_ATTEMPTS", "3"))
CONFLICT_RETRY_BASE_DELAY_SECONDS = float(os.getenv("CONFLICT_RETRY_BASE_DELAY_SECONDS", "0.05"))

JWT_SECRET_KEY = os.getenv("JWT_SECRET_KEY", "change-me")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")

CORS_ALLOWED_ORIGINS = _get_list(os.getenv("CORS_ALLOWED_ORIGINS"), ["http://localhost:4200"])

def validate_runtime_config() -> None:
    if APP_ENV.lower() == "production" and JWT_SECRET_KEY == "change-me":
        raise RuntimeError("JWT_SECRET_KEY must be set in production.")
    if MAX_SLOT_RANGE_DAYS < 1:
        raise RuntimeError("MAX_SLOT_RANGE_DAYS must be at least 1.")
    if DEFAULT_SLOT_DURATION_MINUTES < 1:
        raise RuntimeError("DEFAULT_SLOT_DURATION_MINUTES must be at least 1.")
