import os
from datetime import time
from dotenv import load_dotenv

load_dotenv()

def _as_bool(v: str | None, default: bool = False) -> bool:
    if v is None:
        return default
    return v.strip().lower() in {"1", "true", "yes", "y", "on"}

def _as_time(v: str | None, default: str) -> time:
    hh, mm = (v or default).strip().split(":", 1)
    return time(int(hh), int(mm))

class Settings:
    # App
    APP_NAME: str = os.getenv("APP_NAME", "circdesk")
    ENV: str = os.getenv("ENV", "dev")
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
    PORT: int = int(os.getenv("PORT", "8000"))

    # DB
    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./circdesk.db")

    # Report snapshots
    REPORTS_DIR: str = os.getenv("REPORTS_DIR", "./reports")

    # Daemons
    ENABLE_SCHEDULER: bool = _as_bool(os.getenv("ENABLE_SCHEDULER"), True)
    REMINDER_TIME: time = _as_time(os.getenv("REMINDER_TIME"), "08:00")
    REACTIVATION_TIME: time = _as_time(os.getenv("REACTIVATION_TIME"), "00:01")
    EXPIRY_TIME: time = _as_time(os.getenv("EXPIRY_TIME"), "23:00")
    SHUTDOWN_TIMEOUT_SECONDS: int = int(os.getenv("SHUTDOWN_TIMEOUT_SECONDS", "60"))

settings = Settings()
