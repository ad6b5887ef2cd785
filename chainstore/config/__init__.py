from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import datetime, tzinfo
from zoneinfo import ZoneInfo

from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

_TRUTHY = {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw.strip())
    except ValueError as e:
        raise RuntimeError(f"{name} must be an integer, got {raw!r}") from e


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in _TRUTHY


@dataclass(frozen=True)
class Settings:
    database_url: str | None = None

    # Lock and retry settings
    lock_timeout_ms: int = 30_000
    retry_max_attempts: int = 3
    retry_base_delay_ms: int = 100
    retry_jitter_ms: int = 100

    # Lifecycle settings
    archive_after_days: int = 7
    stale_after_days: int = 30
    timezone: str | None = None
    persist_scheduler_state: bool = False

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            database_url=os.getenv("DATABASE_URL") or None,
            lock_timeout_ms=_env_int("CHAINSTORE_LOCK_TIMEOUT_MS", 30_000),
            retry_max_attempts=_env_int("CHAINSTORE_RETRY_MAX_ATTEMPTS", 3),
            retry_base_delay_ms=_env_int("CHAINSTORE_RETRY_BASE_DELAY_MS", 100),
            retry_jitter_ms=_env_int("CHAINSTORE_RETRY_JITTER_MS", 100),
            archive_after_days=_env_int("CHAINSTORE_ARCHIVE_AFTER_DAYS", 7),
            stale_after_days=_env_int("CHAINSTORE_STALE_AFTER_DAYS", 30),
            timezone=os.getenv("CHAINSTORE_TIMEZONE") or None,
            persist_scheduler_state=_env_bool("CHAINSTORE_PERSIST_SCHEDULER_STATE", False),
        )

    def require_database_url(self) -> str:
        if not self.database_url:
            raise RuntimeError("DATABASE_URL is not set")
        return self.database_url

    def tz(self) -> tzinfo | None:
        """Zone used for "today" and the Saturday window; None means the system local zone."""
        if not self.timezone:
            return None
        return ZoneInfo(self.timezone)

    def now(self) -> datetime:
        zone = self.tz()
        if zone is None:
            return datetime.now().astimezone()
        return datetime.now(zone)


# Create a settings instance
settings = Settings.from_env()
