import os
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field

from churchbooks.db.core import DATABASE_URL


def _optional_int(name: str) -> Optional[int]:
    value = os.getenv(name)
    return int(value) if value not in (None, "") else None


class Settings(BaseModel):
    """Runtime configuration, read from the environment (and a .env file when present)"""
    database_url: str = DATABASE_URL
    sql_echo: bool = False

    # Remote backend; without a URL and key the core runs local-only
    supabase_url: Optional[str] = None
    supabase_anon_key: Optional[str] = None
    supabase_access_token: Optional[str] = None
    remote_timeout_seconds: float = Field(30.0, gt=0)

    # Sync loop and retry policy
    sync_interval_seconds: float = Field(30.0, gt=0)
    sync_max_attempts: Optional[int] = Field(None, ge=1)
    sync_backoff_seconds: float = Field(0.0, ge=0)
    sync_backoff_multiplier: float = Field(1.0, ge=1)
    sync_backoff_max_seconds: float = Field(300.0, ge=0)

    # Logging
    app_log_level: str = "INFO"
    third_party_log_level: str = "WARNING"
    sync_log_level: Optional[str] = None
    log_file: Optional[str] = None

    @property
    def remote_configured(self) -> bool:
        return bool(self.supabase_url and self.supabase_anon_key)

    @classmethod
    def from_env(cls, env_file: Optional[str] = None) -> "Settings":
        load_dotenv(env_file)
        return cls(
            database_url=os.getenv("DATABASE_URL", DATABASE_URL),
            sql_echo=os.getenv("SQL_ECHO", "false").lower() == "true",
            supabase_url=os.getenv("SUPABASE_URL") or None,
            supabase_anon_key=os.getenv("SUPABASE_ANON_KEY") or None,
            supabase_access_token=os.getenv("SUPABASE_ACCESS_TOKEN") or None,
            remote_timeout_seconds=float(os.getenv("REMOTE_TIMEOUT_SECONDS", "30")),
            sync_interval_seconds=float(os.getenv("SYNC_INTERVAL_SECONDS", "30")),
            sync_max_attempts=_optional_int("SYNC_MAX_ATTEMPTS"),
            sync_backoff_seconds=float(os.getenv("SYNC_BACKOFF_SECONDS", "0")),
            sync_backoff_multiplier=float(os.getenv("SYNC_BACKOFF_MULTIPLIER", "1")),
            sync_backoff_max_seconds=float(os.getenv("SYNC_BACKOFF_MAX_SECONDS", "300")),
            app_log_level=os.getenv("APP_LOG_LEVEL", "INFO"),
            third_party_log_level=os.getenv("THIRD_PARTY_LOG_LEVEL", "WARNING"),
            sync_log_level=os.getenv("SYNC_LOG_LEVEL") or None,
            log_file=os.getenv("LOG_FILE") or None,
        )
