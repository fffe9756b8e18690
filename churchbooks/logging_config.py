"""
Logging for the churchbooks sync core.

Every module logs under the ``churchbooks`` namespace. The sync path (engine,
remote client, mutation queue and connectivity monitor) can be turned up on
its own with ``SYNC_LOG_LEVEL`` while the rest of the app stays at
``APP_LOG_LEVEL``. Supabase keys never reach the log output.
"""

import logging
import logging.handlers
import os
import sys
from pathlib import Path
from typing import Iterable, List, Optional


APP_LOGGER_NAME = "churchbooks"

SYNC_ENGINE_LOGGER = f"{APP_LOGGER_NAME}.services.sync_engine"
REMOTE_LOGGER = f"{APP_LOGGER_NAME}.services.remote"
QUEUE_LOGGER = f"{APP_LOGGER_NAME}.crud.crud_sync_queue"
CONNECTIVITY_LOGGER = f"{APP_LOGGER_NAME}.services.connectivity"
SYNC_LOGGERS = (SYNC_ENGINE_LOGGER, REMOTE_LOGGER, QUEUE_LOGGER, CONNECTIVITY_LOGGER)

# Libraries that do I/O on behalf of the sync core
THIRD_PARTY_LOGGERS = (
    "sqlalchemy.engine",
    "sqlalchemy.pool",
    "httpx",
    "httpcore",
    "uvicorn.access",
    "uvicorn.error",
    "faker",
)

LOG_FORMAT = "%(asctime)s - %(component)s - %(levelname)s - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


class ComponentFormatter(logging.Formatter):
    """Shows `services.sync_engine` instead of the full `churchbooks.services.sync_engine`"""

    def format(self, record: logging.LogRecord) -> str:
        prefix = f"{APP_LOGGER_NAME}."
        record.component = record.name[len(prefix):] if record.name.startswith(prefix) else record.name
        return super().format(record)


class RedactSecretsFilter(logging.Filter):
    """Replaces API keys and access tokens in formatted messages"""

    def __init__(self, secrets: Iterable[Optional[str]]):
        super().__init__()
        self.secrets = [secret for secret in secrets if secret]

    def filter(self, record: logging.LogRecord) -> bool:
        if not self.secrets:
            return True
        message = record.getMessage()
        redacted = message
        for secret in self.secrets:
            redacted = redacted.replace(secret, "***")
        if redacted != message:
            record.msg = redacted
            record.args = None
        return True


def _level(name: Optional[str], default: int) -> int:
    if not name:
        return default
    return getattr(logging, name.upper(), default)


def setup_logging(
    app_log_level: Optional[str] = None,
    third_party_log_level: Optional[str] = None,
    log_file: Optional[str] = None,
    sync_log_level: Optional[str] = None,
    secrets: Iterable[Optional[str]] = (),
    max_file_size: int = 10 * 1024 * 1024,  # 10MB
    backup_count: int = 5,
) -> logging.Logger:
    """
    Configure the `churchbooks` logger tree.

    Args:
        app_log_level: Level for application logs (default: INFO)
        third_party_log_level: Level for SQLAlchemy, httpx, uvicorn and Faker (default: WARNING)
        log_file: Optional rotating log file; console only when None
        sync_log_level: Level for the sync engine, remote client, queue and
            connectivity loggers; they follow `app_log_level` when None
        secrets: Values to mask in every message, e.g. the Supabase keys
        max_file_size: Size in bytes before the log file rotates
        backup_count: Number of rotated files to keep

    Returns:
        The `churchbooks` root logger
    """
    app_level = _level(app_log_level or os.getenv("APP_LOG_LEVEL"), logging.INFO)
    third_party_level = _level(third_party_log_level or os.getenv("THIRD_PARTY_LOG_LEVEL"), logging.WARNING)
    sync_level = _level(sync_log_level or os.getenv("SYNC_LOG_LEVEL"), logging.NOTSET)
    log_file = log_file or os.getenv("LOG_FILE")

    app_logger = logging.getLogger(APP_LOGGER_NAME)
    app_logger.setLevel(app_level)
    app_logger.handlers.clear()

    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.handlers.RotatingFileHandler(
            log_file,
            maxBytes=max_file_size,
            backupCount=backup_count
        ))

    formatter = ComponentFormatter(fmt=LOG_FORMAT, datefmt=DATE_FORMAT)
    redact = RedactSecretsFilter(secrets)
    for handler in handlers:
        # Handlers pass everything; levels are decided per logger
        handler.setLevel(logging.NOTSET)
        handler.setFormatter(formatter)
        handler.addFilter(redact)
        app_logger.addHandler(handler)

    # NOTSET makes a sync logger inherit the app level again
    for logger_name in SYNC_LOGGERS:
        logging.getLogger(logger_name).setLevel(sync_level)

    for logger_name in THIRD_PARTY_LOGGERS:
        logging.getLogger(logger_name).setLevel(third_party_level)

    app_logger.propagate = False
    return app_logger


def setup_logging_from_settings(settings) -> logging.Logger:
    """Configure logging from a `churchbooks.config.Settings`"""
    return setup_logging(
        app_log_level=settings.app_log_level,
        third_party_log_level=settings.third_party_log_level,
        log_file=settings.log_file,
        sync_log_level=settings.sync_log_level,
        secrets=(settings.supabase_anon_key, settings.supabase_access_token),
    )


def get_logger(name: str = APP_LOGGER_NAME) -> logging.Logger:
    """Logger for a module, placed under the `churchbooks` namespace"""
    if name == APP_LOGGER_NAME or name.startswith(f"{APP_LOGGER_NAME}."):
        return logging.getLogger(name)
    return logging.getLogger(f"{APP_LOGGER_NAME}.{name}")
