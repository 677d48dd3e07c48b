"""Logging for mailmirror.

Everything logs under the ``mailmirror`` logger. Warnings and above go to a
rich console handler; the full debug stream goes to ``app.log`` as JSON lines
and records emitted through :func:`log_event` are also written to
``events.log``. OAuth secrets are masked before any handler sees them.
"""

import json
import logging
import re
import time
from datetime import datetime, timezone
from functools import wraps
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, Optional

from rich.logging import RichHandler

from .paths import LOGS_DIR

ROOT_LOGGER_NAME = "mailmirror"

APP_LOG_MAX_BYTES = 5_242_880
EVENT_LOG_MAX_BYTES = 2_048_000


class JSONFormatter(logging.Formatter):
    """One JSON object per record."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "function": record.funcName,
            "line": record.lineno,
            "message": record.getMessage(),
        }

        event_type = getattr(record, "event_type", None)
        if event_type is not None:
            entry["event_type"] = event_type
            entry["context"] = getattr(record, "context", {})

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)


## Secret masking


class TokenMasker:
    """Redacts OAuth tokens, client secrets and bearer headers."""

    REDACTED = "[REDACTED]"

    SECRET_FIELDS = frozenset(
        {
            "access_token",
            "refresh_token",
            "client_secret",
            "authorization",
            "code",
            "token",
        }
    )

    _assignment = re.compile(
        r'((?:access_token|refresh_token|client_secret|code)["\']?\s*[:=]\s*["\']?)'
        r'([^"\'&}\s,]+)',
        re.IGNORECASE,
    )
    _bearer = re.compile(r"(bearer\s+)([A-Za-z0-9._\-~+/]+=*)", re.IGNORECASE)

    def mask_string(self, text: str) -> str:
        text = self._assignment.sub(lambda m: m.group(1) + self.REDACTED, text)
        return self._bearer.sub(lambda m: m.group(1) + self.REDACTED, text)

    def mask_dict(self, data: Dict[str, Any]) -> Dict[str, Any]:
        masked = {}
        for key, value in data.items():
            if str(key).lower() in self.SECRET_FIELDS:
                masked[key] = self.REDACTED
            elif isinstance(value, dict):
                masked[key] = self.mask_dict(value)
            elif isinstance(value, str):
                masked[key] = self.mask_string(value)
            else:
                masked[key] = value
        return masked


class SecretFilter(logging.Filter):
    def __init__(self):
        super().__init__()
        self.masker = TokenMasker()

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str):
            record.msg = self.masker.mask_string(record.msg)

        context = getattr(record, "context", None)
        if isinstance(context, dict):
            record.context = self.masker.mask_dict(context)

        return True


## Log manager


class LogManager:
    """Owns the handlers attached to the ``mailmirror`` logger."""

    def __init__(
        self,
        log_level: str = "DEBUG",
        console_level: str = "WARNING",
        log_dir: Optional[Path] = None,
    ):
        self.root_logger = logging.getLogger(ROOT_LOGGER_NAME)
        self.root_logger.setLevel(_level(log_level))
        self.root_logger.propagate = False
        self.log_dir = log_dir or LOGS_DIR
        self._setup_handlers(_level(console_level))

    def _setup_handlers(self, console_level: int) -> None:
        from .errors import FileSystemError

        secret_filter = SecretFilter()

        for handler in list(self.root_logger.handlers):
            self.root_logger.removeHandler(handler)
            handler.close()

        console_handler = RichHandler(show_path=False, markup=False, rich_tracebacks=True)
        console_handler.setLevel(console_level)
        console_handler.setFormatter(logging.Formatter("%(message)s", datefmt="[%X]"))
        console_handler.addFilter(secret_filter)
        self.root_logger.addHandler(console_handler)

        try:
            self.log_dir.mkdir(parents=True, exist_ok=True)
            app_handler = RotatingFileHandler(
                self.log_dir / "app.log",
                maxBytes=APP_LOG_MAX_BYTES,
                backupCount=5,
                encoding="utf-8",
            )
            event_handler = RotatingFileHandler(
                self.log_dir / "events.log",
                maxBytes=EVENT_LOG_MAX_BYTES,
                backupCount=3,
                encoding="utf-8",
            )
        except OSError as e:
            raise FileSystemError(
                f"Failed to open log files in {self.log_dir}: {e}"
            ) from e

        app_handler.setLevel(logging.DEBUG)
        app_handler.setFormatter(JSONFormatter())
        app_handler.addFilter(secret_filter)

        event_handler.setLevel(logging.INFO)
        event_handler.setFormatter(JSONFormatter())
        event_handler.addFilter(lambda record: hasattr(record, "event_type"))
        event_handler.addFilter(secret_filter)

        self.root_logger.addHandler(app_handler)
        self.root_logger.addHandler(event_handler)

    def get_logger(self, name: Optional[str] = None) -> logging.Logger:
        if not name or name == ROOT_LOGGER_NAME:
            return self.root_logger
        if name.startswith(f"{ROOT_LOGGER_NAME}."):
            return logging.getLogger(name)
        return logging.getLogger(f"{ROOT_LOGGER_NAME}.{name}")

    def set_levels(self, log_level: str, console_level: str) -> None:
        """Apply levels from configuration at runtime."""
        self.root_logger.setLevel(_level(log_level))
        for handler in self.root_logger.handlers:
            if isinstance(handler, RichHandler):
                handler.setLevel(_level(console_level))

    def log_event(self, event_type: str, message: str, level: str = "INFO", **context):
        self.root_logger.log(
            _level(level),
            message,
            extra={"event_type": event_type, "context": context},
        )


def _level(name: str) -> int:
    level = logging.getLevelName(name.upper())
    if not isinstance(level, int):
        raise ValueError(f"Invalid logging level: {name}")
    return level


## Decorators


def log_call(func):
    """Log entry, exit and duration of a function at debug level."""

    @wraps(func)
    def wrapper(*args, **kwargs):
        logger = logging.getLogger(func.__module__)
        started = time.perf_counter()
        logger.debug(f"-> {func.__qualname__}")
        try:
            result = func(*args, **kwargs)
        except Exception as e:
            logger.debug(
                f"<- {func.__qualname__} failed after {time.perf_counter() - started:.3f}s: {e}"
            )
            raise
        logger.debug(f"<- {func.__qualname__} ({time.perf_counter() - started:.3f}s)")
        return result

    return wrapper


def async_log_call(func):
    """Coroutine version of :func:`log_call`."""

    @wraps(func)
    async def wrapper(*args, **kwargs):
        logger = logging.getLogger(func.__module__)
        started = time.perf_counter()
        logger.debug(f"-> {func.__qualname__}")
        try:
            result = await func(*args, **kwargs)
        except Exception as e:
            logger.debug(
                f"<- {func.__qualname__} failed after {time.perf_counter() - started:.3f}s: {e}"
            )
            raise
        logger.debug(f"<- {func.__qualname__} ({time.perf_counter() - started:.3f}s)")
        return result

    return wrapper


## Module-level helpers

_log_manager: Optional[LogManager] = None


def init_logging(log_level: str = "DEBUG", console_level: str = "WARNING") -> LogManager:
    global _log_manager

    if _log_manager is None:
        _log_manager = LogManager(log_level, console_level)

    return _log_manager


def configure_logging(config) -> LogManager:
    """Apply a ``LoggingConfig`` to the running log manager."""
    manager = init_logging()
    manager.set_levels(config.log_level, config.console_level)
    return manager


def get_logger(name: Optional[str] = None) -> logging.Logger:
    return init_logging().get_logger(name)


def log_event(event_type: str, message: str, level: str = "INFO", **context) -> None:
    """Log a structured event; it also lands in ``events.log``."""
    init_logging().log_event(event_type, message, level=level, **context)
