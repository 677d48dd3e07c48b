"""Engine and transaction tuning for the cache database.

Every value can be overridden with a ``MAILMIRROR_DB_<NAME>`` environment
variable, e.g. ``MAILMIRROR_DB_ECHO=true`` to log SQL.
"""

import os
from dataclasses import dataclass, field
from typing import Callable, Optional, TypeVar

T = TypeVar("T")


def _flag(raw: str) -> bool:
    return raw.strip().lower() in ("1", "true", "yes")


def _env(name: str, default: str, cast: Callable[[str], T]) -> Callable[[], T]:
    return lambda: cast(os.getenv(f"MAILMIRROR_DB_{name}", default))


@dataclass
class DatabaseConfig:
    pool_size: int = field(default_factory=_env("POOL_SIZE", "5", int))
    max_overflow: int = field(default_factory=_env("MAX_OVERFLOW", "10", int))
    pool_timeout: float = field(default_factory=_env("POOL_TIMEOUT", "30", float))
    pool_recycle: int = field(default_factory=_env("POOL_RECYCLE", "3600", int))

    # SQLite busy timeout and the limit on one transaction, in seconds
    query_timeout: float = field(default_factory=_env("QUERY_TIMEOUT", "30", float))
    transaction_timeout: float = field(
        default_factory=_env("TRANSACTION_TIMEOUT", "60", float)
    )

    echo: bool = field(default_factory=_env("ECHO", "false", _flag))
    log_slow_queries: bool = field(default_factory=_env("LOG_SLOW_QUERIES", "true", _flag))
    slow_query_threshold: float = field(
        default_factory=_env("SLOW_QUERY_THRESHOLD", "1.0", float)
    )

    def __post_init__(self):
        if self.pool_size < 1:
            raise ValueError("pool_size must be >= 1")
        if self.max_overflow < 0:
            raise ValueError("max_overflow must be >= 0")
        for name in ("pool_timeout", "query_timeout", "transaction_timeout"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be > 0")


_config: Optional[DatabaseConfig] = None


def get_config() -> DatabaseConfig:
    global _config
    if _config is None:
        _config = DatabaseConfig()
    return _config


def reset_config() -> None:
    """Drop the cached config so the environment is read again (tests)."""
    global _config
    _config = None
