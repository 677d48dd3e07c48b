"""Configuration manager for persistent settings stored as JSON."""

import json
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, Field

from .errors import (
    ConfigurationError,
    FileSystemError,
    InvalidConfigError,
    MailMirrorError,
    MissingConfigError,
)
from .logging import get_logger, log_call
from .paths import CLIENT_SECRET_PATH, CONFIG_PATH, DATABASE_PATH

logger = get_logger(__name__)


class AccountConfig(BaseModel):
    """Pydantic model for the remote mailbox account."""

    api_base_url: str = "https://gmail.googleapis.com/gmail/v1"
    token_uri: str = "https://oauth2.googleapis.com/token"
    user_id: str = "me"
    scopes: list[str] = Field(default_factory=lambda: ["https://mail.google.com/"])
    client_secret_path: str = str(CLIENT_SECRET_PATH)
    keyring_service: str = "mailmirror-credentials"
    request_timeout: float = 30.0  # in seconds


class SyncConfig(BaseModel):
    """Pydantic model for sync cadence and retry policy."""

    auto_sync: bool = True
    interval_seconds: int = 300
    backoff_base_seconds: float = 2.0
    backoff_factor: float = 2.0
    backoff_cap_seconds: float = 300.0
    token_safety_margin_seconds: int = 60
    page_size: int = 100
    full_sync_limit: int = 500


class LoggingConfig(BaseModel):
    """Pydantic model for logging settings."""

    log_level: str = "INFO"
    console_level: str = "WARNING"


class DatabaseConfig(BaseModel):
    """Pydantic model for database settings."""

    database_path: str = str(DATABASE_PATH)


class AppConfig(BaseModel):
    """Pydantic model for overall application configuration."""

    version: str = "0.1.0"
    account: AccountConfig = Field(default_factory=AccountConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)


class ConfigManager:
    """Manages persistent application configuration."""

    _instance = None
    _initialised = False

    def __new__(cls, *args, **kwargs):
        if cls._instance is None:
            cls._instance = super(ConfigManager, cls).__new__(cls)
        return cls._instance

    def __init__(self, config_path: Optional[Path] = None):
        if not ConfigManager._initialised:
            self.path = Path(config_path or CONFIG_PATH)
            self.config = self._load_or_create_config()
            logger.info(f"Configuration loaded from {self.path}")
            ConfigManager._initialised = True

    @classmethod
    def reset_instance(cls) -> None:
        """Forget the singleton so the next call reloads from disk (tests)."""
        cls._instance = None
        cls._initialised = False

    def _load_or_create_config(self) -> AppConfig:
        """Load configuration from file or create default if not present."""

        from pydantic import ValidationError

        if not self.path.exists():
            logger.info("No config file found, creating default configuration.")
            config = AppConfig()
            self._save_config(config)
            return config

        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
            config = AppConfig(**data)
            logger.debug("Configuration successfully loaded and validated.")
            return config

        except json.JSONDecodeError as e:
            logger.error(f"Failed to parse config file: {e}")
            raise InvalidConfigError(
                f"Configuration file is not valid JSON: {str(e)}"
            ) from e
        except ValidationError as e:
            logger.error(f"Failed to validate config file: {e}")
            raise InvalidConfigError(
                f"Configuration data does not match expected schema: {str(e)}"
            ) from e
        except OSError as e:
            raise FileSystemError(f"Failed to read configuration file: {self.path}") from e

    def _save_config(self, config: Optional[AppConfig] = None):
        """Save the current configuration to file."""

        config = config or self.config

        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, "w", encoding="utf-8") as f:
                json.dump(config.model_dump(), f, indent=2, ensure_ascii=False)
            logger.debug("Configuration successfully saved.")
        except OSError as e:
            raise FileSystemError(f"Failed to write configuration file: {str(e)}") from e

    @log_call
    def set_config(self, key_path: str, value: Any, persist: bool = True):
        """Set a configuration value using dot-separated key path."""

        try:
            keys = key_path.split(".")
            obj = self.config

            for key in keys[:-1]:
                if not hasattr(obj, key):
                    raise MissingConfigError(
                        f"Configuration path '{key_path}' is invalid: '{key}' not found"
                    )
                obj = getattr(obj, key)

            if not hasattr(obj, keys[-1]):
                raise MissingConfigError(
                    f"Configuration key '{keys[-1]}' does not exist in path '{key_path}'"
                )

            setattr(obj, keys[-1], value)

            if persist:
                self._save_config()

            logger.info(f"Config key '{key_path}' updated.")

        except MailMirrorError:
            raise
        except Exception as e:
            raise ConfigurationError(
                f"Failed to set configuration key '{key_path}': {str(e)}"
            ) from e

    @log_call
    def reset_to_defaults(self):
        """Reset configuration to default values."""

        logger.warning("Resetting configuration to default values.")
        self.config = AppConfig()
        self._save_config()

    @log_call
    def backup_config(self) -> Path:
        """Create a backup of the current configuration file."""

        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        backup_path = self.path.with_name(f"config_backup_{timestamp}.json")

        try:
            with open(backup_path, "w", encoding="utf-8") as f:
                json.dump(self.config.model_dump(), f, indent=2)
        except OSError as e:
            raise FileSystemError(f"Failed to write backup file: {str(e)}") from e

        logger.info(f"Configuration backup created at {backup_path}")
        return backup_path
