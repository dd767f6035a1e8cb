"""
Configuration management for the sync core.

Settings come from the [unforgotten] table of a TOML file, then
UNFORGOTTEN_* environment variables override individual values.
"""

import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import tomli
from loguru import logger

from unforgotten_sync.app.core.Sync.models import EntityType


LOG_FORMAT = ("<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | "
              "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>")


def _as_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def _as_list(value: str) -> List[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


@dataclass
class StorageConfig:
    """Where the local store lives."""
    db_path: str = str(Path.home() / ".local" / "share" / "unforgotten" / "unforgotten.db")
    client_id: str = "unforgotten-client"


@dataclass
class RemoteConfig:
    """Backend connection settings."""
    base_url: str = "http://localhost:54321"
    api_key: Optional[str] = None
    timeout: float = 30.0
    rest_path: str = "rest/v1"


@dataclass
class SyncConfig:
    entity_order: List[str] = field(default_factory=lambda: [
        EntityType.ACCOUNT.value,
        EntityType.ACCOUNT_MEMBER.value,
        EntityType.USER_PREFERENCES.value,
        EntityType.PROFILE.value,
        EntityType.PROFILE_DETAIL.value,
        EntityType.PROFILE_CONNECTION.value,
        EntityType.IMPORTANT_ACCOUNT.value,
        EntityType.MEDICATION.value,
        EntityType.MEDICATION_SCHEDULE.value,
        EntityType.MEDICATION_LOG.value,
        EntityType.APPOINTMENT.value,
        EntityType.USEFUL_CONTACT.value,
        EntityType.MOOD_ENTRY.value,
        EntityType.TODO_LIST.value,
        EntityType.TODO_ITEM.value,
        EntityType.STICKY_REMINDER.value,
        EntityType.COUNTDOWN.value,
        EntityType.RECIPE.value,
        EntityType.PLANNED_MEAL.value,
    ])
    concurrent_pulls: int = 4
    max_retries: int = 5
    poll_interval: float = 30.0  # seconds between idle outbox checks
    retry_backoff: float = 2.0
    max_backoff: float = 300.0


@dataclass
class RealtimeConfig:
    enabled: bool = True
    entity_types: List[str] = field(default_factory=lambda: [
        EntityType.APPOINTMENT.value,
        EntityType.STICKY_REMINDER.value,
        EntityType.COUNTDOWN.value,
        EntityType.PROFILE.value,
    ])
    reconnect_delay: float = 5.0
    stream_path: str = "realtime/v1/changes"


@dataclass
class LoggingConfig:
    level: str = "INFO"
    log_file: Optional[str] = None
    rotation: str = "10 MB"
    retention: str = "7 days"


@dataclass
class UnforgottenConfig:
    """Main configuration class for the sync core."""
    storage: StorageConfig = field(default_factory=StorageConfig)
    remote: RemoteConfig = field(default_factory=RemoteConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    realtime: RealtimeConfig = field(default_factory=RealtimeConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def from_toml(cls, config_path: Optional[Path] = None) -> 'UnforgottenConfig':
        """
        Load configuration from TOML file.

        Args:
            config_path: Path to config file. If None, the default locations are searched.

        Returns:
            UnforgottenConfig instance
        """
        if config_path is None:
            possible_paths = [
                Path.home() / ".config" / "unforgotten" / "config.toml",
                Path("config.toml"),
            ]
            for path in possible_paths:
                if path.exists():
                    config_path = path
                    break
            else:
                logger.warning("No config file found, using defaults")
                config = cls()
                config._apply_env_overrides()
                return config

        logger.info(f"Loading sync config from: {config_path}")

        try:
            with open(config_path, "rb") as f:
                toml_data = tomli.load(f)
        except (OSError, tomli.TOMLDecodeError) as e:
            logger.error(f"Error loading config from {config_path}: {e}")
            logger.warning("Using default configuration")
            config = cls()
            config._apply_env_overrides()
            return config

        section = toml_data.get("unforgotten", {})
        try:
            config = cls(
                storage=StorageConfig(**section.get("storage", {})),
                remote=RemoteConfig(**section.get("remote", {})),
                sync=SyncConfig(**section.get("sync", {})),
                realtime=RealtimeConfig(**section.get("realtime", {})),
                logging=LoggingConfig(**section.get("logging", {})),
            )
        except TypeError as e:
            logger.error(f"Unknown setting in {config_path}: {e}")
            logger.warning("Using default configuration")
            config = cls()

        config._apply_env_overrides()
        return config

    def _apply_env_overrides(self):
        """Apply environment variable overrides."""
        env_mappings = {
            "UNFORGOTTEN_DB_PATH": ("storage", "db_path", str),
            "UNFORGOTTEN_CLIENT_ID": ("storage", "client_id", str),
            "UNFORGOTTEN_BASE_URL": ("remote", "base_url", str),
            "UNFORGOTTEN_API_KEY": ("remote", "api_key", str),
            "UNFORGOTTEN_TIMEOUT": ("remote", "timeout", float),
            "UNFORGOTTEN_MAX_RETRIES": ("sync", "max_retries", int),
            "UNFORGOTTEN_POLL_INTERVAL": ("sync", "poll_interval", float),
            "UNFORGOTTEN_REALTIME_ENABLED": ("realtime", "enabled", _as_bool),
            "UNFORGOTTEN_REALTIME_ENTITIES": ("realtime", "entity_types", _as_list),
            "UNFORGOTTEN_LOG_LEVEL": ("logging", "level", str.upper),
            "UNFORGOTTEN_LOG_FILE": ("logging", "log_file", str),
        }

        for env_var, (section, attr, converter) in env_mappings.items():
            value = os.environ.get(env_var)
            if value is not None:
                try:
                    setattr(getattr(self, section), attr, converter(value))
                    logger.debug(f"Override from env: {env_var} -> {section}.{attr}")
                except ValueError as e:
                    logger.warning(f"Failed to apply env override {env_var}: {e}")

    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to dictionary."""
        return {
            "storage": dict(self.storage.__dict__),
            "remote": dict(self.remote.__dict__),
            "sync": dict(self.sync.__dict__),
            "realtime": dict(self.realtime.__dict__),
            "logging": dict(self.logging.__dict__),
        }

    def validate(self) -> List[str]:
        """
        Validate configuration settings.

        Returns:
            List of validation errors (empty if valid)
        """
        errors = []
        known = {e.value for e in EntityType}

        if not self.storage.db_path:
            errors.append("storage.db_path must not be empty")
        if not self.storage.client_id:
            errors.append("storage.client_id must not be empty")

        if not self.remote.base_url.startswith(("http://", "https://")):
            errors.append("remote.base_url must be an http(s) URL")
        if self.remote.timeout <= 0:
            errors.append("remote.timeout must be > 0")

        unknown = [t for t in self.sync.entity_order if t not in known]
        if unknown:
            errors.append(f"sync.entity_order has unknown entity types: {unknown}")
        if self.sync.concurrent_pulls < 1:
            errors.append("sync.concurrent_pulls must be >= 1")
        if self.sync.max_retries < 1:
            errors.append("sync.max_retries must be >= 1")
        if self.sync.poll_interval <= 0:
            errors.append("sync.poll_interval must be > 0")
        if self.sync.retry_backoff < 1:
            errors.append("sync.retry_backoff must be >= 1")

        unknown = [t for t in self.realtime.entity_types if t not in known]
        if unknown:
            errors.append(f"realtime.entity_types has unknown entity types: {unknown}")
        if self.realtime.reconnect_delay < 0:
            errors.append("realtime.reconnect_delay must be >= 0")

        if self.logging.level.upper() not in ("TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR", "CRITICAL"):
            errors.append(f"logging.level '{self.logging.level}' is not a loguru level")

        return errors


def configure_logging(level: str = "INFO", log_file: Optional[str] = None, rotation: str = "10 MB",
                      retention: str = "7 days"):
    """Replace loguru's default sink with the stderr format used across the project, plus an optional file."""
    logger.remove()
    logger.add(sys.stderr, level=level.upper(), format=LOG_FORMAT, colorize=True)
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        logger.add(log_file, level=level.upper(), format=LOG_FORMAT, rotation=rotation, retention=retention,
                   enqueue=True)
    logger.info(f"Loguru logger configured at level {level.upper()}")
