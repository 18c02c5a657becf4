"""
Configuration management for composewatch.

This module provides configuration file support with YAML format and
default settings for discovery, update checks and logging.

Features:
- YAML configuration file at ~/.config/composewatch/config.yaml
  (overridable with $COMPOSEWATCH_CONFIG)
- Default values with user overrides
- Runtime-overridable app settings (check interval)

Architecture:
- ConfigManager: Main configuration interface
- Merges user config with defaults
- Provides typed access to settings
- Handles missing/invalid config gracefully
"""

import os
import logging
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol

import yaml

logger = logging.getLogger(__name__)

CHECK_INTERVAL_SETTING_KEY = "ProjectUpdateCheckIntervalMinutes"
MIN_CHECK_INTERVAL_MINUTES = 5


@dataclass
class DiscoveryConfig:
    """Compose file discovery settings."""
    root_path: str = "/app/compose-files"
    scan_depth_limit: int = 5
    max_file_size_kb: int = 1024
    # Host directory bind-mounted at root_path, e.g. /home/me/stacks
    host_path_mapping: Optional[str] = None
    cache_duration_seconds: int = 10


@dataclass
class UpdateCheckConfig:
    """Registry update check settings."""
    enabled: bool = True
    cache_duration_minutes: int = 60
    max_concurrent_checks: int = 5
    timeout_seconds: int = 30
    excluded_images: List[str] = field(default_factory=list)
    excluded_projects: List[str] = field(default_factory=list)
    check_interval_minutes: int = 10
    startup_delay_seconds: int = 10


@dataclass
class LogConfig:
    """Logging configuration."""
    level: str = "INFO"
    file_path: Optional[str] = None  # None for default
    max_size_mb: int = 10
    backup_count: int = 5


@dataclass
class AppConfig:
    """Main application configuration."""
    discovery: DiscoveryConfig = field(default_factory=DiscoveryConfig)
    update_check: UpdateCheckConfig = field(default_factory=UpdateCheckConfig)
    logging: LogConfig = field(default_factory=LogConfig)


class SettingsStore(Protocol):
    """Persistent key/value app settings owned by the storage layer."""

    def get(self, key: str) -> Optional[str]:
        ...


class InMemorySettingsStore:
    """Dict-backed SettingsStore."""

    def __init__(self, values: Optional[Dict[str, str]] = None):
        self._values: Dict[str, str] = dict(values or {})

    def get(self, key: str) -> Optional[str]:
        return self._values.get(key)

    def set(self, key: str, value: str) -> None:
        self._values[key] = value


def default_config_path() -> Path:
    env_path = os.environ.get("COMPOSEWATCH_CONFIG", "").strip()
    if env_path:
        return Path(env_path).expanduser()
    return Path.home() / ".config" / "composewatch" / "config.yaml"


class ConfigManager:
    """Configuration manager with YAML file support."""

    def __init__(self, config_file: Optional[str] = None):
        self.config_file = Path(config_file) if config_file else default_config_path()
        self._config: AppConfig = AppConfig()
        self.load_config()

    def load_config(self) -> None:
        """Load configuration from YAML file."""
        try:
            if self.config_file.exists():
                with open(self.config_file, 'r') as f:
                    user_config = yaml.safe_load(f) or {}
                if not isinstance(user_config, dict):
                    raise ValueError("top-level YAML value must be a mapping")
                self._config = self._merge_configs(AppConfig(), user_config)
                logger.debug(f"Loaded configuration from {self.config_file}")
            else:
                self._config = AppConfig()
                logger.debug(f"No configuration at {self.config_file}, using defaults")
        except Exception as e:
            logger.error(f"Failed to load config: {e}, using defaults")
            self._config = AppConfig()

    def save_config(self) -> None:
        """Save current configuration to YAML file."""
        try:
            self.config_file.parent.mkdir(parents=True, exist_ok=True)
            with open(self.config_file, 'w') as f:
                yaml.safe_dump(asdict(self._config), f, default_flow_style=False, indent=2)
            logger.debug(f"Saved configuration to {self.config_file}")
        except Exception as e:
            logger.error(f"Failed to save config: {e}")

    def get_config(self) -> AppConfig:
        """Get current configuration."""
        return self._config

    def _merge_configs(self, default: AppConfig, user: Dict[str, Any]) -> AppConfig:
        """Merge user config with defaults."""
        if isinstance(user.get('discovery'), dict):
            self._merge_dataclass(default.discovery, user['discovery'])
        if isinstance(user.get('update_check'), dict):
            self._merge_dataclass(default.update_check, user['update_check'])
        if isinstance(user.get('logging'), dict):
            self._merge_dataclass(default.logging, user['logging'])
        return default

    def _merge_dataclass(self, obj: Any, updates: Dict[str, Any]) -> None:
        """Merge updates into dataclass object, ignoring unknown keys."""
        known = {f.name for f in fields(obj)}
        for key, value in updates.items():
            if key in known:
                setattr(obj, key, value)
            else:
                logger.warning(f"Ignoring unknown config key '{key}' in {type(obj).__name__}")

    def get_log_level(self) -> str:
        """Get configured log level."""
        return self._config.logging.level.upper()

    def get_check_interval_minutes(self, settings: Optional[SettingsStore] = None) -> int:
        """Periodic check interval, preferring a valid app setting override."""
        if settings is not None:
            try:
                raw = settings.get(CHECK_INTERVAL_SETTING_KEY)
                if raw is not None:
                    interval = int(raw)
                    if interval >= MIN_CHECK_INTERVAL_MINUTES:
                        return interval
                    logger.debug(f"Ignoring check interval override {interval} (< {MIN_CHECK_INTERVAL_MINUTES})")
            except (TypeError, ValueError) as e:
                logger.warning(f"Invalid check interval setting: {e}")
            except Exception as e:
                logger.warning(f"Failed to read check interval setting, using config default: {e}")
        return self._config.update_check.check_interval_minutes
