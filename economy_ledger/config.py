"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based
configuration, plus loading of the currency definition file (YAML).
"""

from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml
from pydantic_settings import BaseSettings, SettingsConfigDict


class ConfigError(Exception):
    """Raised when a configuration source cannot be read or parsed"""


class LedgerSettings(BaseSettings):
    """Economy ledger configuration"""

    model_config = SettingsConfigDict(
        env_prefix="ECONOMY_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Database configuration
    database_path: str = "economy.db"
    busy_timeout_ms: int = 5000

    # Backup configuration
    backup_enabled: bool = True
    backup_dir: str = "backups"
    backup_interval_seconds: int = 3600  # Read by the host scheduler
    keep_backups: int = 5

    # Cache configuration
    cache_max_accounts: int = 1000

    # Leaderboard configuration
    baltop_entries_per_page: int = 10

    # Pay confirmation handshake
    pay_confirm_timeout_seconds: float = 60.0
    pending_sweep_interval_seconds: float = 5.0

    # Currency definitions (YAML file with a top-level "currencies" table)
    currencies_file: Optional[str] = None

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text


# Global configuration instance, created lazily so imports never read the environment
_settings: Optional[LedgerSettings] = None


def get_settings() -> LedgerSettings:
    """Get global configuration instance"""
    global _settings
    if _settings is None:
        _settings = LedgerSettings()
    return _settings


def reload_settings() -> LedgerSettings:
    """Reload configuration from environment"""
    global _settings
    _settings = LedgerSettings()
    return _settings


def load_currency_file(path: Union[str, Path]) -> Dict[str, Any]:
    """
    Read the currency table from a YAML file.

    The file may either hold the table directly or nest it under a
    ``currencies`` key, matching the layout of the host's main config.

    Raises:
        ConfigError: If the file is missing or is not valid YAML
    """
    path = Path(path)
    try:
        with path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle)
    except OSError as e:
        raise ConfigError(f"Cannot read currency file {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in currency file {path}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Currency file {path} must contain a mapping")

    currencies = data.get("currencies", data)
    if currencies is None:
        return {}
    if not isinstance(currencies, dict):
        raise ConfigError(f"'currencies' in {path} must be a mapping")
    return currencies
