"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Optional

from .models import DEFAULT_TIMEZONE


class EmiLedgerConfig(BaseSettings):
    """EMI ledger engine configuration"""

    # Local durable storage
    database_path: str = ":memory:"  # Set to a file path for an on-device store

    # Remote system of record
    remote_base_url: str = "http://localhost:5000/api"
    remote_timeout: float = 10.0
    remote_api_key: str = ""

    # Penalty rules
    penalty_per_day: str = "20.00"  # INR per overdue day
    penalty_cap: Optional[str] = None  # None = uncapped
    timezone: str = DEFAULT_TIMEZONE  # Civil calendar for due dates and "today"

    # Sync behaviour
    sync_backoff_base_seconds: float = 2.0
    sync_backoff_max_seconds: float = 300.0
    sync_interval_seconds: float = 60.0
    sync_on_record: bool = True

    # Alerts
    alert_limit: int = 50

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8091

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text

    class Config:
        env_prefix = "EMI_LEDGER_"
        env_file = ".env"
        case_sensitive = False


# Default configuration instance
config = EmiLedgerConfig()


def get_config() -> EmiLedgerConfig:
    """Get default configuration instance"""
    return config


def reload_config() -> EmiLedgerConfig:
    """Reload configuration from environment"""
    global config
    config = EmiLedgerConfig()
    return config
