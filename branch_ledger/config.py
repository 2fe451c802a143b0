"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class LedgerConfig(BaseSettings):
    """Branch ledger configuration"""

    # Storage configuration
    database_url: str = "sqlite:///branch_ledger.db"  # Use memory:// for an in-memory store
    memory_transactions: bool = True  # Whether the in-memory store offers atomic units
    force_best_effort: bool = False  # Never use session mode, even if the store supports it
    atomic_timeout_seconds: float = 5.0

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8090

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout

    # Business rules configuration
    default_commission_rate: str = "3"
    default_deposit_deduction_rate: str = "3"
    staff_reversal_window_hours: int = 24

    # Daily aggregation configuration
    aggregation_enabled: bool = True
    aggregation_hour: int = 0
    aggregation_minute: int = 0
    timezone: str = "UTC"  # Defines "local midnight" for day boundaries

    # Audit configuration
    enable_audit_logging: bool = True
    audit_queue_size: int = 1000

    class Config:
        env_prefix = "LEDGER_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = LedgerConfig()


def get_config() -> LedgerConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> LedgerConfig:
    """Reload configuration from environment"""
    global config
    config = LedgerConfig()
    return config
