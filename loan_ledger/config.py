"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class LedgerConfig(BaseSettings):
    """Loan ledger configuration"""

    # Storage configuration
    storage_backend: str = "sqlite"  # sqlite or memory
    database_path: str = "loan_ledger.db"

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8090

    # Security configuration
    auth_enabled: bool = True
    jwt_secret: str = "change-me-in-production"
    jwt_algorithm: str = "HS256"

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout

    # Business rules configuration
    currency: str = "ZMW"
    default_interest_rate: str = "10"
    max_interest_rate: str = "50"
    subadmin_max_loan_amount: str = ""  # Empty = no cap
    due_soon_window_days: int = 7
    max_write_retries: int = 3

    # Notification configuration
    notification_webhook_url: str = ""  # Empty = messages table and log only
    notification_webhook_timeout: float = 5.0

    # Scheduler configuration
    scheduler_enabled: bool = True
    scheduler_poll_seconds: float = 30.0
    overdue_check_hour: int = 9
    overdue_check_minute: int = 0
    reminder_weekday: int = 0  # Monday
    reminder_hour: int = 10
    reminder_minute: int = 0
    summary_day: int = 1
    summary_hour: int = 8
    summary_minute: int = 0

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
