"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List, Optional


class LoanServicingConfig(BaseSettings):
    """Loan servicing backend configuration"""

    # Database configuration
    database_url: str = "sqlite:///loan_servicing.db"  # memory://, sqlite:///path, postgresql://...

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8090

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text

    # Business calendar. Payment dates, accrual days and billing periods
    # are all evaluated in this timezone.
    timezone: str = "Asia/Bangkok"

    # Notification milestones
    billing_days_before_due: int = 15
    warning_days_before_due: int = 3
    overdue_notification_days: List[int] = [1, 3, 7]

    # Daily job run times (HH:MM, business timezone)
    billing_job_time: str = "09:00"
    warning_job_time: str = "09:00"
    due_date_job_time: str = "08:00"
    overdue_job_time: str = "10:00"
    scheduler_enabled: bool = False

    # Messaging channel (LINE Messaging API compatible)
    messaging_api_url: str = "https://api.line.me/v2/bot"
    messaging_channel_token: str = ""  # Empty = log messages instead of sending
    messaging_timeout: float = 10.0

    # Link embedded in reminder messages
    payment_link_base_url: str = "http://localhost:3000"

    # Feature flags
    enable_audit_logging: bool = True

    model_config = SettingsConfigDict(
        env_prefix="LOANSVC_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore"
    )


# Global configuration instance
config = LoanServicingConfig()


def get_config() -> LoanServicingConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> LoanServicingConfig:
    """Reload configuration from environment"""
    global config
    config = LoanServicingConfig()
    return config
