"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional


class FundLedgerConfig(BaseSettings):
    """Fund ledger engine configuration"""

    model_config = SettingsConfigDict(
        env_prefix="FUNDLEDGER_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Database configuration
    database_url: str = "sqlite:///fund_ledger.db"  # "memory://" for in-memory storage

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout

    # Accounting rules
    currency: str = "USD"
    fiscal_year_start_month: int = 1  # 1 = calendar quarters

    # Reporting limits
    max_report_range_days: int = 36600
    cancellation_check_interval: int = 500  # records between cancellation checks

    # Feature flags
    enable_audit_logging: bool = True

    @field_validator("fiscal_year_start_month")
    @classmethod
    def _month_in_range(cls, value: int) -> int:
        if not 1 <= value <= 12:
            raise ValueError("fiscal_year_start_month must be between 1 and 12")
        return value

    @field_validator("log_format")
    @classmethod
    def _known_format(cls, value: str) -> str:
        if value not in ("json", "text"):
            raise ValueError("log_format must be 'json' or 'text'")
        return value


# Global configuration instance
config = FundLedgerConfig()


def get_config() -> FundLedgerConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> FundLedgerConfig:
    """Reload configuration from environment"""
    global config
    config = FundLedgerConfig()
    return config
