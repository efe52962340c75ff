"""
Configuration Management Module

Centralized configuration using pydantic-settings. Every value can be
overridden with a LOAN_ENGINE_* environment variable or a .env file.
"""

from decimal import Decimal
from enum import Enum
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class OverpaymentPolicy(str, Enum):
    """What happens to money left over after principal is fully covered"""
    REJECT = "reject"
    REFUND = "refund"
    CREDIT = "credit"


class LoanEngineConfig(BaseSettings):
    """Loan engine configuration"""

    model_config = SettingsConfigDict(
        env_prefix="LOAN_ENGINE_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Currency
    currency: str = "NGN"

    # Calculator limits
    max_principal: Decimal = Decimal("100000000")
    max_annual_rate: Decimal = Decimal("100")
    max_term_months: int = 360

    # Repayment rules
    rounding_tolerance: Decimal = Decimal("0.01")
    overpayment_policy: OverpaymentPolicy = OverpaymentPolicy.REJECT

    # Delinquency rules
    penalty_daily_rate_pct: Decimal = Decimal("0.1")

    # Monthly threshold rules
    default_monthly_threshold: Decimal = Decimal("3000000")
    threshold_search_months: int = Field(default=12, ge=1, le=120)
    threshold_warning_pct: Decimal = Decimal("75")
    threshold_critical_pct: Decimal = Decimal("90")

    # Loan register
    serial_prefix: str = "LH"

    # Database configuration
    database_url: str = "sqlite:///loan_engine.db"

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text

    # Notification webhook (empty = disabled)
    webhook_url: str = ""
    webhook_timeout: float = 5.0
    webhook_secret: Optional[str] = None

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8090

    @field_validator("log_format")
    @classmethod
    def _check_log_format(cls, value: str) -> str:
        value = value.lower()
        if value not in ("json", "text"):
            raise ValueError("log_format must be 'json' or 'text'")
        return value

    @field_validator("currency")
    @classmethod
    def _check_currency(cls, value: str) -> str:
        return value.upper()

    @property
    def sqlite_path(self) -> str:
        """Filesystem path for sqlite:/// URLs, ':memory:' otherwise"""
        prefix = "sqlite:///"
        if self.database_url.startswith(prefix):
            return self.database_url[len(prefix):] or ":memory:"
        return ":memory:"


# Global configuration instance
config = LoanEngineConfig()


def get_config() -> LoanEngineConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> LoanEngineConfig:
    """Reload configuration from environment"""
    global config
    config = LoanEngineConfig()
    return config
