"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class ServicingConfig(BaseSettings):
    """Loan servicing engine configuration"""

    # Database configuration
    database_url: str = "sqlite:///loan_servicing.db"  # Default SQLite

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8091
    api_workers: int = 1

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout

    # Business rules configuration
    default_currency: str = "RWF"
    duplicate_payment_cooldown_seconds: int = 300  # Soft guard against double-submit
    daily_penalty_rate: str = "0"  # Per day on overdue principal+interest, "0" disables

    # Provisioning rates per classification bracket (decimal strings)
    watch_provisioning_rate: str = "0.03"        # bracket A, 1-5%
    substandard_provisioning_rate: str = "0.20"  # bracket B, 10-25%
    doubtful_provisioning_rate: str = "0.50"     # bracket C, 50%

    # Batch reclassification
    classification_workers: int = 4

    # Feature flags
    enable_audit_logging: bool = True
    enable_events: bool = True

    class Config:
        env_prefix = "LOANSVC_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = ServicingConfig()


def get_config() -> ServicingConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> ServicingConfig:
    """Reload configuration from environment"""
    global config
    config = ServicingConfig()
    return config
