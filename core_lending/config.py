"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings


class LendingConfig(BaseSettings):
    """Lending system configuration"""

    # Storage configuration
    storage_backend: str = "sqlite"  # sqlite or memory
    sqlite_path: str = "lending.db"

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 5000
    api_reload: bool = False

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text

    # Business rules configuration
    payment_max_retries: int = 10  # Attempts when a loan is updated concurrently
    max_period_years: int = 100  # Longest loan term accepted; bounds the EMI schedule size
    require_registered_customers: bool = False  # If False, first loan registers the customer

    class Config:
        env_prefix = "LENDING_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = LendingConfig()


def get_config() -> LendingConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> LendingConfig:
    """Reload configuration from environment"""
    global config
    config = LendingConfig()
    return config
