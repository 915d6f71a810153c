"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class MicroloanConfig(BaseSettings):
    """Microloan engine configuration"""

    # Database configuration
    database_url: str = "sqlite:///microloan.db"  # "memory://" for in-memory storage
    storage_read_attempts: int = 3
    storage_retry_delay_seconds: float = 0.1

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8090

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout

    # Business rules configuration
    currency: str = "COP"
    audit_threshold: str = "50000"  # |difference| above this flags a reconciliation for audit
    max_principal: str = "100000000"
    max_term_count: int = 100

    # Feature flags
    enable_audit_logging: bool = True
    parallel_aggregation: bool = True

    class Config:
        env_prefix = "MICROLOAN_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = MicroloanConfig()


def get_config() -> MicroloanConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> MicroloanConfig:
    """Reload configuration from environment"""
    global config
    config = MicroloanConfig()
    return config
