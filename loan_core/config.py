"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional


class LoanCoreConfig(BaseSettings):
    """Loan core configuration"""
    
    model_config = SettingsConfigDict(
        env_prefix="LOANCORE_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore"
    )
    
    # Database configuration
    database_url: str = "sqlite:///loan_core.db"  # memory:// for in-memory storage
    
    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8090
    
    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout
    
    # Business rules configuration
    allow_overpayment: bool = False
    amount_precision: int = 2
    default_branch_id: str = "main_branch"
    
    # Paging
    default_page_limit: int = 20
    max_page_limit: int = 100
    
    # Concurrency
    concurrency_max_retries: int = 3
    
    # Feature flags
    enable_audit_logging: bool = True


# Global configuration instance
config = LoanCoreConfig()


def get_config() -> LoanCoreConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> LoanCoreConfig:
    """Reload configuration from environment"""
    global config
    config = LoanCoreConfig()
    return config
