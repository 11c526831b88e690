"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from datetime import timedelta, timezone
from typing import List, Optional

from pydantic_settings import BaseSettings


class MicrofinanceConfig(BaseSettings):
    """Microfinance back office configuration"""
    
    # Database configuration
    database_url: str = "sqlite:///microfinance.db"  # memory:// for in-memory
    database_timeout: float = 30.0
    
    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8090
    cors_origins: List[str] = ["*"]
    
    # Security configuration
    auth_enabled: bool = True
    jwt_secret: str = "change-me-in-production"
    jwt_algorithm: str = "HS256"
    jwt_expiry_hours: int = 24
    
    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout
    
    # Business rules configuration
    business_utc_offset_minutes: int = 330  # IST
    report_max_days: int = 90
    reopen_installments_on_reversal: bool = False
    
    # Feature flags
    enable_audit_logging: bool = True
    
    class Config:
        env_prefix = "MICROFINANCE_"
        env_file = ".env"
        case_sensitive = False
    
    @property
    def business_timezone(self) -> timezone:
        """Fixed-offset timezone used to turn instants into calendar days"""
        return timezone(timedelta(minutes=self.business_utc_offset_minutes))


# Global configuration instance
config = MicrofinanceConfig()


def get_config() -> MicrofinanceConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> MicrofinanceConfig:
    """Reload configuration from environment"""
    global config
    config = MicrofinanceConfig()
    return config
