"""
Shared Configuration - Application Settings and Environment Management
Centralized configuration management for the cache gateway.

This module provides:
- Environment-based configuration
- Type-safe settings with validation
- Redis connection settings
- Cache behaviour settings (namespace, TTLs, scan batch size, timeouts)
- API, monitoring and security configuration
"""
import json
from typing import Any, Dict, List, Optional
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from enum import Enum


class Environment(str, Enum):
    """Application environment types."""
    DEVELOPMENT = "development"
    TESTING = "testing"
    STAGING = "staging"
    PRODUCTION = "production"


class LogLevel(str, Enum):
    """Logging levels."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class RedisSettings(BaseSettings):
    """Redis connection settings."""

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    # Full URL takes precedence over the individual components
    redis_url: Optional[str] = None

    redis_host: str = "localhost"
    redis_port: int = 6379
    redis_password: Optional[str] = None
    redis_db: int = 0
    redis_tls: bool = False

    # Pool and socket behaviour
    redis_max_connections: int = 20
    redis_socket_timeout: float = 5.0
    redis_connect_timeout: float = 10.0

    # Reconnect behaviour: exponential backoff capped at redis_backoff_cap seconds
    redis_retry_attempts: int = 3
    redis_backoff_base: float = 0.2
    redis_backoff_cap: float = 5.0

    @field_validator("redis_port")
    @classmethod
    def validate_port(cls, v):
        if not 1 <= v <= 65535:
            raise ValueError("Port must be between 1 and 65535")
        return v

    @field_validator("redis_max_connections")
    @classmethod
    def validate_pool_size(cls, v):
        if v < 1:
            raise ValueError("Pool size must be at least 1")
        return v

    def get_redis_url(self) -> str:
        """Get the complete Redis URL."""
        if self.redis_url:
            return self.redis_url

        scheme = "rediss" if self.redis_tls else "redis"
        auth = f":{self.redis_password}@" if self.redis_password else ""
        return f"{scheme}://{auth}{self.redis_host}:{self.redis_port}/{self.redis_db}"


class CacheSettings(BaseSettings):
    """Cache behaviour settings."""

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    cache_enabled: bool = True
    cache_key_prefix: str = "app"
    cache_default_ttl: int = 300
    cache_scan_count: int = 100
    cache_operation_timeout: float = 2.0

    # Per-resource TTL overrides, e.g. CACHE_RESOURCE_TTLS='{"products": 600}'
    cache_resource_ttls: Dict[str, int] = Field(default_factory=dict)

    @field_validator("cache_key_prefix")
    @classmethod
    def validate_key_prefix(cls, v):
        v = v.strip()
        if not v or ":" in v or "*" in v:
            raise ValueError("Key prefix must be non-empty and contain no ':' or '*'")
        return v

    @field_validator("cache_default_ttl", "cache_scan_count")
    @classmethod
    def validate_positive_int(cls, v):
        if v < 1:
            raise ValueError("Value must be at least 1")
        return v

    @field_validator("cache_operation_timeout")
    @classmethod
    def validate_timeout(cls, v):
        if v <= 0:
            raise ValueError("Operation timeout must be positive")
        return v

    @field_validator("cache_resource_ttls")
    @classmethod
    def validate_resource_ttls(cls, v):
        for resource, ttl in v.items():
            if ttl < 1:
                raise ValueError(f"TTL for resource '{resource}' must be at least 1 second")
        return v

    def ttl_for(self, resource: str) -> int:
        """Get the TTL for a resource, falling back to the default TTL."""
        return self.cache_resource_ttls.get(resource, self.cache_default_ttl)


class APISettings(BaseSettings):
    """API configuration settings."""

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    api_title: str = "Cache Gateway"
    api_description: str = "Read-through caching and invalidation for HTTP read endpoints"
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    # CORS settings
    cors_origins: List[str] = ["*"]
    cors_methods: List[str] = ["GET", "POST", "PUT", "PATCH", "DELETE"]

    @field_validator("cors_origins", "cors_methods", mode="before")
    @classmethod
    def parse_comma_separated(cls, v):
        if isinstance(v, str) and not v.startswith("["):
            return [item.strip() for item in v.split(",")]
        return v


class MonitoringSettings(BaseSettings):
    """Monitoring and logging configuration settings."""

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    log_level: LogLevel = LogLevel.INFO
    log_format: str = "colored"
    log_file: Optional[str] = None

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v):
        if v not in ("json", "colored", "standard"):
            raise ValueError("Log format must be one of: json, colored, standard")
        return v


class SecuritySettings(BaseSettings):
    """Security configuration settings.

    ``api_keys`` maps an API key to the identity it resolves to, for example
    ``API_KEYS='{"k1": {"user_id": "ops", "roles": ["admin"]}}'``.
    """

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    api_keys: Dict[str, Dict[str, Any]] = Field(default_factory=dict)
    admin_role: str = "admin"

    @field_validator("api_keys", mode="before")
    @classmethod
    def parse_api_keys(cls, v):
        if isinstance(v, str):
            return json.loads(v) if v.strip() else {}
        return v


class Settings(BaseSettings):
    """Main application settings."""

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    # Application settings
    environment: Environment = Environment.DEVELOPMENT
    debug: bool = False
    app_name: str = "Cache Gateway"
    app_version: str = "1.0.0"

    # Component settings
    redis: RedisSettings = RedisSettings()
    cache: CacheSettings = CacheSettings()
    api: APISettings = APISettings()
    monitoring: MonitoringSettings = MonitoringSettings()
    security: SecuritySettings = SecuritySettings()

    @field_validator("debug")
    @classmethod
    def validate_debug_in_production(cls, v, info):
        if info.data.get("environment") == Environment.PRODUCTION and v:
            raise ValueError("Debug mode should not be enabled in production")
        return v


# Global settings instance
settings = Settings()


def get_settings() -> Settings:
    """
    Get application settings.
    This function can be used as a FastAPI dependency.
    """
    return settings


def get_config_summary(config: Optional[Settings] = None) -> Dict[str, Any]:
    """
    Get a summary of the configuration (without sensitive data).

    Args:
        config: Settings to summarize; defaults to the global settings

    Returns:
        Dictionary with non-secret configuration values
    """
    config = config or settings
    return {
        "environment": config.environment.value,
        "app_version": config.app_version,
        "redis": {
            "host": config.redis.redis_host,
            "port": config.redis.redis_port,
            "db": config.redis.redis_db,
            "tls": config.redis.redis_tls,
            "url_configured": bool(config.redis.redis_url),
        },
        "cache": {
            "enabled": config.cache.cache_enabled,
            "key_prefix": config.cache.cache_key_prefix,
            "default_ttl": config.cache.cache_default_ttl,
            "resource_ttls": dict(config.cache.cache_resource_ttls),
        },
        "monitoring": {
            "log_level": config.monitoring.log_level.value,
            "log_format": config.monitoring.log_format,
        },
        "api_keys_configured": len(config.security.api_keys),
    }
