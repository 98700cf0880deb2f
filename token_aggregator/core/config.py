"""
Configuration management for Token Aggregator Service.
Uses pydantic-settings for environment variable management.
"""

from typing import List, Optional
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Application metadata
    app_name: str = Field(default="Token Aggregator")
    app_version: str = Field(default="1.0.0")
    debug: bool = Field(default=False)
    server_host: str = Field(default="0.0.0.0")
    server_port: int = Field(default=3000)
    cors_origins: str = Field(default="*")

    # Redis configuration
    redis_host: str = Field(default="localhost")
    redis_port: int = Field(default=6379)
    redis_db: int = Field(default=0)
    redis_password: Optional[str] = Field(default=None)

    # Upstream providers
    dexscreener_api_url: str = Field(default="https://api.dexscreener.com")
    geckoterminal_api_url: str = Field(default="https://api.geckoterminal.com/api/v2")
    network: str = Field(default="solana")
    request_timeout: float = Field(default=10.0)

    # Rate limiting configuration (requests per window)
    dexscreener_rate_limit: int = Field(default=250)
    geckoterminal_rate_limit: int = Field(default=25)
    rate_limit_window_seconds: float = Field(default=60.0)

    # Retry configuration
    retry_max_attempts: int = Field(default=5)
    retry_base_delay: float = Field(default=2.0)
    retry_max_delay: float = Field(default=30.0)

    # Cache TTL settings (in seconds)
    memory_cache_ttl: float = Field(default=30.0)
    memory_cache_max_entries: int = Field(default=100)
    token_cache_ttl: int = Field(default=300)  # 5 minutes
    scheduler_cache_ttl: int = Field(default=300)  # kept independent of update_interval

    # Bulk aggregation
    fetch_chunk_size: int = Field(default=2)
    chunk_delay: float = Field(default=2.0)

    # Scheduler
    update_interval: int = Field(default=120)  # 2 minutes
    scheduler_enabled: bool = Field(default=True)

    # Token metadata source
    tokens_file: str = Field(default="p1.csv")

    # Logging configuration
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="json")

    @field_validator('log_level')
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = {'DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'}
        if v.upper() not in valid_levels:
            raise ValueError(f"log_level must be one of: {', '.join(valid_levels)}")
        return v.upper()

    @field_validator('log_format')
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        """Validate log format."""
        valid_formats = {'json', 'text'}
        if v.lower() not in valid_formats:
            raise ValueError(f"log_format must be one of: {', '.join(valid_formats)}")
        return v.lower()

    @field_validator('fetch_chunk_size', 'memory_cache_max_entries', 'retry_max_attempts')
    @classmethod
    def validate_positive(cls, v: int) -> int:
        """Validate that counts are at least 1."""
        if v < 1:
            raise ValueError("value must be at least 1")
        return v

    @field_validator('update_interval')
    @classmethod
    def validate_update_interval(cls, v: int) -> int:
        """Scheduler granularity is one second."""
        return max(1, v)

    def get_cors_origins_list(self) -> List[str]:
        """Get CORS origins as a list."""
        return [origin.strip() for origin in self.cors_origins.split(',') if origin.strip()]

    def get_redis_url(self) -> str:
        """Get Redis connection URL."""
        if self.redis_password:
            return f"redis://:{self.redis_password}@{self.redis_host}:{self.redis_port}/{self.redis_db}"
        return f"redis://{self.redis_host}:{self.redis_port}/{self.redis_db}"


# Global settings instance
settings = Settings()


class CacheKeys:
    """Redis key layout for the durable cache tier."""

    TOKEN = 'token:{address}'
    AGGREGATED = 'aggregated:all'
    TOKEN_PATTERN = 'token:*'
    AGGREGATED_PATTERN = 'aggregated:*'


cache_keys = CacheKeys()
