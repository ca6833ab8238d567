"""Configuration for Bulwark."""

from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings."""

    # Retry
    retry_max_attempts: int = 3
    retry_initial_delay: float = 1.0  # seconds
    retry_max_delay: float = 10.0  # seconds
    retry_backoff_multiplier: float = 2.0
    retry_jitter_enabled: bool = True

    # Circuit Breaker
    breaker_failure_threshold: int = 5
    breaker_reset_timeout: float = 60.0  # seconds

    # Fallback Cache
    cache_max_size: int = 100
    cache_default_ttl: float = 300.0  # seconds
    cache_dump_path: Optional[str] = None  # JSON envelope restored on start

    # Health Monitoring
    health_timeout: float = 5.0
    health_retries: int = 2
    health_interval: float = 30.0
    health_retry_delay: float = 1.0
    health_history_size: int = 100

    # Rate Limiting / Abuse Detection
    rate_limit_max_requests: int = 100  # per window
    rate_limit_window: float = 60.0  # seconds
    admin_rate_limit_max_requests: int = 30
    abuse_detection_enabled: bool = True
    xss_protection_enabled: bool = True
    security_headers_enabled: bool = True
    cleanup_interval: float = 300.0  # seconds

    # Error Reporting
    error_history_size: int = 50
    error_log_size: int = 1000

    # Server
    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "INFO"

    class Config:
        env_prefix = "BULWARK_"
        env_file = ".env"
        env_file_encoding = "utf-8"


settings = Settings()
