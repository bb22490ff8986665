"""Configuration settings for the study platform cache."""

from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Cache settings, loaded from the environment or a .env file."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="STUDYCACHE_",
        case_sensitive=False,
        extra="ignore",
    )

    app_name: str = "studycache"

    # Redis Connection
    redis_url: Optional[str] = None  # Overrides host/port/password/db when set
    redis_host: str = "localhost"
    redis_port: int = 6379
    redis_password: Optional[str] = None
    redis_db: int = 0
    redis_socket_timeout: float = 5.0  # Upper bound for a single command
    redis_connect_timeout: float = 5.0

    # Transport retry (per command)
    redis_retry_step_ms: int = 50
    redis_retry_cap_ms: int = 2000
    redis_max_retries_per_request: int = 3

    # Reconnection after a dropped connection
    redis_reconnect_step_seconds: float = 1.0
    redis_reconnect_cap_seconds: float = 10.0
    redis_max_reconnect_attempts: int = 10

    # Health
    redis_degraded_latency_ms: float = 1000.0
    redis_monitor_interval_seconds: float = 30.0
    rag_min_hit_rate: float = 50.0  # Percent

    # Tiers
    enable_redis: bool = True
    enable_in_memory: bool = True
    cache_default_ttl: int = 3600  # 1 hour
    cache_max_memory_items: int = 1000
    rag_cache_max_entries: int = 10000
    rag_cache_prefix: str = "learnsynth:rag:"
    memory_sweep_interval_seconds: float = 300.0  # 5 minutes

    # Sessions
    session_prefix: str = "learnsynth:session:"
    session_default_ttl: int = 3600
    session_sweep_interval_seconds: float = 600.0  # 10 minutes

    # Named generic caches
    user_preferences_prefix: str = "learnsynth:user:prefs:"
    user_preferences_ttl: int = 86400  # 24 hours
    api_response_prefix: str = "learnsynth:api:response:"
    api_response_ttl: int = 300  # 5 minutes
    content_metadata_prefix: str = "learnsynth:content:metadata:"
    content_metadata_ttl: int = 3600  # 1 hour

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"


# Create settings instance
settings = Settings()
