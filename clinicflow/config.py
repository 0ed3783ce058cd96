"""Application configuration."""

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        env_parse_none_str="null",
        populate_by_name=True,
    )

    # Application
    app_name: str = Field(default="ClinicFlow API", alias="APP_NAME")
    app_version: str = Field(default="0.1.0", alias="APP_VERSION")
    environment: str = Field(default="development", alias="ENVIRONMENT")
    debug: bool = Field(default=False, alias="DEBUG")
    api_v1_prefix: str = Field(default="/api/v1", alias="API_V1_PREFIX")

    # Server
    host: str = Field(default="0.0.0.0", alias="HOST")
    port: int = Field(default=8000, alias="PORT")
    reload: bool = Field(default=False, alias="RELOAD")

    # Database
    database_url: str = Field(..., alias="DATABASE_URL")
    database_pool_size: int = Field(default=10, alias="DATABASE_POOL_SIZE")
    database_max_overflow: int = Field(default=20, alias="DATABASE_MAX_OVERFLOW")

    # Redis
    redis_url: str = Field(default="redis://localhost:6379/0", alias="REDIS_URL")

    # JWT (tokens are issued by the auth service, this service only verifies them)
    jwt_secret_key: str = Field(..., alias="JWT_SECRET_KEY")
    jwt_algorithm: str = Field(default="HS256", alias="JWT_ALGORITHM")
    access_token_expire_minutes: int = Field(default=30, alias="ACCESS_TOKEN_EXPIRE_MINUTES")

    # Directory lookup
    directory_backend: str = Field(
        default="database",
        alias="DIRECTORY_BACKEND",
        description="Where user display data comes from: 'database' or 'http'",
    )
    auth_service_url: str = Field(default="http://localhost:3001", alias="AUTH_SERVICE_URL")
    directory_timeout_seconds: float = Field(default=2.0, alias="DIRECTORY_TIMEOUT_SECONDS")

    # Cache TTLs (seconds)
    my_appointments_cache_ttl: int = Field(default=120, alias="MY_APPOINTMENTS_CACHE_TTL")
    all_appointments_cache_ttl: int = Field(default=60, alias="ALL_APPOINTMENTS_CACHE_TTL")
    notifications_cache_ttl: int = Field(default=30, alias="NOTIFICATIONS_CACHE_TTL")

    # Event log
    event_stream_prefix: str = Field(default="appointment-events", alias="EVENT_STREAM_PREFIX")
    event_partitions: int = Field(default=3, ge=1, alias="EVENT_PARTITIONS")
    event_stream_maxlen: int = Field(default=100_000, alias="EVENT_STREAM_MAXLEN")
    event_consumer_group: str = Field(default="notification-service", alias="EVENT_CONSUMER_GROUP")
    event_consumer_name: str = Field(default="notification-service-1", alias="EVENT_CONSUMER_NAME")
    event_instance_index: int = Field(default=0, ge=0, alias="EVENT_INSTANCE_INDEX")
    event_instance_count: int = Field(default=1, ge=1, alias="EVENT_INSTANCE_COUNT")
    event_read_block_ms: int = Field(default=5000, alias="EVENT_READ_BLOCK_MS")
    event_read_count: int = Field(default=50, alias="EVENT_READ_COUNT")

    # Post-commit hooks
    post_commit_retries: int = Field(default=2, ge=0, alias="POST_COMMIT_RETRIES")
    post_commit_retry_delay: float = Field(default=0.1, alias="POST_COMMIT_RETRY_DELAY")

    # Broadcast bus / push gateway
    broadcast_channel: str = Field(default="notifications", alias="BROADCAST_CHANNEL")
    push_auth_timeout_seconds: float = Field(default=10.0, alias="PUSH_AUTH_TIMEOUT_SECONDS")
    push_send_queue_size: int = Field(default=100, ge=1, alias="PUSH_SEND_QUEUE_SIZE")

    # In-process workers
    run_fanout_consumer: bool = Field(default=True, alias="RUN_FANOUT_CONSUMER")
    run_push_gateway: bool = Field(default=True, alias="RUN_PUSH_GATEWAY")

    # CORS
    cors_origins_str: str = Field(
        default="http://localhost:3000",
        alias="CORS_ORIGINS",
    )
    cors_allow_credentials: bool = Field(default=True, alias="CORS_ALLOW_CREDENTIALS")

    @property
    def cors_origins(self) -> list[str]:
        """Get CORS origins as a list."""
        if isinstance(self.cors_origins_str, str):
            return [origin.strip() for origin in self.cors_origins_str.split(",") if origin.strip()]
        return [self.cors_origins_str]

    @property
    def event_dead_letter_stream(self) -> str:
        """Stream that receives entries which fail schema validation."""
        return f"{self.event_stream_prefix}:dlq"

    @property
    def owned_partitions(self) -> list[int]:
        """Event log partitions consumed by this instance."""
        return [
            partition
            for partition in range(self.event_partitions)
            if partition % self.event_instance_count == self.event_instance_index
        ]

    # Logging
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_format: str = Field(default="json", alias="LOG_FORMAT")

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment.lower() == "production"

    @property
    def is_development(self) -> bool:
        """Check if running in development environment."""
        return self.environment.lower() == "development"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()  # type: ignore[call-arg]


# Global settings instance
settings = get_settings()
