"""Application settings using Pydantic for environment-based configuration."""
from functools import lru_cache
from typing import Optional
from urllib.parse import quote, urlsplit

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

SUPPORTED_BROKER_SCHEMES = ("amqp", "amqps", "memory")


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Message Broker Configuration
    rabbitmq_user: str = Field(default="admin", description="RabbitMQ username")
    rabbitmq_pass: str = Field(default="admin123", description="RabbitMQ password")
    rabbitmq_host: str = Field(default="localhost", description="RabbitMQ host")
    rabbitmq_port: int = Field(default=5672, description="RabbitMQ port")
    rabbitmq_vhost: str = Field(default="/", description="RabbitMQ virtual host")
    rabbitmq_url: Optional[str] = Field(
        default=None,
        description="Full broker URL (amqp://, amqps:// or memory://); overrides the fields above",
    )
    rabbitmq_heartbeat: int = Field(default=60, description="AMQP heartbeat (seconds)")

    # Application Configuration
    app_name: str = Field(default="payment-broker", description="Application name")
    app_env: str = Field(default="development", description="Environment (development/production)")
    log_level: str = Field(default="INFO", description="Logging level")

    # Consumers
    consumer_ready_attempts: int = Field(
        default=10, ge=1, description="Polls for the shared channel before a consumer gives up"
    )
    consumer_ready_delay_seconds: float = Field(
        default=0.5, ge=0, description="Delay between channel readiness polls"
    )
    consumer_resubscribe_delay_seconds: float = Field(
        default=1.0, ge=0, description="Delay before re-subscribing after a lost channel"
    )
    notification_prefetch: int = Field(
        default=10, ge=1, description="Prefetch for the email notification consumer"
    )

    # RPC / retry
    rpc_max_retries: int = Field(default=3, ge=0, description="Retries after the first attempt")
    rpc_retry_base_delay_seconds: float = Field(
        default=1.0, ge=0, description="Base delay for retry backoff (seconds)"
    )
    rpc_timeout_seconds: float = Field(default=30.0, gt=0, description="RPC client reply timeout")

    # Dead letters
    dlq_message_ttl_ms: int = Field(
        default=3_600_000, gt=0, description="Time-to-live of dead-lettered messages (ms)"
    )

    # Payment workflow
    fraud_check_enabled: bool = Field(
        default=False, description="Enqueue a fraud check for every new payment"
    )
    gateway_failure_rate: float = Field(
        default=0.1, ge=0, le=1, description="Simulated gateway decline rate"
    )
    gateway_latency_seconds: float = Field(
        default=0.0, ge=0, description="Simulated gateway latency"
    )

    # Workers
    shutdown_timeout_seconds: float = Field(
        default=10.0, gt=0, description="Deadline for closing consumers and the broker link"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("rabbitmq_url")
    @classmethod
    def validate_rabbitmq_url(cls, v: Optional[str]) -> Optional[str]:
        """Reject broker URLs the transports cannot open."""
        if v is None:
            return v
        parts = urlsplit(v)
        if parts.scheme not in SUPPORTED_BROKER_SCHEMES:
            raise ValueError(
                f"Invalid broker URL scheme '{parts.scheme}'. "
                f"Must be one of: {list(SUPPORTED_BROKER_SCHEMES)}"
            )
        if not parts.hostname:
            raise ValueError("Broker URL must include a host (or broker name for memory://)")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v.upper()

    @property
    def connection_url(self) -> str:
        """Broker URL, built from the individual fields unless overridden."""
        if self.rabbitmq_url:
            return self.rabbitmq_url
        vhost = quote(self.rabbitmq_vhost, safe="")
        return (
            f"amqp://{quote(self.rabbitmq_user, safe='')}:{quote(self.rabbitmq_pass, safe='')}"
            f"@{self.rabbitmq_host}:{self.rabbitmq_port}/{vhost}"
        )

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env.lower() == "production"


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()
