"""Configuration schema for the rendezvous broker.

Defines Pydantic models for loading and validating broker configuration
from YAML files and environment variables.
"""

import os
import socket
from pathlib import Path

from pydantic import BaseModel, Field, field_validator, model_validator


class WebSocketConfig(BaseModel):
    """WebSocket transport configuration."""

    host: str = Field(default="0.0.0.0", description="Bind host address")  # noqa: S104
    port: int = Field(default=3003, ge=1024, le=65535, description="Bind port")
    max_connections: int = Field(default=1000, ge=1, description="Maximum concurrent connections")


class RedisConfig(BaseModel):
    """Redis configuration for the shared waiting slot and event relay."""

    url: str = Field(
        default="redis://localhost:6379",
        description="Redis connection URL",
    )
    db: int = Field(default=0, ge=0, le=15, description="Redis database number")
    key_prefix: str = Field(
        default="rendezvous:",
        description="Prefix for slot keys and relay channels",
    )
    connection_pool_size: int = Field(
        default=10,
        ge=1,
        description="Redis connection pool size",
    )


class MatchmakingConfig(BaseModel):
    """Waiting slot and matchmaker configuration."""

    slot_backend: str = Field(
        default="memory",
        description="Waiting slot backend: memory (single broker) or redis (shared)",
    )
    broker_id: str = Field(
        default_factory=lambda: f"{socket.gethostname()}-{os.getpid()}",
        min_length=1,
        description="Unique id of this broker process (relay channel name)",
    )
    max_attempts: int = Field(
        default=2,
        ge=1,
        le=10,
        description="Claim-then-occupy attempts before reporting contention",
    )
    slot_ttl_seconds: int = Field(
        default=30,
        ge=5,
        description="Redis waiting entry TTL if its broker stops refreshing it",
    )
    keepalive_interval_seconds: float = Field(
        default=10.0,
        gt=0,
        description="Interval between refreshes of a local waiting entry",
    )

    @field_validator("slot_backend")
    @classmethod
    def validate_slot_backend(cls, v: str) -> str:
        """Validate that the slot backend is supported."""
        valid_backends = ["memory", "redis"]
        v = v.lower()
        if v not in valid_backends:
            raise ValueError(f"slot_backend must be one of {valid_backends}, got '{v}'")
        return v

    @model_validator(mode="after")
    def validate_keepalive(self) -> "MatchmakingConfig":
        """Keepalive must run well within the entry TTL."""
        if self.keepalive_interval_seconds >= self.slot_ttl_seconds:
            raise ValueError(
                "keepalive_interval_seconds must be shorter than slot_ttl_seconds "
                f"({self.keepalive_interval_seconds} >= {self.slot_ttl_seconds})"
            )
        return self


class HealthConfig(BaseModel):
    """HTTP health/metrics endpoint configuration."""

    enabled: bool = Field(default=True, description="Serve health and metrics endpoints")
    host: str = Field(default="127.0.0.1", description="Bind host address")
    port: int | None = Field(
        default=None,
        ge=1024,
        le=65535,
        description="Bind port (defaults to the WebSocket port + 1)",
    )


class BrokerConfig(BaseModel):
    """Root broker configuration."""

    websocket: WebSocketConfig = Field(default_factory=WebSocketConfig)
    redis: RedisConfig = Field(default_factory=RedisConfig)
    matchmaking: MatchmakingConfig = Field(default_factory=MatchmakingConfig)
    health: HealthConfig = Field(default_factory=HealthConfig)

    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR)",
    )
    graceful_shutdown_timeout_s: int = Field(
        default=10,
        ge=1,
        description="Graceful shutdown timeout in seconds",
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"log_level must be one of {valid_levels}, got '{v}'")
        return v.upper()

    @property
    def health_port(self) -> int:
        return self.health.port or self.websocket.port + 1

    @classmethod
    def from_yaml(cls, path: Path) -> "BrokerConfig":
        """Load configuration from YAML file with environment variable overrides.

        Args:
            path: Path to YAML configuration file

        Returns:
            Loaded configuration

        Raises:
            FileNotFoundError: If configuration file doesn't exist
            ValueError: If YAML is invalid or validation fails
        """
        import yaml  # type: ignore[import-untyped]

        if not path.exists():
            raise FileNotFoundError(f"Configuration file not found: {path}")

        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}

        if not isinstance(data, dict):
            raise ValueError(f"Configuration root must be a mapping: {path}")

        # An empty section ("redis:") means defaults, not null
        data = {key: value for key, value in data.items() if value is not None}
        return cls.model_validate(apply_env_overrides(data))

    @classmethod
    def from_yaml_with_defaults(cls, path: Path | None = None) -> "BrokerConfig":
        """Load configuration from YAML or use defaults if file doesn't exist.

        Environment overrides apply in both cases.
        """
        if path is not None and path.exists():
            return cls.from_yaml(path)

        return cls.model_validate(apply_env_overrides({}))


def _section(data: dict, name: str) -> dict:
    section = data.get(name) or {}
    data[name] = section
    return section


def apply_env_overrides(data: dict) -> dict:
    """Apply environment variable overrides to raw config data.

    Recognized variables: REDIS_URL, RENDEZVOUS_SLOT_BACKEND,
    RENDEZVOUS_BROKER_ID, RENDEZVOUS_PORT, LOG_LEVEL.
    """
    if redis_url := os.getenv("REDIS_URL"):
        _section(data, "redis")["url"] = redis_url

    if slot_backend := os.getenv("RENDEZVOUS_SLOT_BACKEND"):
        _section(data, "matchmaking")["slot_backend"] = slot_backend

    if broker_id := os.getenv("RENDEZVOUS_BROKER_ID"):
        _section(data, "matchmaking")["broker_id"] = broker_id

    if port := os.getenv("RENDEZVOUS_PORT"):
        _section(data, "websocket")["port"] = int(port)

    if log_level := os.getenv("LOG_LEVEL"):
        data["log_level"] = log_level

    return data
