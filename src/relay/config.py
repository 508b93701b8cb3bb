"""Configuration schema for the signaling relay.

Defines Pydantic models for loading and validating relay configuration
from YAML files and environment variables.
"""

import logging
from pathlib import Path

from pydantic import BaseModel, Field, field_validator

_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


class WebSocketConfig(BaseModel):
    """WebSocket transport configuration."""

    host: str = Field(default="0.0.0.0", description="Bind host address")  # noqa: S104
    port: int = Field(default=8080, ge=1024, le=65534, description="Bind port")
    max_connections: int = Field(default=100, ge=1, description="Maximum concurrent connections")
    max_message_bytes: int = Field(
        default=65536, ge=1024, description="Maximum size of one inbound frame"
    )
    outbound_queue_size: int = Field(
        default=256, ge=8, description="Pending outbound frames allowed per connection"
    )


class TransportConfig(BaseModel):
    """Transport layer configuration."""

    websocket: WebSocketConfig = Field(default_factory=WebSocketConfig)


class HealthConfig(BaseModel):
    """HTTP side-endpoint configuration.

    The health server listens on the WebSocket port plus ``port_offset``.
    """

    enabled: bool = Field(default=True, description="Serve /health, /version and /rooms")
    port_offset: int = Field(default=1, ge=1, le=100, description="Offset from WebSocket port")


class RelayConfig(BaseModel):
    """Root relay configuration."""

    transport: TransportConfig = Field(default_factory=TransportConfig)
    health: HealthConfig = Field(default_factory=HealthConfig)

    # Operational settings
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
        """Normalize and validate the logging level name."""
        level = v.upper()
        if level not in _LOG_LEVELS:
            raise ValueError(f"log_level must be one of {sorted(_LOG_LEVELS)}, got {v!r}")
        return level

    @property
    def log_level_value(self) -> int:
        return logging.getLevelNamesMapping()[self.log_level]

    @classmethod
    def from_yaml(cls, path: Path) -> "RelayConfig":
        """Load configuration from YAML file with environment variable overrides.

        Recognized overrides: ``HUDDLE_HOST``, ``HUDDLE_PORT``, ``HUDDLE_LOG_LEVEL``.

        Args:
            path: Path to YAML configuration file

        Returns:
            Loaded configuration

        Raises:
            FileNotFoundError: If configuration file doesn't exist
            ValueError: If YAML is invalid or validation fails
        """
        import os

        import yaml  # type: ignore[import-untyped]

        if not path.exists():
            raise FileNotFoundError(f"Configuration file not found: {path}")

        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}

        if host := os.getenv("HUDDLE_HOST"):
            data.setdefault("transport", {}).setdefault("websocket", {})["host"] = host

        if port := os.getenv("HUDDLE_PORT"):
            data.setdefault("transport", {}).setdefault("websocket", {})["port"] = int(port)

        if log_level := os.getenv("HUDDLE_LOG_LEVEL"):
            data["log_level"] = log_level

        return cls.model_validate(data)

    @classmethod
    def from_yaml_with_defaults(cls, path: Path | None = None) -> "RelayConfig":
        """Load configuration from YAML or use defaults if file doesn't exist.

        Args:
            path: Optional path to YAML configuration file

        Returns:
            Loaded configuration or defaults
        """
        if path is not None and path.exists():
            return cls.from_yaml(path)

        return cls()
