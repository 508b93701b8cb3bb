"""Configuration schema for the Huddle client.

Defines Pydantic models for loading and validating client configuration
from YAML files and environment variables.
"""

import logging
from pathlib import Path

from pydantic import BaseModel, Field, field_validator

DEFAULT_ICE_SERVERS: list[str] = [
    "stun:stun.l.google.com:19302",
    "stun:stun1.l.google.com:19302",
    "stun:global.stun.twilio.com:3478",
]

_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


class VoiceActivityConfig(BaseModel):
    """Adaptive energy-based voice activity detection configuration."""

    window_size: int = Field(
        default=2048, ge=64, description="Samples per analysis window"
    )
    tick_rate_hz: float = Field(
        default=60.0, gt=0, le=240, description="Sampling ticks per second"
    )
    local_history_length: int = Field(
        default=100, ge=1, description="Energy history length for the local stream"
    )
    remote_history_length: int = Field(
        default=50, ge=1, description="Energy history length for remote streams"
    )
    envelope_decay: float = Field(
        default=0.999, gt=0, lt=1, description="Per-tick decay of the envelope maximum"
    )
    min_range: float = Field(
        default=20.0, gt=0, description="Lower bound of the envelope range"
    )
    threshold_floor: float = Field(
        default=5.0, ge=0, description="Minimum speaking threshold"
    )
    threshold_multiplier: float = Field(
        default=1.5, gt=0, description="Threshold as a multiple of the history mean"
    )


class ClientConfig(BaseModel):
    """Root client configuration."""

    server_url: str = Field(
        default="ws://localhost:8080", description="Relay WebSocket URL"
    )
    ice_servers: list[str] = Field(
        default_factory=lambda: list(DEFAULT_ICE_SERVERS),
        description="STUN/TURN server URLs",
    )
    vad: VoiceActivityConfig = Field(default_factory=VoiceActivityConfig)
    log_level: str = Field(default="INFO", description="Logging level (overridden by -v)")

    @field_validator("server_url")
    @classmethod
    def validate_server_url(cls, v: str) -> str:
        """Validate that the relay URL uses a WebSocket scheme."""
        if not v.startswith(("ws://", "wss://")):
            raise ValueError(f"server_url must start with ws:// or wss://, got {v!r}")
        return v

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
    def from_yaml(cls, path: Path) -> "ClientConfig":
        """Load configuration from YAML file with environment variable overrides.

        Recognized overrides: ``HUDDLE_SERVER_URL``, ``HUDDLE_LOG_LEVEL``.

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

        if server_url := os.getenv("HUDDLE_SERVER_URL"):
            data["server_url"] = server_url

        if log_level := os.getenv("HUDDLE_LOG_LEVEL"):
            data["log_level"] = log_level

        return cls.model_validate(data)

    @classmethod
    def from_yaml_with_defaults(cls, path: Path | None = None) -> "ClientConfig":
        """Load configuration from YAML or use defaults if file doesn't exist."""
        if path is not None and path.exists():
            return cls.from_yaml(path)

        return cls()
