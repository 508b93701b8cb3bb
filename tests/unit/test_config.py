"""Unit tests for relay and client configuration.

Tests configuration loading, validation, defaults and environment overrides.
"""

from pathlib import Path

import pytest

from src.client.config import ClientConfig, VoiceActivityConfig
from src.relay.config import HealthConfig, RelayConfig, WebSocketConfig

CONFIG_DIR = Path(__file__).parent.parent.parent / "configs"


def test_websocket_config_defaults() -> None:
    """Test WebSocket configuration defaults."""
    config = WebSocketConfig()
    assert config.host == "0.0.0.0"  # noqa: S104
    assert config.port == 8080
    assert config.max_connections == 100
    assert config.max_message_bytes == 65536
    assert config.outbound_queue_size == 256


def test_websocket_config_validation() -> None:
    """Test WebSocket configuration validation."""
    assert WebSocketConfig(port=9000).port == 9000

    # Invalid port (too low)
    with pytest.raises(ValueError):
        WebSocketConfig(port=80)

    # Invalid port (too high)
    with pytest.raises(ValueError):
        WebSocketConfig(port=70000)

    with pytest.raises(ValueError):
        WebSocketConfig(max_connections=0)


def test_relay_config_defaults() -> None:
    """Test root relay configuration defaults."""
    config = RelayConfig()
    assert config.log_level == "INFO"
    assert config.graceful_shutdown_timeout_s == 10
    assert config.health == HealthConfig()


def test_log_level_normalized() -> None:
    """Test log level is upper-cased and validated."""
    assert RelayConfig(log_level="debug").log_level == "DEBUG"
    assert RelayConfig(log_level="warning").log_level_value == 30

    with pytest.raises(ValueError, match="log_level"):
        RelayConfig(log_level="chatty")


def test_relay_config_from_yaml(tmp_path: Path) -> None:
    """Test loading relay configuration from YAML."""
    path = tmp_path / "relay.yaml"
    path.write_text(
        "transport:\n"
        "  websocket:\n"
        "    port: 9100\n"
        "    max_connections: 5\n"
        "health:\n"
        "  enabled: false\n"
        "log_level: DEBUG\n"
    )

    config = RelayConfig.from_yaml(path)

    assert config.transport.websocket.port == 9100
    assert config.transport.websocket.max_connections == 5
    assert config.health.enabled is False
    assert config.log_level == "DEBUG"


def test_relay_config_env_overrides(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Test environment variables override YAML values."""
    path = tmp_path / "relay.yaml"
    path.write_text("transport:\n  websocket:\n    port: 9100\n")

    monkeypatch.setenv("HUDDLE_HOST", "127.0.0.1")
    monkeypatch.setenv("HUDDLE_PORT", "9200")
    monkeypatch.setenv("HUDDLE_LOG_LEVEL", "error")

    config = RelayConfig.from_yaml(path)

    assert config.transport.websocket.host == "127.0.0.1"
    assert config.transport.websocket.port == 9200
    assert config.log_level == "ERROR"


def test_empty_yaml_uses_defaults(tmp_path: Path) -> None:
    path = tmp_path / "empty.yaml"
    path.write_text("")

    assert RelayConfig.from_yaml(path) == RelayConfig()


def test_from_yaml_missing_file(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        RelayConfig.from_yaml(tmp_path / "missing.yaml")


def test_from_yaml_with_defaults(tmp_path: Path) -> None:
    assert RelayConfig.from_yaml_with_defaults(tmp_path / "missing.yaml") == RelayConfig()
    assert RelayConfig.from_yaml_with_defaults(None) == RelayConfig()


def test_shipped_configs_load() -> None:
    """Test the sample configs in configs/ validate."""
    relay = RelayConfig.from_yaml(CONFIG_DIR / "relay.yaml")
    client = ClientConfig.from_yaml(CONFIG_DIR / "client.yaml")

    assert relay.transport.websocket.port == 8080
    assert client.vad == VoiceActivityConfig()


def test_voice_activity_defaults() -> None:
    """Test detector defaults match the adaptive threshold tuning."""
    config = VoiceActivityConfig()
    assert config.tick_rate_hz == 60.0
    assert config.local_history_length == 100
    assert config.remote_history_length == 50
    assert config.envelope_decay == 0.999
    assert config.min_range == 20.0
    assert config.threshold_floor == 5.0
    assert config.threshold_multiplier == 1.5


def test_client_config_server_url(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """Test relay URL validation and environment override."""
    with pytest.raises(ValueError, match="ws://"):
        ClientConfig(server_url="http://localhost:8080")

    path = tmp_path / "client.yaml"
    path.write_text("server_url: ws://example.test:8080\n")
    monkeypatch.setenv("HUDDLE_SERVER_URL", "wss://relay.example.test")

    assert ClientConfig.from_yaml(path).server_url == "wss://relay.example.test"


def test_client_log_level(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """Test client log level validation and environment override."""
    assert ClientConfig(log_level="debug").log_level_value == 10

    with pytest.raises(ValueError, match="log_level"):
        ClientConfig(log_level="loud")

    path = tmp_path / "client.yaml"
    path.write_text("log_level: INFO\n")
    monkeypatch.setenv("HUDDLE_LOG_LEVEL", "warning")

    assert ClientConfig.from_yaml(path).log_level == "WARNING"
