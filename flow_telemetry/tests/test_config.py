import pytest

from flow_telemetry.core.config import TelemetryConfig


def test_defaults() -> None:
    config = TelemetryConfig()

    assert config.log_capacity == 1000
    assert config.near_zero_epsilon == 0.01
    assert config.reconnect_base_delay == 1.0
    assert config.reconnect_max_delay == 30.0
    assert config.reconnect_max_attempts == 5


def test_from_env_reads_prefixed_variables() -> None:
    config = TelemetryConfig.from_env(
        {
            "FLOW_TELEMETRY_STREAM_URL": "ws://runtime:9000/stream",
            "FLOW_TELEMETRY_LOG_CAPACITY": "250",
            "FLOW_TELEMETRY_CONNECT_TIMEOUT": "2.5",
            "FLOW_TELEMETRY_API_URL": "  ",
            "UNRELATED": "1",
        }
    )

    assert config.stream_url == "ws://runtime:9000/stream"
    assert config.log_capacity == 250
    assert config.connect_timeout == 2.5
    assert config.api_url == TelemetryConfig().api_url


def test_overrides_win_and_none_is_ignored() -> None:
    config = TelemetryConfig.from_env(
        {"FLOW_TELEMETRY_LOG_CAPACITY": "250"},
        log_capacity=10,
        api_url=None,
    )

    assert config.log_capacity == 10
    assert config.api_url == TelemetryConfig().api_url


def test_invalid_env_value_is_reported() -> None:
    with pytest.raises(ValueError, match="FLOW_TELEMETRY_LOG_CAPACITY"):
        TelemetryConfig.from_env({"FLOW_TELEMETRY_LOG_CAPACITY": "lots"})


@pytest.mark.parametrize(
    "overrides",
    [
        {"log_capacity": 0},
        {"history_page_size": -1},
        {"connect_timeout": 0},
        {"reconnect_base_delay": 10, "reconnect_max_delay": 5},
        {"reconnect_max_attempts": -1},
    ],
)
def test_invalid_values_are_rejected(overrides) -> None:
    with pytest.raises(ValueError):
        TelemetryConfig(**overrides)
