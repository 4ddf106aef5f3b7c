"""Runtime configuration for the telemetry engine."""

from __future__ import annotations

import os
from dataclasses import dataclass, fields, replace
from typing import Any, Dict, Mapping, Optional

from .frame_schemas import MESSAGE_LOGGER_SOURCE


ENV_PREFIX = "FLOW_TELEMETRY_"


@dataclass(frozen=True)
class TelemetryConfig:
    """Tunables shared by the store, the connection and the history client."""

    stream_url: str = "ws://127.0.0.1:8080/flowbuilder/status/stream"
    api_url: str = "http://127.0.0.1:8080"
    log_capacity: int = 1000
    history_page_size: int = 100
    connect_timeout: float = 10.0
    fetch_timeout: float = 10.0
    reconnect_base_delay: float = 1.0
    reconnect_max_delay: float = 30.0
    reconnect_max_attempts: int = 5
    near_zero_epsilon: float = 0.01
    message_logger_source: str = MESSAGE_LOGGER_SOURCE

    def __post_init__(self) -> None:
        if self.log_capacity <= 0:
            raise ValueError("log_capacity must be positive")
        if self.history_page_size <= 0:
            raise ValueError("history_page_size must be positive")
        if self.connect_timeout <= 0 or self.fetch_timeout <= 0:
            raise ValueError("timeouts must be positive")
        if self.reconnect_base_delay <= 0:
            raise ValueError("reconnect_base_delay must be positive")
        if self.reconnect_max_delay < self.reconnect_base_delay:
            raise ValueError("reconnect_max_delay must be >= reconnect_base_delay")
        if self.reconnect_max_attempts < 0:
            raise ValueError("reconnect_max_attempts must be >= 0")

    @classmethod
    def from_env(
        cls,
        environ: Optional[Mapping[str, str]] = None,
        **overrides: Any,
    ) -> "TelemetryConfig":
        """Build a config from ``FLOW_TELEMETRY_*`` variables.

        Keyword ``overrides`` win over the environment; ``None`` values are
        ignored so unset command line flags fall through.
        """

        environ = os.environ if environ is None else environ
        values: Dict[str, Any] = {}
        for item in fields(cls):
            raw = environ.get(f"{ENV_PREFIX}{item.name.upper()}")
            if raw is None or raw.strip() == "":
                continue
            values[item.name] = _coerce(item.name, raw.strip(), type(getattr(_DEFAULTS, item.name)))

        values.update({key: value for key, value in overrides.items() if value is not None})
        return replace(_DEFAULTS, **values)


def _coerce(name: str, raw: str, kind: type) -> Any:
    try:
        return kind(raw)
    except ValueError as exc:
        raise ValueError(f"Invalid value for {ENV_PREFIX}{name.upper()}: {raw!r}") from exc


_DEFAULTS = TelemetryConfig()
