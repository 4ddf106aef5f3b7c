"""Canonical data shapes produced by the telemetry engine.

Frames arrive from the pipeline backend as loosely shaped JSON objects.  The
dataclasses defined here are the typed, immutable form the aggregate store keeps
in its snapshots.  Every type exposes a ``to_payload`` helper that collapses it
back into plain ``dict`` objects ready for serialisation, so command line tools
and remote consumers see consistently shaped data.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional, Tuple


MESSAGE_LOGGER_SOURCE = "message-logger"
TRACE_ID_FIELDS = ("message_id", "trace_id")


class TelemetryError(RuntimeError):
    """Base class for errors raised by the telemetry engine."""


class MalformedFrameError(TelemetryError):
    """Raised when an inbound frame cannot be interpreted."""


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERRORED = "errored"


class LogLevel(IntEnum):
    """Ordered log severities."""

    DEBUG = 0
    INFO = 1
    WARN = 2
    ERROR = 3

    @classmethod
    def parse(cls, raw: Any) -> "LogLevel":
        if isinstance(raw, LogLevel):
            return raw
        if not isinstance(raw, str):
            raise MalformedFrameError(f"Invalid log level {raw!r}")
        name = raw.strip().upper()
        if name == "WARNING":
            name = "WARN"
        try:
            return cls[name]
        except KeyError:
            raise MalformedFrameError(f"Invalid log level {raw!r}") from None


class ComponentStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    ERROR = "error"


class FlowState(str, Enum):
    RUNNING = "running"
    STOPPED = "stopped"
    ERROR = "error"
    DEPLOYING = "deploying"
    NOT_DEPLOYED = "not_deployed"


def freeze_fields(fields: Optional[Mapping[str, Any]]) -> Mapping[str, Any]:
    """Return a read-only copy of an open metadata map."""

    if not fields:
        return MappingProxyType({})
    return MappingProxyType({str(key): value for key, value in fields.items()})


def extract_trace_id(fields: Mapping[str, Any]) -> Optional[str]:
    """Return the trace id carried in ``fields``, preferring ``message_id``."""

    for key in TRACE_ID_FIELDS:
        value = fields.get(key)
        if value is not None and value != "":
            return str(value)
    return None


@dataclass(frozen=True, slots=True)
class LogEntry:
    """Single log line ingested from the stream."""

    id: str
    timestamp: float
    level: LogLevel
    source: str
    message: str
    fields: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))
    sequence: int = 0

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "id": self.id,
            "timestamp": self.timestamp,
            "level": self.level.name,
            "source": self.source,
            "message": self.message,
        }
        if self.fields:
            payload["fields"] = dict(self.fields)
        return payload


@dataclass(frozen=True, slots=True)
class MetricSample:
    """Latest raw value observed for a ``component:metricName`` key."""

    component: str
    metric_name: str
    value: float
    timestamp: float
    metric_type: str = "counter"
    labels: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))

    @property
    def key(self) -> str:
        return metric_key(self.component, self.metric_name)

    @property
    def is_counter(self) -> bool:
        return self.metric_type == "counter"

    def to_payload(self) -> Dict[str, Any]:
        return {
            "component": self.component,
            "name": self.metric_name,
            "type": self.metric_type,
            "value": self.value,
            "timestamp": self.timestamp,
            "labels": dict(self.labels),
        }


def metric_key(component: str, metric_name: str) -> str:
    return f"{component}:{metric_name}"


@dataclass(frozen=True, slots=True)
class ComponentHealth:
    name: str
    type: str
    status: ComponentStatus
    message: Optional[str] = None

    @property
    def healthy(self) -> bool:
        return self.status is ComponentStatus.HEALTHY

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "name": self.name,
            "type": self.type,
            "status": self.status.value,
            "healthy": self.healthy,
        }
        if self.message is not None:
            payload["message"] = self.message
        return payload


@dataclass(frozen=True, slots=True)
class HealthSnapshot:
    """Health of the running flow, replaced wholesale on every health frame."""

    overall_status: ComponentStatus
    components: Tuple[ComponentHealth, ...] = ()

    @property
    def counts(self) -> Dict[str, int]:
        counts = {status.value: 0 for status in ComponentStatus}
        for component in self.components:
            counts[component.status.value] += 1
        return counts

    def component(self, name: str) -> Optional[ComponentHealth]:
        for component in self.components:
            if component.name == name:
                return component
        return None

    def to_payload(self) -> Dict[str, Any]:
        return {
            "overall": {"status": self.overall_status.value, "counts": self.counts},
            "components": [component.to_payload() for component in self.components],
        }


def derive_overall_status(components: Tuple[ComponentHealth, ...]) -> ComponentStatus:
    statuses = {component.status for component in components}
    if ComponentStatus.ERROR in statuses:
        return ComponentStatus.ERROR
    if ComponentStatus.DEGRADED in statuses:
        return ComponentStatus.DEGRADED
    return ComponentStatus.HEALTHY


@dataclass(frozen=True, slots=True)
class FlowStatus:
    state: FlowState
    prev_state: Optional[FlowState] = None
    timestamp: Optional[float] = None
    error: Optional[str] = None
    deployed_at: Optional[float] = None
    started_at: Optional[float] = None

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"state": self.state.value}
        if self.prev_state is not None:
            payload["prev_state"] = self.prev_state.value
        if self.timestamp is not None:
            payload["timestamp"] = self.timestamp
        if self.error is not None:
            payload["error"] = self.error
        if self.deployed_at is not None:
            payload["deployed_at"] = self.deployed_at
        if self.started_at is not None:
            payload["started_at"] = self.started_at
        return payload


@dataclass(frozen=True, slots=True)
class RuntimeMessage:
    """A message-trace entry, sourced either live or from the history API."""

    id: str
    timestamp: float
    subject: str
    direction: str
    component: str
    summary: str = ""
    trace_id: Optional[str] = None
    metadata: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))
    origin: str = "live"
    sequence: int = 0

    @property
    def dedup_key(self) -> Optional[str]:
        """Composite identity used when merging live and historical entries.

        Live entries without a trace id have no key and never collide.
        """

        if self.trace_id is not None:
            # 1000 and 1000.0 must produce the same key
            return f"{self.trace_id}:{float(self.timestamp)!r}"
        if self.origin == "history" and self.id:
            return f"id:{self.id}"
        return None

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "id": self.id,
            "timestamp": self.timestamp,
            "subject": self.subject,
            "direction": self.direction,
            "component": self.component,
            "summary": self.summary,
            "origin": self.origin,
        }
        if self.trace_id is not None:
            payload["trace_id"] = self.trace_id
        if self.metadata:
            payload["metadata"] = dict(self.metadata)
        return payload


_MESSAGE_KEYS = {"subject", "direction", "component"}


def message_from_log(entry: LogEntry) -> RuntimeMessage:
    """Reinterpret a message-logger log line as a :class:`RuntimeMessage`."""

    fields = entry.fields
    return RuntimeMessage(
        id=entry.id,
        timestamp=entry.timestamp,
        subject=str(fields.get("subject", "")),
        direction=str(fields.get("direction", "")),
        component=str(fields.get("component", entry.source)),
        summary=entry.message,
        trace_id=extract_trace_id(fields),
        metadata=freeze_fields(
            {key: value for key, value in fields.items() if key not in _MESSAGE_KEYS}
        ),
        origin="live",
        sequence=entry.sequence,
    )


def message_from_record(record: Mapping[str, Any], *, sequence: int = 0) -> RuntimeMessage:
    """Normalise a flat historical record returned by the messages API."""

    timestamp = record.get("timestamp")
    if (
        isinstance(timestamp, bool)
        or not isinstance(timestamp, (int, float))
        or not math.isfinite(timestamp)
    ):
        raise MalformedFrameError(f"Historical message has no numeric timestamp: {record!r}")

    trace_id = extract_trace_id(record)
    opaque_id = record.get("id", record.get("message_id"))
    known = _MESSAGE_KEYS | {"id", "timestamp", "summary", "message"}
    return RuntimeMessage(
        id="" if opaque_id is None else str(opaque_id),
        timestamp=float(timestamp),
        subject=str(record.get("subject", "")),
        direction=str(record.get("direction", "")),
        component=str(record.get("component", "")),
        summary=str(record.get("summary", record.get("message", ""))),
        trace_id=trace_id,
        metadata=freeze_fields(
            {key: value for key, value in record.items() if key not in known}
        ),
        origin="history",
        sequence=sequence,
    )
