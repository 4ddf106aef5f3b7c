"""Interpret inbound stream frames.

The backend wraps frames in an envelope ``{type, id, timestamp, flow_id,
payload}``; older producers and tests send the fields flat.  Both shapes are
accepted.  Every helper raises :class:`MalformedFrameError` for frames it cannot
interpret and never returns partially populated objects.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Mapping, Optional, Tuple

from .frame_schemas import (
    ComponentHealth,
    ComponentStatus,
    FlowState,
    FlowStatus,
    HealthSnapshot,
    LogLevel,
    MalformedFrameError,
    MetricSample,
    derive_overall_status,
    freeze_fields,
)


FRAME_KINDS = {
    "log": "log",
    "log_entry": "log",
    "metric": "metric",
    "component_metrics": "metric",
    "health": "health",
    "component_health": "health",
    "flow_status": "flow_status",
}


@dataclass(frozen=True, slots=True)
class LogFields:
    """Log frame content before the store assigns an id and sequence."""

    timestamp: float
    level: LogLevel
    source: str
    message: str
    fields: Mapping[str, Any]


def frame_kind(frame: Mapping[str, Any]) -> str:
    raw_type = frame.get("type")
    kind = FRAME_KINDS.get(raw_type) if isinstance(raw_type, str) else None
    if kind is None:
        raise MalformedFrameError(f"Unknown frame type {raw_type!r}")
    return kind


def frame_body(frame: Mapping[str, Any]) -> Mapping[str, Any]:
    payload = frame.get("payload")
    if payload is None:
        return frame
    if not isinstance(payload, Mapping):
        raise MalformedFrameError("Frame payload must be an object")
    return payload


def frame_timestamp(frame: Mapping[str, Any], body: Mapping[str, Any]) -> Optional[float]:
    for candidate in (body.get("timestamp"), frame.get("timestamp")):
        if _is_number(candidate):
            return float(candidate)
        if candidate is not None:
            raise MalformedFrameError(f"Invalid timestamp {candidate!r}")
    return None


def parse_log(frame: Mapping[str, Any], *, now: float) -> LogFields:
    body = frame_body(frame)
    timestamp = frame_timestamp(frame, body)
    source = body.get("source", body.get("component"))
    message = body.get("message")
    if not isinstance(source, str) or not source:
        raise MalformedFrameError("Log frame has no source")
    if not isinstance(message, str):
        raise MalformedFrameError("Log frame has no message")

    fields = body.get("fields")
    if fields is not None and not isinstance(fields, Mapping):
        raise MalformedFrameError("Log fields must be an object")

    return LogFields(
        timestamp=now if timestamp is None else timestamp,
        level=LogLevel.parse(body.get("level", "INFO")),
        source=source,
        message=message,
        fields=freeze_fields(fields),
    )


def parse_metric(frame: Mapping[str, Any], *, now: float) -> MetricSample:
    body = frame_body(frame)
    component = body.get("component")
    name = body.get("metricName", body.get("metric_name", body.get("name")))
    value = body.get("value")
    if not isinstance(component, str) or not component:
        raise MalformedFrameError("Metric frame has no component")
    if not isinstance(name, str) or not name:
        raise MalformedFrameError("Metric frame has no metric name")
    if not _is_number(value):
        raise MalformedFrameError(f"Metric value must be numeric, got {value!r}")

    labels = body.get("labels") or {}
    if not isinstance(labels, Mapping):
        raise MalformedFrameError("Metric labels must be an object")

    timestamp = frame_timestamp(frame, body)
    return MetricSample(
        component=component,
        metric_name=name,
        value=float(value),
        timestamp=now if timestamp is None else timestamp,
        metric_type=_metric_type(frame, body),
        labels=freeze_fields({key: str(label) for key, label in labels.items()}),
    )


def parse_health(frame: Mapping[str, Any]) -> HealthSnapshot:
    body = frame_body(frame)
    raw_components = body.get("components", [])
    if not isinstance(raw_components, list):
        raise MalformedFrameError("Health components must be a list")

    components: Tuple[ComponentHealth, ...] = tuple(
        _parse_component(item) for item in raw_components
    )

    overall = body.get("overall")
    if isinstance(overall, Mapping):
        overall = overall.get("status")
    if overall is None:
        status = derive_overall_status(components)
    else:
        status = _parse_status(overall)
    return HealthSnapshot(overall_status=status, components=components)


def parse_flow_status(frame: Mapping[str, Any]) -> FlowStatus:
    body = frame_body(frame)
    prev_state = body.get("prev_state")
    timestamp = frame_timestamp(frame, body)
    error = body.get("error")
    return FlowStatus(
        state=_parse_flow_state(body.get("state")),
        prev_state=None if prev_state is None else _parse_flow_state(prev_state),
        timestamp=timestamp,
        error=None if error is None else str(error),
        deployed_at=_optional_number(body, "deployed_at"),
        started_at=_optional_number(body, "started_at"),
    )


def _parse_component(item: Any) -> ComponentHealth:
    if not isinstance(item, Mapping):
        raise MalformedFrameError("Health component must be an object")
    name = item.get("name", item.get("component"))
    if not isinstance(name, str) or not name:
        raise MalformedFrameError("Health component has no name")
    message = item.get("message")
    return ComponentHealth(
        name=name,
        type=str(item.get("type", "unknown")),
        status=_parse_status(item.get("status")),
        message=None if message is None else str(message),
    )


def _parse_status(raw: Any) -> ComponentStatus:
    try:
        return ComponentStatus(raw)
    except ValueError:
        raise MalformedFrameError(f"Invalid health status {raw!r}") from None


def _parse_flow_state(raw: Any) -> FlowState:
    try:
        return FlowState(raw)
    except ValueError:
        raise MalformedFrameError(f"Invalid flow state {raw!r}") from None


def _metric_type(frame: Mapping[str, Any], body: Mapping[str, Any]) -> str:
    raw = body.get("metric_type", body.get("metricType"))
    # flat frames use "type" for the frame kind
    if raw is None and body is not frame:
        raw = body.get("type")
    return "counter" if raw is None else str(raw)


def _optional_number(body: Mapping[str, Any], key: str) -> Optional[float]:
    value = body.get(key)
    if value is None:
        return None
    if not _is_number(value):
        raise MalformedFrameError(f"Invalid {key} {value!r}")
    return float(value)


def _is_number(value: Any) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value)
