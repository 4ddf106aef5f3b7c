"""Pure projections over :class:`TelemetrySnapshot` objects.

Nothing here caches results: every call recomputes from the snapshot it is
given, so a view can never outlive the snapshot it was derived from.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence, Tuple

from .aggregate_store import TelemetrySnapshot
from .frame_schemas import MESSAGE_LOGGER_SOURCE, LogEntry, LogLevel, MetricSample, RuntimeMessage, metric_key
from .rate_calculator import NEAR_ZERO_EPSILON, is_near_zero


@dataclass(frozen=True, slots=True)
class MetricRow:
    component: str
    metric_name: str
    rate: Optional[float]
    raw: MetricSample
    near_zero: bool = False


def filter_logs(
    snapshot: TelemetrySnapshot,
    *,
    min_level: Optional[LogLevel] = None,
    sources: Optional[Iterable[str]] = None,
) -> Tuple[LogEntry, ...]:
    wanted = set(sources) if sources else None
    return tuple(
        entry
        for entry in snapshot.logs
        if (min_level is None or entry.level >= min_level)
        and (wanted is None or entry.source in wanted)
    )


def application_logs(
    snapshot: TelemetrySnapshot, *, message_source: str = MESSAGE_LOGGER_SOURCE
) -> Tuple[LogEntry, ...]:
    """Logs excluding the message-logger component."""

    return tuple(entry for entry in snapshot.logs if entry.source != message_source)


def message_logs(
    snapshot: TelemetrySnapshot, *, message_source: str = MESSAGE_LOGGER_SOURCE
) -> Tuple[LogEntry, ...]:
    return tuple(entry for entry in snapshot.logs if entry.source == message_source)


def log_sources(snapshot: TelemetrySnapshot) -> List[str]:
    return sorted({entry.source for entry in snapshot.logs})


def metric_rate(snapshot: TelemetrySnapshot, component: str, metric_name: str) -> Optional[float]:
    return snapshot.metrics_rates.get(metric_key(component, metric_name))


def metrics_array(
    snapshot: TelemetrySnapshot, *, epsilon: float = NEAR_ZERO_EPSILON
) -> List[MetricRow]:
    """Every metric with its latest rate, sorted by component then name."""

    rows = [
        MetricRow(
            component=sample.component,
            metric_name=sample.metric_name,
            rate=snapshot.metrics_rates.get(key),
            raw=sample,
            near_zero=is_near_zero(snapshot.metrics_rates.get(key), epsilon),
        )
        for key, sample in snapshot.metrics_raw.items()
    ]
    rows.sort(key=lambda row: (row.component, row.metric_name))
    return rows


def filter_messages(
    messages: Sequence[RuntimeMessage],
    *,
    direction: Optional[str] = None,
    trace_filter: Optional[str] = None,
) -> Tuple[RuntimeMessage, ...]:
    """Filter by exact direction and case-insensitive trace id substring."""

    needle = trace_filter.strip().lower() if trace_filter else ""
    return tuple(
        message
        for message in messages
        if (direction is None or message.direction == direction)
        and (
            not needle
            or (message.trace_id is not None and needle in message.trace_id.lower())
        )
    )


def message_logger_available(
    snapshot: TelemetrySnapshot, *, message_source: str = MESSAGE_LOGGER_SOURCE
) -> bool:
    return snapshot.health is not None and snapshot.health.component(message_source) is not None
