"""Core runtime components for flow telemetry aggregation."""

from .aggregate_store import AggregateStore, HistoryErrorInfo, TelemetrySnapshot
from .config import TelemetryConfig
from .connection_manager import ConnectionManager
from .event_buffer import BoundedEventBuffer
from .fanout import SnapshotBroadcaster
from .frame_schemas import ConnectionState, LogEntry, LogLevel, MetricSample, RuntimeMessage
from .history_reconciler import HistoryReconciler
from .messages_client import HistoryErrorKind, HistoryFetchError, MessagesClient
from .rate_calculator import RateCalculator, RateState
from .reconnect_policy import LoopScheduler, ReconnectPolicy
from .session import FlowTelemetrySession

__all__ = [
    "AggregateStore",
    "BoundedEventBuffer",
    "ConnectionManager",
    "ConnectionState",
    "FlowTelemetrySession",
    "HistoryErrorInfo",
    "HistoryErrorKind",
    "HistoryFetchError",
    "HistoryReconciler",
    "LogEntry",
    "LogLevel",
    "LoopScheduler",
    "MessagesClient",
    "MetricSample",
    "RateCalculator",
    "RateState",
    "ReconnectPolicy",
    "RuntimeMessage",
    "SnapshotBroadcaster",
    "TelemetryConfig",
    "TelemetrySnapshot",
]
