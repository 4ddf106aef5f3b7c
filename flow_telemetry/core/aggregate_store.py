"""Single source of truth for one flow's runtime telemetry."""

from __future__ import annotations

import asyncio
import itertools
import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

from .config import TelemetryConfig
from .connection_manager import ConnectionManager, Connector, RawFrame
from .event_buffer import BoundedEventBuffer
from .fanout import SnapshotBroadcaster, Unsubscribe
from .frame_parser import frame_kind, parse_flow_status, parse_health, parse_log, parse_metric
from .frame_schemas import (
    ConnectionState,
    FlowStatus,
    HealthSnapshot,
    LogEntry,
    MalformedFrameError,
    MetricSample,
    RuntimeMessage,
    message_from_log,
)
from .history_reconciler import HistoryReconciler
from .messages_client import (
    HistoryErrorKind,
    HistoryFetchError,
    MessagesClient,
    MessagesSource,
)
from .rate_calculator import RateCalculator


LOGGER = logging.getLogger(__name__)

_EMPTY: Mapping[str, Any] = MappingProxyType({})


@dataclass(frozen=True, slots=True)
class HistoryErrorInfo:
    kind: HistoryErrorKind
    message: str
    status: Optional[int] = None

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"kind": self.kind.value, "message": self.message}
        if self.status is not None:
            payload["status"] = self.status
        return payload


@dataclass(frozen=True, slots=True)
class TelemetrySnapshot:
    """Immutable view of the store handed to subscribers."""

    version: int = 0
    flow_id: Optional[str] = None
    connection_state: ConnectionState = ConnectionState.DISCONNECTED
    error: Optional[str] = None
    health: Optional[HealthSnapshot] = None
    flow_status: Optional[FlowStatus] = None
    logs: Tuple[LogEntry, ...] = ()
    messages: Tuple[RuntimeMessage, ...] = ()
    metrics_raw: Mapping[str, MetricSample] = field(default_factory=lambda: _EMPTY)
    metrics_rates: Mapping[str, Optional[float]] = field(default_factory=lambda: _EMPTY)
    last_metrics_timestamp: Optional[float] = None
    history_error: Optional[HistoryErrorInfo] = None
    history_loading: bool = False
    history_total: Optional[int] = None
    has_more_history: bool = True
    dropped_frames: int = 0

    @property
    def connected(self) -> bool:
        return self.connection_state is ConnectionState.CONNECTED

    def to_payload(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "flow_id": self.flow_id,
            "connection_state": self.connection_state.value,
            "error": self.error,
            "health": None if self.health is None else self.health.to_payload(),
            "flow_status": None if self.flow_status is None else self.flow_status.to_payload(),
            "logs": [entry.to_payload() for entry in self.logs],
            "messages": [message.to_payload() for message in self.messages],
            "metrics_raw": {key: sample.to_payload() for key, sample in self.metrics_raw.items()},
            "metrics_rates": dict(self.metrics_rates),
            "last_metrics_timestamp": self.last_metrics_timestamp,
            "history_error": None if self.history_error is None else self.history_error.to_payload(),
            "history_loading": self.history_loading,
            "history_total": self.history_total,
            "has_more_history": self.has_more_history,
            "dropped_frames": self.dropped_frames,
        }


def _now_ms() -> float:
    return time.time() * 1000


def _new_id() -> str:
    return uuid.uuid4().hex


class AggregateStore:
    """Own all telemetry state for the active flow and publish snapshots.

    Frames are applied strictly in arrival order through :meth:`on_frame`.
    Every mutation ends with one new :class:`TelemetrySnapshot` being
    published; previously published snapshots are never modified.
    """

    def __init__(
        self,
        config: Optional[TelemetryConfig] = None,
        *,
        connector: Optional[Connector] = None,
        messages_source: Optional[MessagesSource] = None,
        id_factory: Callable[[], str] = _new_id,
        clock: Callable[[], float] = _now_ms,
    ) -> None:
        self._config = config or TelemetryConfig()
        self._id_factory = id_factory
        self._clock = clock
        self._connection = ConnectionManager(
            self._config.stream_url,
            on_frame=self.ingest_raw,
            connector=connector,
            connect_timeout=self._config.connect_timeout,
        )
        self._connection.add_state_listener(self._on_connection_state)
        if messages_source is None:
            self._messages_source: MessagesSource = MessagesClient(
                self._config.api_url, timeout=self._config.fetch_timeout
            )
            self._owns_messages_source = True
        else:
            self._messages_source = messages_source
            self._owns_messages_source = False

        self._sequence = itertools.count(1)
        self._logs: BoundedEventBuffer[LogEntry] = BoundedEventBuffer(self._config.log_capacity)
        self._reconciler = HistoryReconciler(self._sequence)
        self._calculators: Dict[str, RateCalculator] = {}
        self._metrics_raw: Dict[str, MetricSample] = {}
        self._metrics_view: Optional[Tuple[Mapping[str, MetricSample], Mapping[str, Optional[float]]]] = None
        self._last_metrics_timestamp: Optional[float] = None
        self._health: Optional[HealthSnapshot] = None
        self._flow_status: Optional[FlowStatus] = None
        self._messages: Tuple[RuntimeMessage, ...] = ()
        self._messages_dirty = False
        self._dropped_frames = 0
        self._version = 0

        self._history_task: Optional[asyncio.Task] = None
        self._history_generation = 0
        self._history_error: Optional[HistoryErrorInfo] = None
        self._history_cursor: Optional[str] = None
        self._history_offset = 0
        self._history_total: Optional[int] = None
        self._has_more_history = True

        self._broadcaster: SnapshotBroadcaster[TelemetrySnapshot] = SnapshotBroadcaster(
            self._build_snapshot()
        )

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------
    @property
    def config(self) -> TelemetryConfig:
        return self._config

    @property
    def connection(self) -> ConnectionManager:
        return self._connection

    @property
    def broadcaster(self) -> SnapshotBroadcaster[TelemetrySnapshot]:
        return self._broadcaster

    def get_snapshot(self) -> TelemetrySnapshot:
        return self._broadcaster.current

    def subscribe(
        self,
        callback: Callable[[TelemetrySnapshot], None],
        *,
        subscriber_id: str = "anonymous",
    ) -> Unsubscribe:
        return self._broadcaster.subscribe(callback, subscriber_id=subscriber_id)

    def rate_calculator(self, component: str, metric_name: str) -> Optional[RateCalculator]:
        return self._calculators.get(f"{component}:{metric_name}")

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------
    async def connect(self, flow_id: str) -> None:
        """Stream telemetry for ``flow_id``; switching flows resets all state."""

        current = self._connection.flow_id
        if current is not None and current != flow_id:
            self._cancel_history()
            await self._connection.disconnect()
            self._reset_state()
            self._publish()
        await self._connection.connect(flow_id)

    async def disconnect(self) -> None:
        self._cancel_history()
        await self._connection.disconnect()

    async def close(self) -> None:
        await self.disconnect()
        if self._owns_messages_source and isinstance(self._messages_source, MessagesClient):
            await self._messages_source.close()

    def _on_connection_state(self, state: ConnectionState, error: Optional[str]) -> None:
        self._publish()

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------
    def ingest_raw(self, raw: RawFrame) -> bool:
        """Decode a JSON frame from the transport and apply it."""

        try:
            frame = json.loads(raw)
        except (TypeError, ValueError):
            self._drop(None, "invalid JSON")
            self._publish()
            return False
        if not isinstance(frame, dict):
            self._drop(None, "frame is not an object")
            self._publish()
            return False
        return self.on_frame(frame)

    def on_frame(self, frame: Mapping[str, Any]) -> bool:
        """Apply one frame; malformed frames are dropped and counted."""

        if not isinstance(frame, Mapping):
            self._drop(None, "frame is not an object")
            self._publish()
            return False

        kind: Optional[str] = None
        try:
            kind = frame_kind(frame)
            if kind == "log":
                self._apply_log(frame)
            elif kind == "metric":
                self._apply_metric(frame)
            elif kind == "health":
                self._health = parse_health(frame)
            else:
                self._flow_status = parse_flow_status(frame)
        except MalformedFrameError as exc:
            self._drop(frame.get("type") if kind is None else kind, str(exc))
            self._publish()
            return False
        except Exception:
            LOGGER.exception("Unexpected failure while ingesting %s frame", kind)
            self._drop(kind, "internal error")
            self._publish()
            return False

        self._publish()
        return True

    def _apply_log(self, frame: Mapping[str, Any]) -> None:
        parsed = parse_log(frame, now=self._clock())
        entry = LogEntry(
            id=self._id_factory(),
            timestamp=parsed.timestamp,
            level=parsed.level,
            source=parsed.source,
            message=parsed.message,
            fields=parsed.fields,
            sequence=next(self._sequence),
        )
        evicted = self._logs.append(entry)
        source = self._config.message_logger_source
        if entry.source == source or (evicted is not None and evicted.source == source):
            self._messages_dirty = True

    def _apply_metric(self, frame: Mapping[str, Any]) -> None:
        sample = parse_metric(frame, now=self._clock())
        key = sample.key

        if sample.is_counter:
            calculator = self._calculators.get(key)
            if calculator is None:
                calculator = RateCalculator(epsilon=self._config.near_zero_epsilon)
                self._calculators[key] = calculator
            if not calculator.accepts(sample.timestamp):
                LOGGER.debug("Ignoring stale sample for %s at %s", key, sample.timestamp)
                return
            calculator.observe(sample.value, sample.timestamp)
        else:
            previous = self._metrics_raw.get(key)
            if previous is not None and sample.timestamp <= previous.timestamp:
                return
            # a key that changed from counter to gauge keeps no stale rate
            self._calculators.pop(key, None)

        self._metrics_raw[key] = sample
        self._metrics_view = None
        if self._last_metrics_timestamp is None or sample.timestamp > self._last_metrics_timestamp:
            self._last_metrics_timestamp = sample.timestamp

    def _drop(self, kind: Optional[str], reason: str) -> None:
        self._dropped_frames += 1
        LOGGER.warning(
            "Dropping %s frame: %s",
            kind or "unknown",
            reason,
            extra={"frame_type": kind, "dropped_frames": self._dropped_frames},
        )

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------
    def clear_logs(self) -> None:
        """Empty the log view and merged history; metrics and health survive."""

        self._cancel_history()
        self._logs.clear()
        self._reconciler.reset()
        self._reset_history_paging()
        self._messages_dirty = True
        self._publish()

    def reset(self) -> None:
        """Forget everything except the connection."""

        self._cancel_history()
        self._reset_state()
        self._publish()

    def dismiss_history_error(self) -> None:
        if self._history_error is None:
            return
        self._history_error = None
        self._publish()

    def _reset_state(self) -> None:
        self._logs.clear()
        self._reconciler.reset()
        self._reset_history_paging()
        self._calculators.clear()
        self._metrics_raw.clear()
        self._metrics_view = None
        self._last_metrics_timestamp = None
        self._health = None
        self._flow_status = None
        self._history_error = None
        self._dropped_frames = 0
        self._messages_dirty = True

    def _reset_history_paging(self) -> None:
        self._history_cursor = None
        self._history_offset = 0
        self._history_total = None
        self._has_more_history = True

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------
    async def load_history(self, limit: Optional[int] = None) -> bool:
        """Fetch the next page of historical messages and merge it.

        Returns ``True`` when a page was merged.  Failures are reported on the
        snapshot's ``history_error`` and leave merged data untouched.
        """

        flow_id = self._connection.flow_id
        if flow_id is None:
            LOGGER.warning("Cannot load history without an active flow")
            return False

        task = self._history_task
        if task is None or task.done():
            self._history_generation += 1
            task = asyncio.create_task(
                self._fetch_history(
                    flow_id,
                    limit or self._config.history_page_size,
                    self._history_cursor,
                    self._history_generation,
                ),
                name=f"telemetry-history:{flow_id}",
            )
            self._history_task = task
            self._publish()

        generation = self._history_generation
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            if generation != self._history_generation:
                return False
            raise

    async def _fetch_history(
        self,
        flow_id: str,
        limit: int,
        cursor: Optional[str],
        generation: int,
    ) -> bool:
        try:
            page = await self._messages_source.fetch_messages(flow_id, limit=limit, cursor=cursor)
        except HistoryFetchError as exc:
            error = HistoryErrorInfo(kind=exc.kind, message=str(exc), status=exc.status)
        except Exception as exc:
            LOGGER.exception("Historical message fetch failed unexpectedly")
            error = HistoryErrorInfo(kind=HistoryErrorKind.NETWORK_ERROR, message=str(exc))
        else:
            error = None

        if generation != self._history_generation or flow_id != self._connection.flow_id:
            LOGGER.debug("Discarding stale history response for flow %s", flow_id)
            return False

        self._history_task = None
        if error is not None:
            LOGGER.warning("Loading history for flow %s failed: %s", flow_id, error.message)
            self._history_error = error
            self._publish()
            return False

        self._reconciler.add_history(page.messages)
        self._history_offset += len(page.messages)
        self._history_cursor = page.next_cursor or str(self._history_offset)
        if page.total is not None:
            self._history_total = page.total
        if page.next_cursor is not None:
            self._has_more_history = True
        elif self._history_total is not None:
            self._has_more_history = self._history_offset < self._history_total
        else:
            self._has_more_history = len(page.messages) >= limit
        self._history_error = None
        self._messages_dirty = True
        self._publish()
        return True

    def _cancel_history(self) -> None:
        self._history_generation += 1
        task, self._history_task = self._history_task, None
        if task is not None and not task.done():
            task.cancel()

    # ------------------------------------------------------------------
    # Snapshot publication
    # ------------------------------------------------------------------
    def _publish(self) -> None:
        self._broadcaster.publish(self._build_snapshot())

    def _build_snapshot(self) -> TelemetrySnapshot:
        self._version += 1
        metrics_raw, metrics_rates = self._metrics_snapshot()
        task = self._history_task
        return TelemetrySnapshot(
            version=self._version,
            flow_id=self._connection.flow_id,
            connection_state=self._connection.state,
            error=self._connection.error,
            health=self._health,
            flow_status=self._flow_status,
            logs=self._logs.snapshot(),
            messages=self._merged_messages(),
            metrics_raw=metrics_raw,
            metrics_rates=metrics_rates,
            last_metrics_timestamp=self._last_metrics_timestamp,
            history_error=self._history_error,
            history_loading=task is not None and not task.done(),
            history_total=self._history_total,
            has_more_history=self._has_more_history,
            dropped_frames=self._dropped_frames,
        )

    def _metrics_snapshot(self) -> Tuple[Mapping[str, MetricSample], Mapping[str, Optional[float]]]:
        if self._metrics_view is None:
            rates = {key: calculator.rate for key, calculator in self._calculators.items()}
            self._metrics_view = (
                MappingProxyType(dict(self._metrics_raw)),
                MappingProxyType(rates),
            )
        return self._metrics_view

    def _merged_messages(self) -> Tuple[RuntimeMessage, ...]:
        if self._messages_dirty:
            source = self._config.message_logger_source
            live = (message_from_log(entry) for entry in self._logs.snapshot() if entry.source == source)
            self._messages = self._reconciler.merge(live)
            self._messages_dirty = False
        return self._messages
