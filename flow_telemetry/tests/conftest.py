"""Test configuration for flow telemetry."""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, List, Optional, Tuple, Union

import pytest

from flow_telemetry.core.aggregate_store import AggregateStore
from flow_telemetry.core.config import TelemetryConfig
from flow_telemetry.core.messages_client import MessagesPage


_END = object()


class FakeTransport:
    """In-memory stand-in for a websocket client connection."""

    def __init__(self) -> None:
        self._queue: "asyncio.Queue[Any]" = asyncio.Queue()
        self.sent: List[str] = []
        self.closed = False
        self.close_calls = 0

    def feed(self, frame: Any) -> None:
        self._queue.put_nowait(frame if isinstance(frame, (str, bytes)) else json.dumps(frame))

    def fail(self, exc: BaseException) -> None:
        self._queue.put_nowait(exc)

    def end(self) -> None:
        self._queue.put_nowait(_END)

    def __aiter__(self) -> "FakeTransport":
        return self

    async def __anext__(self) -> Any:
        if self.closed and self._queue.empty():
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _END:
            raise StopAsyncIteration
        if isinstance(item, BaseException):
            raise item
        return item

    async def send(self, message: str) -> None:
        self.sent.append(message)

    async def close(self) -> None:
        self.close_calls += 1
        if not self.closed:
            self.closed = True
            self._queue.put_nowait(_END)


class FakeConnector:
    """Connector returning :class:`FakeTransport` objects on demand."""

    def __init__(self) -> None:
        self.urls: List[str] = []
        self.transports: List[FakeTransport] = []
        self.failures: List[BaseException] = []
        self.gate: Optional[asyncio.Event] = None

    @property
    def latest(self) -> FakeTransport:
        return self.transports[-1]

    async def __call__(self, url: str) -> FakeTransport:
        self.urls.append(url)
        if self.failures:
            raise self.failures.pop(0)
        if self.gate is not None:
            await self.gate.wait()
        transport = FakeTransport()
        self.transports.append(transport)
        return transport


@dataclass
class ManualCall:
    delay: float
    callback: Callable[[], Awaitable[None]]
    cancelled: bool = False
    fired: bool = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualScheduler:
    """Scheduler whose timers only fire when the test says so."""

    def __init__(self) -> None:
        self.calls: List[ManualCall] = []

    def call_later(self, delay: float, callback: Callable[[], Awaitable[None]]) -> ManualCall:
        call = ManualCall(delay=delay, callback=callback)
        self.calls.append(call)
        return call

    @property
    def delays(self) -> List[float]:
        return [call.delay for call in self.calls]

    @property
    def pending(self) -> List[ManualCall]:
        return [call for call in self.calls if not call.cancelled and not call.fired]

    async def run_pending(self) -> int:
        fired = 0
        for call in self.pending:
            call.fired = True
            fired += 1
            await call.callback()
        return fired


class FakeMessagesSource:
    """Scripted replacement for the historical messages client."""

    def __init__(self) -> None:
        self.results: List[Union[MessagesPage, BaseException]] = []
        self.calls: List[Tuple[str, int, Optional[str]]] = []
        self.gate: Optional[asyncio.Event] = None

    def add_page(self, messages: List[dict], *, total: Optional[int] = None, next_cursor: Optional[str] = None) -> None:
        self.results.append(MessagesPage(messages=messages, total=total, next_cursor=next_cursor))

    def add_error(self, exc: BaseException) -> None:
        self.results.append(exc)

    async def fetch_messages(
        self, flow_id: str, *, limit: int, cursor: Optional[str] = None
    ) -> MessagesPage:
        self.calls.append((flow_id, limit, cursor))
        if self.gate is not None:
            await self.gate.wait()
        result = self.results.pop(0)
        if isinstance(result, BaseException):
            raise result
        return result


class IdSequence:
    def __init__(self) -> None:
        self._next = 0

    def __call__(self) -> str:
        self._next += 1
        return f"log-{self._next}"


@pytest.fixture
def connector() -> FakeConnector:
    return FakeConnector()


@pytest.fixture
def scheduler() -> ManualScheduler:
    return ManualScheduler()


@pytest.fixture
def messages_source() -> FakeMessagesSource:
    return FakeMessagesSource()


@pytest.fixture
def make_store(connector: FakeConnector, messages_source: FakeMessagesSource):
    def _make(**config_overrides: Any) -> AggregateStore:
        config = TelemetryConfig(**config_overrides)
        return AggregateStore(
            config,
            connector=connector,
            messages_source=messages_source,
            id_factory=IdSequence(),
            clock=lambda: 1_000.0,
        )

    return _make


@pytest.fixture
def settle() -> Callable[[], Awaitable[None]]:
    async def _settle(rounds: int = 20) -> None:
        for _ in range(rounds):
            await asyncio.sleep(0)

    return _settle


def log_frame(message: str, *, source: str = "graph-processor", level: str = "INFO", timestamp: float = 1_000.0, **fields: Any) -> dict:
    frame = {"type": "log", "timestamp": timestamp, "level": level, "source": source, "message": message}
    if fields:
        frame["fields"] = fields
    return frame


@pytest.fixture
def make_log_frame():
    return log_frame


@pytest.fixture
def make_message_frame():
    def _make(subject: str, *, timestamp: float, trace_id: Optional[str] = None, direction: str = "published", component: str = "comp", **extra: Any) -> dict:
        fields: dict = {"subject": subject, "direction": direction, "component": component, **extra}
        if trace_id is not None:
            fields["message_id"] = trace_id
        return log_frame(subject, source="message-logger", timestamp=timestamp, **fields)

    return _make
