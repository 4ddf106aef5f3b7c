"""Single websocket subscription to the runtime status stream."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Protocol, Union
from urllib.parse import urlencode

import websockets
from websockets.exceptions import ConnectionClosed

from .frame_schemas import ConnectionState


LOGGER = logging.getLogger(__name__)

RawFrame = Union[str, bytes]
FrameCallback = Callable[[RawFrame], None]
StateListener = Callable[[ConnectionState, Optional[str]], None]


class Transport(Protocol):
    def __aiter__(self) -> AsyncIterator[RawFrame]: ...

    async def send(self, message: str) -> None: ...

    async def close(self) -> None: ...


Connector = Callable[[str], Awaitable[Transport]]


async def websocket_connector(url: str) -> Transport:
    """Open a websocket; the manager applies its own open timeout."""

    return await websockets.connect(url, open_timeout=None)


class ConnectionManager:
    """Own one stream subscription per flow id and report its state.

    Inbound frames are handed, unparsed and in arrival order, to ``on_frame``.
    A transport error or a close initiated by the server moves the manager to
    :attr:`ConnectionState.ERRORED`; retrying is left to the caller.
    """

    def __init__(
        self,
        stream_url: str,
        *,
        on_frame: FrameCallback,
        connector: Optional[Connector] = None,
        connect_timeout: float = 10.0,
    ) -> None:
        if connect_timeout <= 0:
            raise ValueError("connect_timeout must be positive")

        self._stream_url = stream_url
        self._on_frame = on_frame
        self._connector = connector or websocket_connector
        self._connect_timeout = connect_timeout
        self._state = ConnectionState.DISCONNECTED
        self._error: Optional[str] = None
        self._flow_id: Optional[str] = None
        self._transport: Optional[Transport] = None
        self._reader: Optional[asyncio.Task] = None
        self._generation = 0
        self._listeners: List[StateListener] = []

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------
    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def error(self) -> Optional[str]:
        return self._error

    @property
    def flow_id(self) -> Optional[str]:
        return self._flow_id

    def add_state_listener(self, listener: StateListener) -> None:
        self._listeners.append(listener)

    def remove_state_listener(self, listener: StateListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def build_url(self, flow_id: str) -> str:
        separator = "&" if "?" in self._stream_url else "?"
        return f"{self._stream_url}{separator}{urlencode({'flowId': flow_id})}"

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def connect(self, flow_id: str) -> None:
        """Subscribe to ``flow_id``, replacing any subscription to another flow."""

        if self._flow_id == flow_id and self._state in (
            ConnectionState.CONNECTING,
            ConnectionState.CONNECTED,
        ):
            LOGGER.debug("Already subscribed to flow %s", flow_id)
            return

        if self._flow_id is not None or self._transport is not None:
            await self.disconnect()

        self._generation += 1
        generation = self._generation
        self._flow_id = flow_id
        url = self.build_url(flow_id)
        LOGGER.info("Connecting to %s", url)
        self._set_state(ConnectionState.CONNECTING, None)

        try:
            transport = await asyncio.wait_for(self._connector(url), self._connect_timeout)
        except asyncio.TimeoutError:
            if generation == self._generation:
                self._set_state(
                    ConnectionState.ERRORED,
                    f"Timed out connecting after {self._connect_timeout:g}s",
                )
            return
        except asyncio.CancelledError:
            if generation == self._generation:
                self._flow_id = None
                self._set_state(ConnectionState.DISCONNECTED, None)
            raise
        except Exception as exc:
            LOGGER.warning("Failed to open runtime stream for flow %s: %s", flow_id, exc)
            if generation == self._generation:
                self._set_state(
                    ConnectionState.ERRORED,
                    f"Failed to establish connection: {exc}",
                )
            return

        if generation != self._generation:
            # disconnect() or another connect() won while the socket was opening
            await _close_quietly(transport)
            return

        try:
            self._transport = transport
            self._reader = asyncio.create_task(
                self._read(transport, generation), name=f"telemetry-stream:{flow_id}"
            )
        except BaseException:
            self._transport = None
            await _close_quietly(transport)
            raise

        LOGGER.info("Connected to runtime stream for flow %s", flow_id)
        self._set_state(ConnectionState.CONNECTED, None)

    async def disconnect(self) -> None:
        """Drop the subscription; safe to call in any state."""

        self._generation += 1
        transport, reader = self._transport, self._reader
        self._transport = None
        self._reader = None
        self._flow_id = None

        if reader is not None and reader is not asyncio.current_task():
            reader.cancel()
            await asyncio.gather(reader, return_exceptions=True)
        if transport is not None:
            await _close_quietly(transport)

        if self._state is not ConnectionState.DISCONNECTED or self._error is not None:
            LOGGER.info("Disconnected from runtime stream")
            self._set_state(ConnectionState.DISCONNECTED, None)

    def report_error(self, message: str) -> None:
        """Replace the error text while errored, e.g. once retries give up."""

        if self._state is ConnectionState.ERRORED:
            self._set_state(ConnectionState.ERRORED, message)

    async def send_subscribe(
        self,
        *,
        message_types: Optional[List[str]] = None,
        log_level: Optional[str] = None,
        sources: Optional[List[str]] = None,
    ) -> bool:
        """Ask the server to filter the stream; returns False when offline."""

        if self._transport is None or self._state is not ConnectionState.CONNECTED:
            LOGGER.warning("Cannot send subscribe command - not connected")
            return False

        payload: Dict[str, Any] = {}
        if message_types is not None:
            payload["message_types"] = list(message_types)
        if log_level is not None:
            payload["log_level"] = log_level
        if sources is not None:
            payload["sources"] = list(sources)

        await self._transport.send(json.dumps({"command": "subscribe", "payload": payload}))
        return True

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    async def _read(self, transport: Transport, generation: int) -> None:
        try:
            async for raw in transport:
                if generation != self._generation:
                    return
                self._dispatch(raw)
        except asyncio.CancelledError:
            raise
        except ConnectionClosed as exc:
            reason = f"Connection lost: {exc}"
        except Exception as exc:
            LOGGER.warning("Runtime stream failed", exc_info=True)
            reason = f"Stream error: {exc}"
        else:
            reason = "Stream closed by server"
        finally:
            await _close_quietly(transport)

        if generation == self._generation:
            self._transport = None
            self._reader = None
            self._set_state(ConnectionState.ERRORED, reason)

    def _dispatch(self, raw: RawFrame) -> None:
        try:
            self._on_frame(raw)
        except Exception:
            LOGGER.exception("Frame callback failed")

    def _set_state(self, state: ConnectionState, error: Optional[str]) -> None:
        previous = self._state
        self._state = state
        self._error = error
        if state is ConnectionState.ERRORED:
            LOGGER.warning(
                "Runtime stream errored: %s",
                error,
                extra={"flow_id": self._flow_id, "previous_state": previous.value},
            )
        for listener in list(self._listeners):
            try:
                listener(state, error)
            except Exception:
                LOGGER.exception("Connection state listener failed")


async def _close_quietly(transport: Transport) -> None:
    try:
        await transport.close()
    except Exception:
        LOGGER.debug("Transport close failed", exc_info=True)
