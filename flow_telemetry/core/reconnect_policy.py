"""Caller-side reconnect policy with exponential backoff.

The connection manager never retries on its own.  Whatever composes the engine
attaches a :class:`ReconnectPolicy`, feeds it connection state changes and lets
it schedule the next ``connect()`` through a :class:`Scheduler`.  Tests swap the
scheduler for one they advance by hand.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional, Protocol

from .frame_schemas import ConnectionState


LOGGER = logging.getLogger(__name__)

GIVE_UP_MESSAGE = "Connection lost. Max reconnect attempts reached."


class ScheduledCall(Protocol):
    def cancel(self) -> None: ...


class Scheduler(Protocol):
    def call_later(
        self, delay: float, callback: Callable[[], Awaitable[None]]
    ) -> ScheduledCall: ...


class _LoopCall:
    def __init__(
        self,
        loop: asyncio.AbstractEventLoop,
        delay: float,
        callback: Callable[[], Awaitable[None]],
    ) -> None:
        self._loop = loop
        self._callback = callback
        self._task: Optional[asyncio.Task] = None
        self._handle = loop.call_later(delay, self._fire)

    def _fire(self) -> None:
        self._task = self._loop.create_task(self._callback())

    def cancel(self) -> None:
        self._handle.cancel()
        if self._task is not None and not self._task.done():
            self._task.cancel()


class LoopScheduler:
    """Scheduler backed by the running asyncio event loop's timers."""

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        self._loop = loop

    def call_later(
        self, delay: float, callback: Callable[[], Awaitable[None]]
    ) -> ScheduledCall:
        loop = self._loop or asyncio.get_running_loop()
        return _LoopCall(loop, delay, callback)


class ReconnectPolicy:
    """Schedule reconnect attempts after the connection errors.

    Delays grow as ``base_delay * 2 ** (attempt - 1)`` capped at ``max_delay``.
    A successful connection resets the attempt counter; after
    ``max_attempts`` consecutive failures the policy gives up and reports
    :data:`GIVE_UP_MESSAGE` through ``on_give_up``.
    """

    def __init__(
        self,
        connect: Callable[[str], Awaitable[None]],
        *,
        scheduler: Optional[Scheduler] = None,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        max_attempts: int = 5,
        on_give_up: Optional[Callable[[str], None]] = None,
    ) -> None:
        if base_delay <= 0:
            raise ValueError("base_delay must be positive")
        if max_delay < base_delay:
            raise ValueError("max_delay must be >= base_delay")
        if max_attempts < 0:
            raise ValueError("max_attempts must be >= 0")

        self._connect = connect
        self._scheduler = scheduler or LoopScheduler()
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._max_attempts = max_attempts
        self._on_give_up = on_give_up
        self._flow_id: Optional[str] = None
        self._pending: Optional[ScheduledCall] = None
        self._attempts = 0
        self._gave_up = False

    @property
    def attempts(self) -> int:
        return self._attempts

    @property
    def pending(self) -> bool:
        return self._pending is not None

    @property
    def active(self) -> bool:
        return self._flow_id is not None

    @property
    def gave_up(self) -> bool:
        return self._gave_up

    def delay_for(self, attempt: int) -> float:
        return min(self._base_delay * (2 ** (attempt - 1)), self._max_delay)

    def start(self, flow_id: str) -> None:
        self.stop()
        self._flow_id = flow_id
        self._attempts = 0
        self._gave_up = False

    def stop(self) -> None:
        """Cancel any pending attempt; no further attempts are scheduled."""

        self._flow_id = None
        if self._pending is not None:
            self._pending.cancel()
            self._pending = None

    def on_state_change(self, state: ConnectionState, error: Optional[str]) -> None:
        if self._flow_id is None:
            return

        if state is ConnectionState.CONNECTED:
            self._attempts = 0
            self._gave_up = False
            if self._pending is not None:
                self._pending.cancel()
                self._pending = None
            return

        if state is ConnectionState.ERRORED and self._pending is None and not self._gave_up:
            self._schedule()

    def _schedule(self) -> None:
        if self._attempts >= self._max_attempts:
            self._gave_up = True
            LOGGER.warning(
                "Giving up on flow %s after %d reconnect attempts",
                self._flow_id,
                self._attempts,
            )
            if self._on_give_up is not None:
                self._on_give_up(GIVE_UP_MESSAGE)
            return

        self._attempts += 1
        delay = self.delay_for(self._attempts)
        LOGGER.info(
            "Reconnecting to flow %s in %.1fs (attempt %d/%d)",
            self._flow_id,
            delay,
            self._attempts,
            self._max_attempts,
        )
        self._pending = self._scheduler.call_later(delay, self._fire)

    async def _fire(self) -> None:
        self._pending = None
        flow_id = self._flow_id
        if flow_id is None:
            return
        await self._connect(flow_id)
