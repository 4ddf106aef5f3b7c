"""Lifecycle wrapper composing the store with a reconnect policy."""

from __future__ import annotations

import logging
from typing import Any, Callable, Optional

from .aggregate_store import AggregateStore, TelemetrySnapshot
from .config import TelemetryConfig
from .connection_manager import Connector
from .fanout import Unsubscribe
from .messages_client import MessagesSource
from .reconnect_policy import ReconnectPolicy, Scheduler


LOGGER = logging.getLogger(__name__)


class FlowTelemetrySession:
    """Telemetry for one open flow view.

    ``open()`` starts streaming and enables automatic reconnects, ``close()``
    stops retries, disconnects and releases the history client.  The session
    can also be used as an async context manager.
    """

    def __init__(
        self,
        config: Optional[TelemetryConfig] = None,
        *,
        store: Optional[AggregateStore] = None,
        connector: Optional[Connector] = None,
        messages_source: Optional[MessagesSource] = None,
        scheduler: Optional[Scheduler] = None,
        **store_kwargs: Any,
    ) -> None:
        self._config = config or TelemetryConfig()
        self._store = store or AggregateStore(
            self._config,
            connector=connector,
            messages_source=messages_source,
            **store_kwargs,
        )
        connection = self._store.connection
        self._policy = ReconnectPolicy(
            connection.connect,
            scheduler=scheduler,
            base_delay=self._config.reconnect_base_delay,
            max_delay=self._config.reconnect_max_delay,
            max_attempts=self._config.reconnect_max_attempts,
            on_give_up=connection.report_error,
        )
        connection.add_state_listener(self._policy.on_state_change)
        self._flow_id: Optional[str] = None

    @property
    def store(self) -> AggregateStore:
        return self._store

    @property
    def policy(self) -> ReconnectPolicy:
        return self._policy

    @property
    def flow_id(self) -> Optional[str]:
        return self._flow_id

    def snapshot(self) -> TelemetrySnapshot:
        return self._store.get_snapshot()

    def subscribe(
        self,
        callback: Callable[[TelemetrySnapshot], None],
        *,
        subscriber_id: str = "anonymous",
    ) -> Unsubscribe:
        return self._store.subscribe(callback, subscriber_id=subscriber_id)

    async def open(self, flow_id: str) -> None:
        if self._flow_id == flow_id and self._policy.active:
            return
        LOGGER.info("Opening telemetry session for flow %s", flow_id)
        self._flow_id = flow_id
        self._policy.start(flow_id)
        await self._store.connect(flow_id)

    async def load_history(self, limit: Optional[int] = None) -> bool:
        return await self._store.load_history(limit)

    async def close(self) -> None:
        if self._flow_id is not None:
            LOGGER.info("Closing telemetry session for flow %s", self._flow_id)
        self._policy.stop()
        self._flow_id = None
        await self._store.close()

    async def __aenter__(self) -> "FlowTelemetrySession":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()
