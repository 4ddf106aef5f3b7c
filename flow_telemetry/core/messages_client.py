"""HTTP client for the paginated historical messages endpoint."""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Protocol
from urllib.parse import quote

import aiohttp

from .frame_schemas import TelemetryError


LOGGER = logging.getLogger(__name__)


class HistoryErrorKind(str, Enum):
    NOT_FOUND = "not-found"
    SERVER_ERROR = "server-error"
    NETWORK_ERROR = "network-error"


class HistoryFetchError(TelemetryError):
    """Raised when historical messages cannot be fetched."""

    def __init__(
        self,
        message: str,
        *,
        kind: HistoryErrorKind,
        flow_id: str,
        status: Optional[int] = None,
        details: Any = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.flow_id = flow_id
        self.status = status
        self.details = details

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "kind": self.kind.value,
            "message": str(self),
            "flow_id": self.flow_id,
        }
        if self.status is not None:
            payload["status"] = self.status
        return payload


@dataclass(slots=True)
class MessagesPage:
    messages: List[Mapping[str, Any]] = field(default_factory=list)
    total: Optional[int] = None
    next_cursor: Optional[str] = None


class MessagesSource(Protocol):
    async def fetch_messages(
        self, flow_id: str, *, limit: int, cursor: Optional[str] = None
    ) -> MessagesPage: ...


class MessagesClient:
    """Fetch ``/flows/{flow_id}/runtime/messages`` pages.

    Pass an existing :class:`aiohttp.ClientSession` to share connection pools;
    otherwise a session is created lazily and released by :meth:`close`.
    """

    def __init__(
        self,
        base_url: str,
        *,
        session: Optional[aiohttp.ClientSession] = None,
        timeout: float = 10.0,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._session = session
        self._owns_session = session is None
        self._timeout = aiohttp.ClientTimeout(total=timeout)

    def url_for(self, flow_id: str) -> str:
        return f"{self._base_url}/flows/{quote(flow_id, safe='')}/runtime/messages"

    async def fetch_messages(
        self,
        flow_id: str,
        *,
        limit: int,
        cursor: Optional[str] = None,
    ) -> MessagesPage:
        params: Dict[str, str] = {"limit": str(limit)}
        if cursor is not None:
            params["cursor"] = cursor

        session = self._get_session()
        url = self.url_for(flow_id)
        LOGGER.debug("Fetching historical messages from %s", url, extra={"params": params})
        try:
            async with session.get(url, params=params, timeout=self._timeout) as resp:
                if resp.status >= 400:
                    details = await _read_error_body(resp)
                    kind = (
                        HistoryErrorKind.NOT_FOUND
                        if resp.status == 404
                        else HistoryErrorKind.SERVER_ERROR
                    )
                    raise HistoryFetchError(
                        f"Failed to fetch messages: {resp.reason or resp.status}",
                        kind=kind,
                        flow_id=flow_id,
                        status=resp.status,
                        details=details,
                    )
                text = await resp.text()
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise HistoryFetchError(
                f"Failed to fetch messages: {exc or type(exc).__name__}",
                kind=HistoryErrorKind.NETWORK_ERROR,
                flow_id=flow_id,
            ) from exc

        return _parse_page(text, flow_id)

    async def close(self) -> None:
        if self._session is not None and self._owns_session:
            await self._session.close()
            self._session = None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session


async def _read_error_body(resp: aiohttp.ClientResponse) -> Any:
    try:
        return await resp.json(content_type=None)
    except (aiohttp.ClientError, ValueError):
        return None


def _parse_page(text: str, flow_id: str) -> MessagesPage:
    try:
        body = json.loads(text)
    except json.JSONDecodeError as exc:
        raise HistoryFetchError(
            "Server returned invalid JSON",
            kind=HistoryErrorKind.SERVER_ERROR,
            flow_id=flow_id,
        ) from exc

    if not isinstance(body, dict) or not isinstance(body.get("messages", []), list):
        raise HistoryFetchError(
            "Unexpected messages response shape",
            kind=HistoryErrorKind.SERVER_ERROR,
            flow_id=flow_id,
            details=body,
        )

    total = body.get("total")
    next_cursor = body.get("next_cursor")
    return MessagesPage(
        messages=[item for item in body.get("messages", []) if isinstance(item, dict)],
        total=total if isinstance(total, int) else None,
        next_cursor=None if next_cursor is None else str(next_cursor),
    )
