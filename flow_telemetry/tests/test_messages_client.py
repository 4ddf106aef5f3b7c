import asyncio

import pytest
from aiohttp import test_utils, web

from flow_telemetry.core.messages_client import HistoryErrorKind, HistoryFetchError, MessagesClient


def _app(requests):
    async def _messages(request: web.Request) -> web.Response:
        flow_id = request.match_info["flow_id"]
        requests.append((flow_id, dict(request.query)))
        if flow_id == "missing":
            return web.json_response({"error": "flow not found"}, status=404)
        if flow_id == "broken":
            return web.json_response({"error": "boom"}, status=500)
        if flow_id == "garbled":
            return web.Response(text="<html>not json</html>", content_type="text/html")
        if flow_id == "wrong-shape":
            return web.json_response({"messages": "nope"})
        return web.json_response(
            {
                "messages": [
                    {"message_id": "m-1", "timestamp": 1000, "subject": "orders.created"},
                    "not a record",
                ],
                "total": 7,
                "next_cursor": 42,
            }
        )

    app = web.Application()
    app.router.add_get("/flows/{flow_id}/runtime/messages", _messages)
    return app


def test_fetch_messages_returns_page() -> None:
    asyncio.run(_test_fetch_messages_returns_page())


async def _test_fetch_messages_returns_page() -> None:
    requests = []
    async with test_utils.TestServer(_app(requests)) as server:
        client = MessagesClient(str(server.make_url("/")))
        try:
            page = await client.fetch_messages("flow-1", limit=50, cursor="abc")
        finally:
            await client.close()

    assert requests == [("flow-1", {"limit": "50", "cursor": "abc"})]
    assert page.total == 7
    assert page.next_cursor == "42"
    assert page.messages == [{"message_id": "m-1", "timestamp": 1000, "subject": "orders.created"}]


def test_fetch_messages_omits_cursor_on_first_page() -> None:
    asyncio.run(_test_fetch_messages_omits_cursor_on_first_page())


async def _test_fetch_messages_omits_cursor_on_first_page() -> None:
    requests = []
    async with test_utils.TestServer(_app(requests)) as server:
        client = MessagesClient(str(server.make_url("/")))
        try:
            await client.fetch_messages("flow-1", limit=100)
        finally:
            await client.close()

    assert requests == [("flow-1", {"limit": "100"})]


@pytest.mark.parametrize(
    ("flow_id", "kind", "status"),
    [
        ("missing", HistoryErrorKind.NOT_FOUND, 404),
        ("broken", HistoryErrorKind.SERVER_ERROR, 500),
        ("garbled", HistoryErrorKind.SERVER_ERROR, None),
        ("wrong-shape", HistoryErrorKind.SERVER_ERROR, None),
    ],
)
def test_fetch_errors_are_classified(flow_id, kind, status) -> None:
    asyncio.run(_test_fetch_errors_are_classified(flow_id, kind, status))


async def _test_fetch_errors_are_classified(flow_id, kind, status) -> None:
    async with test_utils.TestServer(_app([])) as server:
        client = MessagesClient(str(server.make_url("/")))
        try:
            with pytest.raises(HistoryFetchError) as excinfo:
                await client.fetch_messages(flow_id, limit=10)
        finally:
            await client.close()

    assert excinfo.value.kind is kind
    assert excinfo.value.status == status
    assert excinfo.value.flow_id == flow_id
    assert excinfo.value.to_payload()["kind"] == kind.value


def test_unreachable_server_is_network_error() -> None:
    asyncio.run(_test_unreachable_server_is_network_error())


async def _test_unreachable_server_is_network_error() -> None:
    server = test_utils.TestServer(web.Application())
    await server.start_server()
    base_url = str(server.make_url("/"))
    await server.close()

    client = MessagesClient(base_url, timeout=2)
    try:
        with pytest.raises(HistoryFetchError) as excinfo:
            await client.fetch_messages("flow-1", limit=10)
    finally:
        await client.close()

    assert excinfo.value.kind is HistoryErrorKind.NETWORK_ERROR


def test_flow_id_is_escaped_in_url() -> None:
    client = MessagesClient("http://api.test/")

    assert client.url_for("a/b c") == "http://api.test/flows/a%2Fb%20c/runtime/messages"
