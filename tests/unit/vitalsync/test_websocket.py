"""Tests for the WebSocket push transport against a local `websockets` server."""

import json
from http import HTTPStatus

import pytest
from websockets.asyncio.server import ServerConnection, serve

from vitalsync.adapters.websocket import WebSocketTransport
from vitalsync.services.connection import PushEvent
from vitalsync.services.result import AuthenticationError


def url_of(server) -> str:
    host, port = server.sockets[0].getsockname()[:2]
    return f"ws://{host}:{port}"


async def test_subscriptions_and_frames() -> None:
    received: list[object] = []

    async def handler(ws: ServerConnection) -> None:
        received.append(ws.request.headers.get("Authorization"))
        received.append(json.loads(await ws.recv()))
        await ws.send(json.dumps({"event": "alert:created", "data": {"_id": "a1"}}))
        await ws.send("not json")
        await ws.send(json.dumps({"data": {"_id": "a2"}}))
        await ws.send(json.dumps({"event": "alert:deleted", "data": "a1"}))

    async with serve(handler, "127.0.0.1", 0) as server:
        transport = WebSocketTransport(url_of(server))
        await transport.connect("secret")
        await transport.send_subscriptions("subscribe", ["alerts:all", "patient:p1"])
        events = [event async for event in transport.events()]
        await transport.close()

    assert received == [
        "Bearer secret",
        {"action": "subscribe", "keys": ["alerts:all", "patient:p1"]},
    ]
    # Undecodable frames are dropped, the stream continues
    assert events == [
        PushEvent("alert:created", {"_id": "a1"}),
        PushEvent("alert:deleted", "a1"),
    ]


async def test_no_token_sends_no_authorization() -> None:
    headers: list[str | None] = []

    async def handler(ws: ServerConnection) -> None:
        headers.append(ws.request.headers.get("Authorization"))

    async with serve(handler, "127.0.0.1", 0) as server:
        transport = WebSocketTransport(url_of(server))
        await transport.connect(None)
        assert [event async for event in transport.events()] == []
        await transport.close()

    assert headers == [None]


@pytest.mark.parametrize(
    "status,expected",
    [
        (HTTPStatus.UNAUTHORIZED, AuthenticationError),
        (HTTPStatus.FORBIDDEN, AuthenticationError),
        (HTTPStatus.SERVICE_UNAVAILABLE, ConnectionError),
    ],
)
async def test_handshake_rejection(status: HTTPStatus, expected: type[Exception]) -> None:
    async def handler(ws: ServerConnection) -> None:
        await ws.close()

    def reject(connection: ServerConnection, request):
        return connection.respond(status, "rejected\n")

    async with serve(handler, "127.0.0.1", 0, process_request=reject) as server:
        transport = WebSocketTransport(url_of(server))
        with pytest.raises(expected):
            await transport.connect("secret")


async def test_unopened_transport() -> None:
    transport = WebSocketTransport("ws://127.0.0.1:9")

    with pytest.raises(ConnectionError):
        await transport.send_subscriptions("subscribe", ["alerts:all"])
    assert [event async for event in transport.events()] == []
    await transport.close()
