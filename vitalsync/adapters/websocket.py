"""
WebSocket push transport.

Frames are JSON objects `{"event": <type>, "data": <payload>}` from the
server and `{"action": "subscribe" | "unsubscribe", "keys": [...]}` to it.
"""

import json
from collections.abc import AsyncIterator

import structlog
from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidStatus

from vitalsync.services.connection import PushEvent, SubscriptionAction
from vitalsync.services.result import AuthenticationError

logger = structlog.get_logger(__name__)


class WebSocketTransport:
    """One WebSocket connection at a time, reopened by the connection supervisor."""

    def __init__(
        self,
        url: str,
        ping_interval: float | None = 20,
        ping_timeout: float | None = 20,
        open_timeout: float | None = 10,
    ) -> None:
        self.url = url
        self.ping_interval = ping_interval
        self.ping_timeout = ping_timeout
        self.open_timeout = open_timeout
        self._ws: ClientConnection | None = None
        self.logger = logger.bind(component="websocket_transport")

    async def connect(self, token: str | None) -> None:
        headers = {"Authorization": f"Bearer {token}"} if token else None
        try:
            self._ws = await connect(
                self.url,
                additional_headers=headers,
                ping_interval=self.ping_interval,
                ping_timeout=self.ping_timeout,
                open_timeout=self.open_timeout,
            )
        except InvalidStatus as e:
            if e.response.status_code in (401, 403):
                raise AuthenticationError(
                    f"push channel rejected the credential ({e.response.status_code})"
                ) from e
            raise ConnectionError(f"push channel handshake failed: {e}") from e
        except InvalidHandshake as e:
            raise ConnectionError(f"push channel handshake failed: {e}") from e
        self.logger.debug("websocket_opened", url=self.url)

    async def send_subscriptions(self, action: SubscriptionAction, keys: list[str]) -> None:
        if self._ws is None:
            raise ConnectionError("push channel is not open")
        try:
            await self._ws.send(json.dumps({"action": action, "keys": keys}))
        except ConnectionClosed as e:
            raise ConnectionError(f"push channel closed: {e}") from e

    async def events(self) -> AsyncIterator[PushEvent]:
        if self._ws is None:
            return
        try:
            async for message in self._ws:
                event = self._decode(message)
                if event is not None:
                    yield event
        except ConnectionClosed as e:
            self.logger.info("websocket_closed", code=e.rcvd.code if e.rcvd else None)

    def _decode(self, message: str | bytes) -> PushEvent | None:
        try:
            frame = json.loads(message)
        except ValueError:
            self.logger.warning("push_frame_dropped", reason="invalid_json")
            return None
        if not isinstance(frame, dict) or not isinstance(frame.get("event"), str):
            self.logger.warning("push_frame_dropped", reason="missing_event_type")
            return None
        return PushEvent(frame["event"], frame.get("data"))

    async def close(self) -> None:
        ws, self._ws = self._ws, None
        if ws is not None:
            await ws.close()
