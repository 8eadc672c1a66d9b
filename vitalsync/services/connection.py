"""
Connection supervisor for the persistent push channel.

State machine:

    DISCONNECTED -> CONNECTING -> CONNECTED
    CONNECTED -> DISCONNECTED -> RECONNECTING -> CONNECTING -> ...
    any -> FAILED   (credential rejected, or reconnect attempts exhausted)

Reconnects back off exponentially with jitter. The backoff resets once a
connection has stayed up for `stable_after_seconds`. A session-level
subscription registry is replayed on every (re)connect, so views never
re-subscribe by hand.
"""

import asyncio
import random
import time
from collections.abc import AsyncIterator, Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal, Protocol

import structlog

from vitalsync.config import ConnectionConfig
from vitalsync.services.result import AuthenticationError, ReconnectExhaustedError

logger = structlog.get_logger(__name__)

SubscriptionAction = Literal["subscribe", "unsubscribe"]


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    FAILED = "failed"


@dataclass(frozen=True)
class PushEvent:
    """One typed event received on the push channel."""

    event_type: str
    payload: Any = field(default=None)


class PushTransport(Protocol):
    """A single connection attempt's worth of push channel."""

    async def connect(self, token: str | None) -> None:
        """Open the channel. Raises AuthenticationError when the credential is rejected."""
        ...

    async def send_subscriptions(self, action: SubscriptionAction, keys: list[str]) -> None: ...

    def events(self) -> AsyncIterator[PushEvent]:
        """Yield events until the connection drops."""
        ...

    async def close(self) -> None: ...


StateListener = Callable[[ConnectionState], None]
ConnectedHook = Callable[[], Awaitable[None] | None]


class ConnectionSupervisor:
    """Keeps one push connection alive for the whole session."""

    def __init__(
        self,
        transport: PushTransport,
        on_event: Callable[[PushEvent], Any],
        config: ConnectionConfig | None = None,
        credential: Callable[[], str | None] | str | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        monotonic: Callable[[], float] = time.monotonic,
        rng: random.Random | None = None,
    ) -> None:
        self.transport = transport
        self.config = config or ConnectionConfig()
        self._on_event = on_event
        self._credential = credential
        self._sleep = sleep
        self._monotonic = monotonic
        self._rng = rng or random.Random()
        self._state = ConnectionState.DISCONNECTED
        self._subscriptions: set[str] = set()
        self._state_listeners: list[StateListener] = []
        self._connected_hooks: list[ConnectedHook] = []
        self._stopping = False
        self._stop_requested = asyncio.Event()
        self._final_state = ConnectionState.DISCONNECTED
        self._connected = asyncio.Event()
        self.attempt = 0
        self.logger = logger.bind(component="connection_supervisor")

    # State

    @property
    def state(self) -> ConnectionState:
        return self._state

    def add_state_listener(self, listener: StateListener) -> None:
        self._state_listeners.append(listener)

    def add_connected_hook(self, hook: ConnectedHook) -> None:
        """Run `hook` after every successful (re)connect and subscription replay."""
        self._connected_hooks.append(hook)

    def _set_state(self, state: ConnectionState) -> None:
        if state is self._state:
            return
        previous, self._state = self._state, state
        if state is ConnectionState.CONNECTED:
            self._connected.set()
        else:
            self._connected.clear()
        self.logger.info("connection_state_changed", previous=previous.value, state=state.value)
        for listener in list(self._state_listeners):
            try:
                listener(state)
            except Exception as e:
                self.logger.exception("state_listener_failed", error=str(e))

    async def wait_connected(self) -> None:
        await self._connected.wait()

    # Subscription registry

    @property
    def subscriptions(self) -> set[str]:
        return set(self._subscriptions)

    async def subscribe(self, keys: Iterable[str]) -> None:
        new = sorted(set(keys) - self._subscriptions)
        self._subscriptions.update(new)
        if new and self._state is ConnectionState.CONNECTED:
            await self._announce("subscribe", new)

    async def unsubscribe(self, keys: Iterable[str]) -> None:
        gone = sorted(set(keys) & self._subscriptions)
        self._subscriptions.difference_update(gone)
        if gone and self._state is ConnectionState.CONNECTED:
            await self._announce("unsubscribe", gone)

    async def _announce(self, action: SubscriptionAction, keys: list[str]) -> None:
        try:
            await self.transport.send_subscriptions(action, keys)
        except (ConnectionError, OSError) as e:
            # The replay on reconnect covers anything lost here
            self.logger.warning("subscription_announce_failed", action=action, error=str(e))

    # Backoff

    def backoff_delay(self, attempt: int) -> float:
        """Delay before reconnect attempt `attempt` (0-indexed)."""
        delay = self.config.delay_for(attempt)
        if self.config.jitter:
            delay *= 0.75 + self._rng.random() * 0.5
        return delay

    # Main loop

    def _token(self) -> str | None:
        if callable(self._credential):
            return self._credential()
        return self._credential

    async def run(self) -> None:
        """
        Connect and keep reconnecting until `stop()` is called.

        Raises:
            AuthenticationError: the credential was rejected; no retry.
            ReconnectExhaustedError: `max_reconnect_attempts` consecutive failures.
        """
        self.attempt = 0
        first = True

        while not self._stopping:
            if not first:
                max_attempts = self.config.max_reconnect_attempts
                if max_attempts is not None and self.attempt >= max_attempts:
                    self._set_state(ConnectionState.FAILED)
                    self.logger.error("reconnect_exhausted", attempts=self.attempt)
                    raise ReconnectExhaustedError(
                        f"gave up after {self.attempt} reconnect attempts"
                    )
                self._set_state(ConnectionState.RECONNECTING)
                delay = self.backoff_delay(self.attempt)
                self.logger.info("reconnect_scheduled", attempt=self.attempt + 1, delay_seconds=round(delay, 3))
                await self._backoff(delay)
                self.attempt += 1
                if self._stopping:
                    break
            first = False

            self._set_state(ConnectionState.CONNECTING)
            try:
                await self.transport.connect(self._token())
            except AuthenticationError:
                self._set_state(ConnectionState.FAILED)
                self.logger.error("connection_unauthorized")
                raise
            except (ConnectionError, OSError, asyncio.TimeoutError) as e:
                self.logger.warning("connect_failed", error=str(e))
                self._set_state(ConnectionState.DISCONNECTED)
                continue

            connected_at = self._monotonic()
            await self._on_connected()
            try:
                await self._pump()
            except (ConnectionError, OSError) as e:
                self.logger.warning("connection_lost", error=str(e))
            finally:
                await self._close_transport()

            if self._monotonic() - connected_at >= self.config.stable_after_seconds:
                self.attempt = 0
            if not self._stopping:
                self._set_state(ConnectionState.DISCONNECTED)

        self._set_state(self._final_state)

    async def _backoff(self, delay: float) -> None:
        """Sleep for `delay`, returning early when `stop()` is called."""
        sleeper = asyncio.ensure_future(self._sleep(delay))
        stopper = asyncio.ensure_future(self._stop_requested.wait())
        _, pending = await asyncio.wait({sleeper, stopper}, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)

    async def _on_connected(self) -> None:
        self._set_state(ConnectionState.CONNECTED)
        if self._subscriptions:
            await self._announce("subscribe", sorted(self._subscriptions))
        for hook in list(self._connected_hooks):
            try:
                outcome = hook()
                if asyncio.iscoroutine(outcome):
                    await outcome
            except Exception as e:
                self.logger.exception("connected_hook_failed", error=str(e))

    async def _pump(self) -> None:
        async for event in self.transport.events():
            if self._stopping:
                return
            try:
                self._on_event(event)
            except Exception as e:
                self.logger.exception("push_event_handler_failed", event_type=event.event_type, error=str(e))

    async def _close_transport(self) -> None:
        try:
            await self.transport.close()
        except (ConnectionError, OSError) as e:
            self.logger.debug("transport_close_failed", error=str(e))

    async def stop(self, failed: bool = False) -> None:
        """
        Ask `run()` to exit and close the current connection. A stopped supervisor stays stopped.

        With `failed=True` the supervisor ends in `FAILED` (the session gave up on the channel).
        """
        self._stopping = True
        self._stop_requested.set()
        if failed:
            self._final_state = ConnectionState.FAILED
            self._set_state(ConnectionState.FAILED)
        await self._close_transport()
