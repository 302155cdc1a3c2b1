"""Persistent Home Assistant WebSocket client.

Owns one connection to HA's WebSocket API, performs the auth handshake,
correlates requests and responses by integer ``id``, routes push events to
subscriptions, and reconnects with exponential backoff when the transport
drops.

All inbound frames are consumed by a single reader task, which is the only
place that completes request futures. Callers suspend in :meth:`send` and
:meth:`connect` only.

Protocol reference:
    https://developers.home-assistant.io/docs/api/websocket
"""

from __future__ import annotations

import asyncio
import contextlib
import itertools
import json
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from websockets.asyncio.client import connect as ws_connect
from websockets.exceptions import ConnectionClosed, WebSocketException

from hassbridge.exceptions import (
    AuthError,
    CommandError,
    ConnectionLostError,
    HAClientError,
    NotReadyError,
    RequestTimeoutError,
    TransportError,
)
from hassbridge.tracing import trace_ha_call

logger = logging.getLogger(__name__)

DEFAULT_CONNECT_TIMEOUT = 10.0
DEFAULT_REQUEST_TIMEOUT = 30.0


class ConnectionState(str, Enum):
    """Lifecycle of the WebSocket connection."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    AUTHENTICATING = "authenticating"
    READY = "ready"
    CLOSING = "closing"


@dataclass(frozen=True)
class BackoffPolicy:
    """Exponential reconnect backoff with a bounded number of attempts."""

    base: float = 1.0
    factor: float = 2.0
    maximum: float = 60.0
    max_retries: int = 5

    def delay(self, attempt: int) -> float:
        """Seconds to wait before reconnect attempt ``attempt`` (0-based)."""
        return min(self.base * (self.factor**attempt), self.maximum)


@dataclass
class PendingRequest:
    """A request awaiting its correlated ``result`` frame."""

    correlation_id: int
    command_type: str
    future: asyncio.Future[Any]
    issued_at: float = field(default_factory=time.monotonic)
    deadline: float | None = None


_END = object()


class Subscription:
    """Async stream of events for one ``subscribe_events`` registration.

    Iteration ends when the subscription is cancelled or the connection
    drops. Subscriptions are never replayed after a reconnect.

    Usage::

        sub = await client.subscribe("state_changed")
        async for event in sub:
            ...
    """

    def __init__(self, client: HAWebSocketClient, event_type: str | None) -> None:
        self._client = client
        self.event_type = event_type
        self.id: int | None = None
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def _push(self, event: dict[str, Any]) -> None:
        if not self._closed:
            self._queue.put_nowait(event)

    def _close(self) -> None:
        if not self._closed:
            self._closed = True
            self._queue.put_nowait(_END)

    def __aiter__(self) -> Subscription:
        return self

    async def __anext__(self) -> dict[str, Any]:
        if self._closed and self._queue.empty():
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _END:
            raise StopAsyncIteration
        return item  # type: ignore[no-any-return]

    async def unsubscribe(self) -> None:
        """Stop receiving events for this subscription."""
        await self._client.unsubscribe(self)


StateListener = Callable[[ConnectionState], None]


class HAWebSocketClient:
    """Persistent, multiplexed HA WebSocket client.

    One instance is shared by every caller; concurrent :meth:`send` calls
    are independent because each carries its own correlation id.

    Usage::

        client = HAWebSocketClient(ws_url, token)
        await client.connect()
        states = await client.send({"type": "get_states"})
        await client.disconnect()
    """

    def __init__(
        self,
        ws_url: str,
        token: str,
        *,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
        backoff: BackoffPolicy | None = None,
        auto_reconnect: bool = True,
    ) -> None:
        self._ws_url = ws_url
        self._token = token
        self._connect_timeout = connect_timeout
        self._request_timeout = request_timeout
        self._backoff = backoff or BackoffPolicy()
        self._auto_reconnect = auto_reconnect

        self._state = ConnectionState.DISCONNECTED
        self._state_lock = asyncio.Lock()
        self._send_lock = asyncio.Lock()
        self._transport: Any | None = None
        self._reader_task: asyncio.Task[None] | None = None
        self._reconnect_task: asyncio.Task[None] | None = None
        self._closing = False

        # Never reset, so ids stay unique across reconnects
        self._ids = itertools.count(1)
        self._pending: dict[int, PendingRequest] = {}
        self._subscriptions: dict[int, Subscription] = {}
        self._listeners: list[StateListener] = []
        self.ha_version: str | None = None

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        return self._state

    def is_connected(self) -> bool:
        """True only when the handshake completed and the link is up. No I/O."""
        return self._state is ConnectionState.READY

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def add_state_listener(self, listener: StateListener) -> None:
        """Register a callback invoked synchronously on every state change."""
        self._listeners.append(listener)

    def _set_state(self, state: ConnectionState) -> None:
        if state is self._state:
            return
        logger.debug("WebSocket state %s -> %s", self._state.value, state.value)
        self._state = state
        for listener in list(self._listeners):
            try:
                listener(state)
            except Exception:
                logger.exception("State listener failed")

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    @trace_ha_call("ha.ws.connect", span_type="CHAIN")
    async def connect(self) -> None:
        """Open the transport and complete the auth handshake.

        No command traffic is allowed until HA answers ``auth_ok``.

        Raises:
            AuthError: HA answered ``auth_invalid``.
            TransportError: The socket could not be opened, or the
                handshake did not finish within ``connect_timeout``.
        """
        async with self._state_lock:
            if self._state is ConnectionState.READY:
                return
            self._closing = False
            self._set_state(ConnectionState.CONNECTING)
            try:
                async with asyncio.timeout(self._connect_timeout):
                    transport = await ws_connect(self._ws_url, max_size=None)
                    try:
                        self._set_state(ConnectionState.AUTHENTICATING)
                        await self._authenticate(transport)
                    except BaseException:
                        with contextlib.suppress(OSError, WebSocketException):
                            await transport.close()
                        raise
            except HAClientError:
                self._set_state(ConnectionState.DISCONNECTED)
                raise
            except TimeoutError as exc:
                self._set_state(ConnectionState.DISCONNECTED)
                raise TransportError(
                    f"Timeout after {self._connect_timeout}s connecting to {self._ws_url}",
                    tool="ws_connect",
                ) from exc
            except (OSError, WebSocketException) as exc:
                self._set_state(ConnectionState.DISCONNECTED)
                raise TransportError(
                    f"WebSocket connection to {self._ws_url} failed: {exc}",
                    tool="ws_connect",
                ) from exc
            except asyncio.CancelledError:
                self._set_state(ConnectionState.DISCONNECTED)
                raise

            self._transport = transport
            self._reader_task = asyncio.create_task(self._read_loop(transport))
            self._set_state(ConnectionState.READY)
            logger.info("WebSocket connected to %s (HA %s)", self._ws_url, self.ha_version)

    async def _authenticate(self, transport: Any) -> None:
        """Run the HA auth handshake on a freshly opened transport.

        Waits for ``auth_required``, sends the token, and validates
        ``auth_ok``.
        """
        msg = json.loads(await transport.recv())
        if msg.get("type") != "auth_required":
            raise TransportError(
                f"Expected auth_required, got {msg.get('type')}",
                tool="ws_auth",
            )

        await transport.send(json.dumps({"type": "auth", "access_token": self._token}))

        msg = json.loads(await transport.recv())
        if msg.get("type") == "auth_invalid":
            raise AuthError(
                msg.get("message", "Authentication failed"),
                tool="ws_auth",
            )
        if msg.get("type") != "auth_ok":
            raise TransportError(
                f"Expected auth_ok, got {msg.get('type')}",
                tool="ws_auth",
            )
        self.ha_version = msg.get("ha_version")

    async def disconnect(self) -> None:
        """Close the connection on purpose.

        Fails every pending request with :class:`ConnectionLostError`, ends
        all subscriptions and cancels any scheduled reconnect.
        """
        self._closing = True
        if self._reconnect_task is not None and not self._reconnect_task.done():
            self._reconnect_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._reconnect_task
        self._reconnect_task = None

        async with self._state_lock:
            transport, self._transport = self._transport, None
            if transport is None and self._state is ConnectionState.DISCONNECTED:
                return

            self._set_state(ConnectionState.CLOSING)
            self._fail_pending("WebSocket client disconnected")
            self._end_subscriptions()

            reader, self._reader_task = self._reader_task, None
            if reader is not None and reader is not asyncio.current_task():
                reader.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await reader

            if transport is not None:
                try:
                    await transport.close()
                except (OSError, WebSocketException) as exc:
                    logger.debug("Error closing WebSocket: %s", exc)

            self._set_state(ConnectionState.DISCONNECTED)
            logger.info("WebSocket disconnected")

    # ------------------------------------------------------------------
    # Reader task
    # ------------------------------------------------------------------

    async def _read_loop(self, transport: Any) -> None:
        """Consume inbound frames until the transport closes."""
        try:
            while True:
                raw = await transport.recv()
                self._dispatch(raw)
        except (ConnectionClosed, OSError) as exc:
            logger.debug("WebSocket reader stopped: %s", exc)
        except Exception:
            logger.exception("WebSocket reader failed, dropping the connection")
            with contextlib.suppress(OSError, WebSocketException):
                await transport.close()
        finally:
            self._on_connection_lost(transport)

    def _dispatch(self, raw: str | bytes) -> None:
        try:
            msg = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError):
            logger.warning("Failed to decode WebSocket frame: %r", raw[:200])
            return

        # HA may coalesce several messages into one JSON array
        for item in msg if isinstance(msg, list) else [msg]:
            if not isinstance(item, dict):
                continue
            try:
                self._handle_message(item)
            except Exception:
                logger.exception("Failed to handle WebSocket message: %r", item)

    def _handle_message(self, msg: dict[str, Any]) -> None:
        msg_type = msg.get("type")
        msg_id = msg.get("id")

        if msg_type == "event":
            subscription = self._subscriptions.get(msg_id)  # type: ignore[arg-type]
            if subscription is None:
                logger.debug("Event for unknown subscription %s dropped", msg_id)
                return
            subscription._push(msg.get("event", {}))
            return

        if msg_type not in ("result", "pong"):
            logger.debug("Unhandled WebSocket message type: %r", msg_type)
            return

        pending = self._pending.pop(msg_id, None)  # type: ignore[arg-type]
        if pending is None or pending.future.done():
            logger.debug("Response for unknown or expired request %s dropped", msg_id)
            return

        if msg_type == "pong" or msg.get("success"):
            pending.future.set_result(msg.get("result"))
            return

        error = msg.get("error")
        if not isinstance(error, dict):
            error = {"message": str(error)} if error else {}
        pending.future.set_exception(
            CommandError(
                error.get("message", "WebSocket command failed"),
                code=error.get("code"),
                tool=pending.command_type,
                details={"id": msg_id},
            )
        )

    def _on_connection_lost(self, transport: Any) -> None:
        if transport is not self._transport or self._closing:
            return
        logger.warning("WebSocket connection to %s lost", self._ws_url)
        self._transport = None
        self._reader_task = None
        self._set_state(ConnectionState.DISCONNECTED)
        self._fail_pending("WebSocket connection lost")
        self._end_subscriptions()
        if self._auto_reconnect and self._backoff.max_retries > 0:
            self._schedule_reconnect()

    def _fail_pending(self, reason: str) -> None:
        pending, self._pending = self._pending, {}
        for request in pending.values():
            if not request.future.done():
                request.future.set_exception(
                    ConnectionLostError(
                        reason,
                        tool=request.command_type,
                        details={"id": request.correlation_id},
                    )
                )

    def _end_subscriptions(self) -> None:
        subscriptions, self._subscriptions = self._subscriptions, {}
        for subscription in subscriptions.values():
            subscription._close()

    # ------------------------------------------------------------------
    # Reconnection
    # ------------------------------------------------------------------

    def _schedule_reconnect(self) -> None:
        if self._reconnect_task is not None and not self._reconnect_task.done():
            return  # reconnect already in progress
        self._reconnect_task = asyncio.create_task(self._reconnect_loop())

    async def _reconnect_loop(self) -> None:
        """Retry :meth:`connect` with exponential backoff."""
        for attempt in range(self._backoff.max_retries):
            delay = self._backoff.delay(attempt)
            logger.warning(
                "Reconnect attempt %d/%d in %.1fs",
                attempt + 1,
                self._backoff.max_retries,
                delay,
            )
            await asyncio.sleep(delay)
            if self._closing:
                return
            try:
                await self.connect()
            except AuthError:
                logger.error("Reconnect aborted: token rejected by Home Assistant")
                return
            except TransportError as exc:
                logger.warning("Reconnect attempt %d failed: %s", attempt + 1, exc)
                continue
            logger.info("WebSocket reconnected after %d attempt(s)", attempt + 1)
            return
        logger.error("Giving up reconnecting after %d attempts", self._backoff.max_retries)

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    async def send(self, command: dict[str, Any], *, timeout: float | None = None) -> Any:
        """Send a command and await its correlated result.

        Args:
            command: Message with a ``type`` and its parameters. Any ``id``
                is overwritten with a fresh correlation id.
            timeout: Seconds to wait for the response (defaults to the
                client's ``request_timeout``).

        Returns:
            The ``result`` field of HA's response.

        Raises:
            NotReadyError: The client is not READY.
            RequestTimeoutError: No response before the deadline.
            ConnectionLostError: The connection dropped while waiting.
            CommandError: HA answered with ``success: false``.
        """
        return await self._request(command, timeout=timeout)

    async def _request(
        self,
        command: dict[str, Any],
        *,
        timeout: float | None = None,
        subscription: Subscription | None = None,
    ) -> Any:
        deadline = self._request_timeout if timeout is None else timeout
        command_type = str(command.get("type", ""))
        loop = asyncio.get_running_loop()

        async with self._send_lock:
            transport = self._transport
            if self._state is not ConnectionState.READY or transport is None:
                raise NotReadyError(
                    f"WebSocket client is {self._state.value}, not ready",
                    tool=command_type,
                )

            correlation_id = next(self._ids)
            future: asyncio.Future[Any] = loop.create_future()
            self._pending[correlation_id] = PendingRequest(
                correlation_id=correlation_id,
                command_type=command_type,
                future=future,
                deadline=time.monotonic() + deadline,
            )
            if subscription is not None:
                subscription.id = correlation_id
                self._subscriptions[correlation_id] = subscription

            try:
                await transport.send(json.dumps({**command, "id": correlation_id}))
            except (ConnectionClosed, OSError) as exc:
                self._pending.pop(correlation_id, None)
                if subscription is not None:
                    self._subscriptions.pop(correlation_id, None)
                raise ConnectionLostError(
                    f"WebSocket closed while sending {command_type}",
                    tool=command_type,
                ) from exc

        try:
            async with asyncio.timeout(deadline):
                return await future
        except TimeoutError as exc:
            raise RequestTimeoutError(
                f"Timeout after {deadline}s waiting for {command_type} (id {correlation_id})",
                tool=command_type,
                details={"id": correlation_id},
            ) from exc
        finally:
            self._pending.pop(correlation_id, None)

    async def subscribe(
        self,
        event_type: str | None = None,
        *,
        timeout: float | None = None,
    ) -> Subscription:
        """Subscribe to bus events, optionally filtered by event type.

        Returns:
            A :class:`Subscription` yielding event payloads.
        """
        subscription = Subscription(self, event_type)
        command: dict[str, Any] = {"type": "subscribe_events"}
        if event_type:
            command["event_type"] = event_type
        try:
            await self._request(command, timeout=timeout, subscription=subscription)
        except HAClientError:
            if subscription.id is not None:
                self._subscriptions.pop(subscription.id, None)
            subscription._close()
            raise
        logger.debug("Subscribed to %s (id %s)", event_type or "all events", subscription.id)
        return subscription

    async def unsubscribe(self, subscription: Subscription) -> None:
        """Cancel a subscription. A no-op if it already ended."""
        if subscription.closed or subscription.id is None:
            return
        self._subscriptions.pop(subscription.id, None)
        subscription._close()
        if self.is_connected():
            await self.send({"type": "unsubscribe_events", "subscription": subscription.id})

    async def ping(self) -> None:
        """Round-trip a ``ping``/``pong`` keepalive."""
        await self.send({"type": "ping"})

    # ------------------------------------------------------------------
    # Convenience commands
    # ------------------------------------------------------------------

    async def get_states(self) -> list[dict[str, Any]]:
        """List every entity state."""
        result = await self.send({"type": "get_states"})
        return result if isinstance(result, list) else []

    async def get_automation_config(self, entity_id: str) -> dict[str, Any] | None:
        """Read an automation's stored config by entity id."""
        try:
            result = await self.send({"type": "automation/config", "entity_id": entity_id})
        except CommandError as exc:
            if exc.code == "not_found":
                return None
            raise
        if isinstance(result, dict):
            return result.get("config")
        return None


__all__ = [
    "BackoffPolicy",
    "ConnectionState",
    "HAWebSocketClient",
    "PendingRequest",
    "Subscription",
]
