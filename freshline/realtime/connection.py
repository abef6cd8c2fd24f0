"""
Realtime connection manager.

Owns at most one live transport session, recovers from drops with a bounded
number of fixed-delay reconnects, probes liveness while open, and dispatches
inbound messages to handlers registered per ``type`` in arrival order.

State machine::

    DISCONNECTED --connect--> CONNECTING --handshake--> OPEN
    OPEN --error / remote close / keepalive timeout--> DISCONNECTED
    DISCONNECTED --(retries left, after delay)--> CONNECTING
    DISCONNECTED --(retries exhausted)--> stays DISCONNECTED, on_terminal fires once
    any --disconnect()--> CLOSING --> DISCONNECTED

Nothing raised by the transport, a handler or a callback escapes into the
caller; failures are logged, counted and surfaced through ``on_error``.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    List,
    Mapping,
    Optional,
    Tuple,
    Union,
)

from pydantic import ValidationError as PydanticValidationError

from freshline.core.metrics import CONNECTION_EVENTS_TOTAL, INBOUND_MESSAGES_TOTAL
from freshline.core.settings import Settings, get_settings, resolve_ws_url
from freshline.realtime.messages import (
    CONTROL_TYPES,
    InboundMessage,
    MalformedMessageError,
    OutboundMessage,
    PingMessage,
    SubscribeMessage,
    parse_message,
)
from freshline.realtime.transport import AiohttpTransport, Connector, Frame, TransportSession
from freshline.shaping.throttle import ThrottledBuffer

logger = logging.getLogger(__name__)

Handler = Callable[[InboundMessage], Union[None, Awaitable[None]]]
BatchHandler = Callable[[List[InboundMessage]], Union[None, Awaitable[None]]]
Callback = Callable[..., Union[None, Awaitable[None]]]
StateListener = Callable[["ConnectionState", "ConnectionState"], None]


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSING = "closing"


@dataclass(frozen=True)
class ConnectionStatus:
    state: ConnectionState
    retry_count: int
    last_error: Optional[str]
    session_started_at: Optional[datetime]


@dataclass(frozen=True)
class ConnectionLost:
    """Terminal failure: every automatic reconnect attempt failed."""

    url: str
    attempts: int
    last_error: Optional[str]


class ConnectionManager:
    """
    Single-session realtime client with automatic recovery.

    Handlers and callbacks may be plain functions or coroutine functions.
    Callbacks:
        on_connect(): a session opened (initially or after a reconnect)
        on_disconnect(): an open session dropped (not fired for ``disconnect()``)
        on_error(exc): a transport-level failure was absorbed
        on_terminal(ConnectionLost): retries exhausted; call ``connect()`` to start over
    """

    def __init__(
        self,
        url: str,
        *,
        connector: Optional[Connector] = None,
        reconnect_interval: float = 3.0,
        max_reconnect_attempts: int = 5,
        keepalive_interval: float = 30.0,
        keepalive_grace: float = 10.0,
        channel: Optional[str] = "call-events",
        throttle_period: float = 1.0,
        throttle_buffer_size: int = 10,
        on_connect: Optional[Callback] = None,
        on_disconnect: Optional[Callback] = None,
        on_error: Optional[Callback] = None,
        on_terminal: Optional[Callback] = None,
    ) -> None:
        if reconnect_interval < 0:
            raise ValueError("reconnect_interval must be >= 0")
        if max_reconnect_attempts < 0:
            raise ValueError("max_reconnect_attempts must be >= 0")
        if keepalive_interval <= 0 or keepalive_grace <= 0:
            raise ValueError("keepalive_interval and keepalive_grace must be > 0")

        self.url = url
        self._owns_connector = connector is None
        self._connector: Connector = connector or AiohttpTransport()
        self.reconnect_interval = float(reconnect_interval)
        self.max_reconnect_attempts = int(max_reconnect_attempts)
        self.keepalive_interval = float(keepalive_interval)
        self.keepalive_grace = float(keepalive_grace)
        self.channel = channel
        self.throttle_period = float(throttle_period)
        self.throttle_buffer_size = int(throttle_buffer_size)

        self.on_connect = on_connect
        self.on_disconnect = on_disconnect
        self.on_error = on_error
        self.on_terminal = on_terminal

        self._state = ConnectionState.DISCONNECTED
        self._retry_count = 0
        self._last_error: Optional[str] = None
        self._session_started_at: Optional[datetime] = None
        self._session: Optional[TransportSession] = None
        self._runner: Optional[asyncio.Task] = None
        self._alive = False
        self._close_reason: Optional[str] = None
        self._opened = asyncio.Event()
        self._traffic = asyncio.Event()

        self._handlers: Dict[str, Handler] = {}
        self._default_handler: Optional[Handler] = None
        self._throttled: Dict[str, Tuple[BatchHandler, float, int]] = {}
        self._buffers: Dict[str, ThrottledBuffer[InboundMessage]] = {}
        self._state_listeners: List[StateListener] = []

    @classmethod
    def from_settings(
        cls,
        settings: Optional[Settings] = None,
        *,
        url: Optional[str] = None,
        connector: Optional[Connector] = None,
        **kwargs: Any,
    ) -> "ConnectionManager":
        settings = settings or get_settings()
        owns_connector = connector is None
        if owns_connector:
            connector = AiohttpTransport(open_timeout=settings.open_timeout_seconds)
        manager = cls(
            resolve_ws_url(settings, url),
            connector=connector,
            reconnect_interval=settings.reconnect_interval_seconds,
            max_reconnect_attempts=settings.max_reconnect_attempts,
            keepalive_interval=settings.keepalive_interval_seconds,
            keepalive_grace=settings.keepalive_grace_seconds,
            channel=settings.subscribe_channel,
            throttle_period=settings.realtime_throttle_seconds,
            throttle_buffer_size=settings.realtime_buffer_size,
            **kwargs,
        )
        manager._owns_connector = owns_connector
        return manager

    # Introspection -------------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state is ConnectionState.OPEN

    @property
    def retry_count(self) -> int:
        return self._retry_count

    @property
    def running(self) -> bool:
        return self._runner is not None and not self._runner.done()

    def status(self) -> ConnectionStatus:
        return ConnectionStatus(
            state=self._state,
            retry_count=self._retry_count,
            last_error=self._last_error,
            session_started_at=self._session_started_at,
        )

    def add_state_listener(self, listener: StateListener) -> None:
        self._state_listeners.append(listener)

    def _set_state(self, state: ConnectionState) -> None:
        previous = self._state
        if previous is state:
            return
        self._state = state
        logger.debug(
            "connection.state_changed",
            extra={"from_state": previous.value, "to_state": state.value},
        )
        for listener in list(self._state_listeners):
            try:
                listener(previous, state)
            except Exception:
                logger.exception("connection.state_listener_failed")

    # Handler registration ------------------------------------------------

    def register(self, message_type: str, handler: Handler) -> None:
        """Route messages tagged ``message_type`` to ``handler`` (replaces any previous one)."""

        self._drop_buffer(message_type)
        self._handlers[message_type] = handler

    def register_throttled(
        self,
        message_type: str,
        handler: BatchHandler,
        *,
        period: Optional[float] = None,
        buffer_size: Optional[int] = None,
    ) -> None:
        """Deliver ``message_type`` to ``handler`` in batches, at most one per ``period``."""

        self._drop_buffer(message_type)
        spec = (
            handler,
            self.throttle_period if period is None else float(period),
            self.throttle_buffer_size if buffer_size is None else int(buffer_size),
        )
        self._throttled[message_type] = spec
        buffer = self._make_buffer(spec)
        self._buffers[message_type] = buffer
        self._handlers[message_type] = buffer.push

    def unregister(self, message_type: str) -> None:
        self._drop_buffer(message_type)
        self._handlers.pop(message_type, None)

    def set_default_handler(self, handler: Optional[Handler]) -> None:
        """Receives every non-control message that has no specific handler."""

        self._default_handler = handler

    @staticmethod
    def _make_buffer(spec: Tuple[BatchHandler, float, int]) -> ThrottledBuffer[InboundMessage]:
        handler, period, buffer_size = spec
        return ThrottledBuffer(handler, period, buffer_size, name="realtime")

    def _drop_buffer(self, message_type: str) -> None:
        self._throttled.pop(message_type, None)
        buffer = self._buffers.pop(message_type, None)
        if buffer is not None:
            buffer.cancel()

    def _reset_buffers(self, *, recreate: bool) -> None:
        for message_type, buffer in list(self._buffers.items()):
            buffer.cancel()
            if recreate:
                fresh = self._make_buffer(self._throttled[message_type])
                self._buffers[message_type] = fresh
                self._handlers[message_type] = fresh.push
        if not recreate:
            self._buffers.clear()

    # Lifecycle -----------------------------------------------------------

    async def connect(self) -> None:
        """Start the connection loop in the background (idempotent while running)."""

        if self.running:
            logger.warning("connection.already_running", extra={"url": self.url})
            return
        self._alive = True
        self._retry_count = 0
        self._runner = asyncio.create_task(self._run(), name="freshline-connection")

    async def wait_until_open(self, timeout: Optional[float] = None) -> bool:
        try:
            await asyncio.wait_for(self._opened.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return True

    async def wait_stopped(self, timeout: Optional[float] = None) -> bool:
        """Wait until the loop gave up or was torn down."""

        runner = self._runner
        if runner is None:
            return True
        try:
            await asyncio.wait_for(asyncio.shield(runner), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return True

    async def disconnect(self) -> None:
        """Close the session and stop reconnecting; ``connect()`` may be called again."""

        self._alive = False
        if self._state is ConnectionState.OPEN:
            self._set_state(ConnectionState.CLOSING)
        session = self._session
        if session is not None:
            await self._close_session(session)
        runner, self._runner = self._runner, None
        if runner is not None and not runner.done():
            runner.cancel()
            await asyncio.gather(runner, return_exceptions=True)
        self._reset_buffers(recreate=True)
        self._opened.clear()
        self._session = None
        self._session_started_at = None
        self._retry_count = 0
        self._set_state(ConnectionState.DISCONNECTED)
        logger.info("connection.disconnected", extra={"url": self.url})

    async def close(self) -> None:
        """Final teardown: disconnect, cancel throttles, release an owned transport."""

        await self.disconnect()
        self._reset_buffers(recreate=False)
        close = getattr(self._connector, "close", None)
        if self._owns_connector and close is not None:
            await close()

    async def __aenter__(self) -> "ConnectionManager":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    # Connection loop -----------------------------------------------------

    async def _run(self) -> None:
        while self._alive:
            self._set_state(ConnectionState.CONNECTING)
            try:
                session = await self._connector(self.url)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                self._set_state(ConnectionState.DISCONNECTED)
                await self._absorb_error(exc, "connection.open_failed")
            else:
                await self._serve(session)

            if not self._alive:
                break
            if self._retry_count >= self.max_reconnect_attempts:
                await self._give_up()
                break

            self._retry_count += 1
            CONNECTION_EVENTS_TOTAL.labels(event="reconnect_scheduled").inc()
            logger.info(
                "connection.reconnect_scheduled",
                extra={
                    "url": self.url,
                    "attempt": self._retry_count,
                    "max_attempts": self.max_reconnect_attempts,
                    "delay": self.reconnect_interval,
                },
            )
            await asyncio.sleep(self.reconnect_interval)

    async def _serve(self, session: TransportSession) -> None:
        if not self._alive:
            await self._close_session(session)
            return

        self._session = session
        self._retry_count = 0
        self._close_reason = None
        self._session_started_at = datetime.now(timezone.utc)
        self._traffic.clear()
        self._set_state(ConnectionState.OPEN)
        self._opened.set()
        CONNECTION_EVENTS_TOTAL.labels(event="open").inc()
        logger.info("connection.open", extra={"url": self.url})
        await self._invoke(self.on_connect)

        keepalive = asyncio.create_task(self._keepalive(session), name="freshline-keepalive")
        try:
            # Subscriptions do not survive a reconnect; announce them on every open.
            if self.channel:
                await self._send_on(session, SubscribeMessage(channel=self.channel))
            await self._pump(session)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            await self._absorb_error(exc, "connection.receive_failed")
        finally:
            keepalive.cancel()
            await asyncio.gather(keepalive, return_exceptions=True)
            self._opened.clear()
            self._session = None
            self._session_started_at = None
            await self._close_session(session)
            if self._state is ConnectionState.OPEN:
                self._set_state(ConnectionState.DISCONNECTED)

        CONNECTION_EVENTS_TOTAL.labels(event="close").inc()
        if self._alive:
            logger.warning(
                "connection.dropped",
                extra={"url": self.url, "reason": self._close_reason or "remote close"},
            )
            await self._invoke(self.on_disconnect)

    async def _pump(self, session: TransportSession) -> None:
        # Reading never waits on handlers, so liveness only reflects the wire.
        inbox: "asyncio.Queue[Optional[Frame]]" = asyncio.Queue()
        dispatcher = asyncio.create_task(self._drain(inbox), name="freshline-dispatch")
        try:
            while True:
                frame = await session.receive()
                inbox.put_nowait(frame)
                if frame is None:
                    break
                self._traffic.set()
            await dispatcher
        finally:
            if not dispatcher.done():
                dispatcher.cancel()
                await asyncio.gather(dispatcher, return_exceptions=True)

    async def _drain(self, inbox: "asyncio.Queue[Optional[Frame]]") -> None:
        while True:
            frame = await inbox.get()
            if frame is None:
                return
            await self._dispatch(frame)

    async def _keepalive(self, session: TransportSession) -> None:
        while not session.closed:
            await asyncio.sleep(self.keepalive_interval)
            self._traffic.clear()
            await self._send_on(session, PingMessage())
            try:
                await asyncio.wait_for(self._traffic.wait(), timeout=self.keepalive_grace)
            except asyncio.TimeoutError:
                if session.closed:
                    return
                self._close_reason = "keepalive timeout"
                self._last_error = "keepalive timeout"
                CONNECTION_EVENTS_TOTAL.labels(event="keepalive_timeout").inc()
                logger.warning(
                    "connection.keepalive_timeout",
                    extra={"url": self.url, "grace": self.keepalive_grace},
                )
                await self._close_session(session)
                return

    async def _give_up(self) -> None:
        CONNECTION_EVENTS_TOTAL.labels(event="terminal").inc()
        logger.error(
            "connection.lost",
            extra={
                "url": self.url,
                "attempts": self._retry_count,
                "last_error": self._last_error,
            },
        )
        self._set_state(ConnectionState.DISCONNECTED)
        await self._invoke(
            self.on_terminal,
            ConnectionLost(url=self.url, attempts=self._retry_count, last_error=self._last_error),
        )

    # Dispatch ------------------------------------------------------------

    async def _dispatch(self, frame: Frame) -> None:
        try:
            message = parse_message(frame)
        except MalformedMessageError as exc:
            INBOUND_MESSAGES_TOTAL.labels(outcome="malformed").inc()
            logger.warning("connection.malformed_message", extra={"error": str(exc)})
            return

        handler = self._handlers.get(message.type)
        outcome = "handled"
        if handler is None:
            if message.type in CONTROL_TYPES:
                INBOUND_MESSAGES_TOTAL.labels(outcome="control").inc()
                return
            handler = self._default_handler
            outcome = "default"
        if handler is None:
            INBOUND_MESSAGES_TOTAL.labels(outcome="unhandled").inc()
            logger.debug("connection.unhandled_message", extra={"type": message.type})
            return

        try:
            result = handler(message)
            if inspect.isawaitable(result):
                await result
        except Exception:
            INBOUND_MESSAGES_TOTAL.labels(outcome="handler_error").inc()
            logger.exception("connection.handler_failed", extra={"type": message.type})
            return
        INBOUND_MESSAGES_TOTAL.labels(outcome=outcome).inc()

    # Sending -------------------------------------------------------------

    async def send(self, message: Union[OutboundMessage, Mapping[str, Any]]) -> bool:
        """Send on the open session. Returns False instead of raising when it cannot."""

        session = self._session
        if self._state is not ConnectionState.OPEN or session is None:
            logger.warning(
                "connection.send_while_closed",
                extra={"state": self._state.value},
            )
            return False
        return await self._send_on(session, message)

    async def _send_on(
        self,
        session: TransportSession,
        message: Union[OutboundMessage, Mapping[str, Any]],
    ) -> bool:
        try:
            if not isinstance(message, OutboundMessage):
                message = OutboundMessage.model_validate(dict(message))
            wire = message.to_wire()
        except (PydanticValidationError, TypeError, ValueError) as exc:
            logger.warning("connection.invalid_outbound", extra={"error": str(exc)})
            return False
        try:
            await session.send_text(wire)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            CONNECTION_EVENTS_TOTAL.labels(event="send_failed").inc()
            await self._absorb_error(exc, "connection.send_failed")
            return False
        return True

    # Helpers -------------------------------------------------------------

    async def _close_session(self, session: TransportSession) -> None:
        try:
            await session.close()
        except Exception as exc:
            logger.debug("connection.close_failed", extra={"error": str(exc)})

    async def _absorb_error(self, exc: BaseException, event: str) -> None:
        self._last_error = str(exc) or exc.__class__.__name__
        logger.warning(event, extra={"url": self.url, "error": self._last_error})
        await self._invoke(self.on_error, exc)

    async def _invoke(self, callback: Optional[Callback], *args: Any) -> None:
        if callback is None:
            return
        try:
            result = callback(*args)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("connection.callback_failed")


__all__ = [
    "ConnectionLost",
    "ConnectionManager",
    "ConnectionState",
    "ConnectionStatus",
]
