"""Transport seam for the realtime connection.

The connection manager only talks to ``TransportSession`` objects obtained from
a connector callable (``url -> session``). ``AiohttpTransport`` is the real
connector; tests plug in in-memory fakes.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Dict, Optional, Protocol, Union

import aiohttp

logger = logging.getLogger(__name__)

Frame = Union[str, bytes]


class TransportError(RuntimeError):
    """Opening, reading from or writing to a session failed."""


class TransportSession(Protocol):
    @property
    def closed(self) -> bool: ...

    async def send_text(self, data: str) -> None: ...

    async def receive(self) -> Optional[Frame]:
        """Next data frame, or None once the session is closed."""
        ...

    async def close(self) -> None: ...


Connector = Callable[[str], Awaitable[TransportSession]]


class AiohttpSession:
    """``TransportSession`` over an aiohttp client WebSocket."""

    def __init__(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        self._ws = ws

    @property
    def closed(self) -> bool:
        return self._ws.closed

    async def send_text(self, data: str) -> None:
        if self._ws.closed:
            raise TransportError("WebSocket is closed")
        try:
            await self._ws.send_str(data)
        except (aiohttp.ClientError, ConnectionError, RuntimeError) as exc:
            raise TransportError(f"Send failed: {exc}") from exc

    async def receive(self) -> Optional[Frame]:
        while True:
            msg = await self._ws.receive()
            if msg.type == aiohttp.WSMsgType.TEXT:
                return msg.data
            if msg.type == aiohttp.WSMsgType.BINARY:
                return msg.data
            if msg.type == aiohttp.WSMsgType.ERROR:
                raise TransportError(f"WebSocket error: {self._ws.exception()}")
            if msg.type in (
                aiohttp.WSMsgType.CLOSE,
                aiohttp.WSMsgType.CLOSING,
                aiohttp.WSMsgType.CLOSED,
            ):
                return None
            # PING/PONG frames are answered by aiohttp itself.

    async def close(self) -> None:
        if not self._ws.closed:
            await self._ws.close()


class AiohttpTransport:
    """Connector that opens WebSocket sessions through one shared ClientSession."""

    def __init__(
        self,
        *,
        open_timeout: float = 10.0,
        headers: Optional[Dict[str, str]] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        self._open_timeout = open_timeout
        self._headers = dict(headers or {})
        self._session = session
        self._owns_session = session is None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def __call__(self, url: str) -> AiohttpSession:
        session = self._get_session()
        try:
            # Protocol-level heartbeat is off: liveness is checked with
            # application "ping" messages by the connection manager.
            ws = await asyncio.wait_for(
                session.ws_connect(url, headers=self._headers, autoping=True, heartbeat=None),
                timeout=self._open_timeout,
            )
        except asyncio.TimeoutError as exc:
            raise TransportError(f"Timed out opening {url}") from exc
        except (aiohttp.ClientError, OSError) as exc:
            raise TransportError(f"Cannot open {url}: {exc}") from exc
        logger.debug("transport.opened", extra={"url": url})
        return AiohttpSession(ws)

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None


__all__ = [
    "AiohttpSession",
    "AiohttpTransport",
    "Connector",
    "Frame",
    "TransportError",
    "TransportSession",
]
