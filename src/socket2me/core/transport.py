"""Message-oriented duplex transport to the relay server."""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from typing import Any

import structlog
import websockets
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidURI

from socket2me.core.exceptions import ConnectionClosedError, TransportError, format_error_for_user

logger = structlog.get_logger()


class Transport(ABC):
    """One connection to the relay. Instances are never reused across reconnects."""

    @abstractmethod
    async def connect(self, url: str) -> None:
        """Open the connection.

        Raises:
            TransportError: If the connection cannot be established
        """

    @abstractmethod
    async def send(self, data: str) -> None:
        """Send one text frame.

        Raises:
            TransportError: If the connection is closed or the write fails
        """

    @abstractmethod
    async def recv(self) -> str | None:
        """Receive one text frame, or ``None`` once the peer has closed.

        Raises:
            TransportError: If the read fails
        """

    @abstractmethod
    async def close(self) -> None:
        """Close the connection. Safe to call more than once."""

    @abstractmethod
    def is_connected(self) -> bool:
        """Check whether frames can still be exchanged."""


class WebSocketTransport(Transport):
    """WebSocket transport built on the ``websockets`` library.

    TLS is negotiated by the library for ``wss://`` URLs.
    """

    def __init__(
        self,
        connect_timeout: float = 30.0,
        close_timeout: float = 5.0,
        max_size: int | None = 64 * 1024 * 1024,
    ) -> None:
        self._connect_timeout = connect_timeout
        self._close_timeout = close_timeout
        self._max_size = max_size
        self._ws: Any = None
        self._closed = False

    async def connect(self, url: str) -> None:
        if self._ws is not None or self._closed:
            raise TransportError("Transport already used; create a new one per connection")

        try:
            self._ws = await websockets.connect(
                url,
                open_timeout=self._connect_timeout,
                close_timeout=self._close_timeout,
                max_size=self._max_size,
                # Liveness is handled by the application-level heartbeat.
                ping_interval=None,
            )
        except InvalidURI as e:
            raise TransportError(f"Invalid relay URL {url}: {e}") from e
        except TimeoutError as e:
            raise TransportError(f"Timed out connecting to {url}") from e
        except (OSError, InvalidHandshake) as e:
            raise TransportError(f"Cannot connect to {url}: {format_error_for_user(e)}") from e

        logger.debug("WebSocket connected", url=url)

    async def send(self, data: str) -> None:
        if self._ws is None or self._closed:
            raise ConnectionClosedError()
        try:
            await self._ws.send(data)
        except ConnectionClosed as e:
            raise ConnectionClosedError(f"Connection closed while sending: {e}") from e
        except OSError as e:
            raise TransportError(f"Write failed: {format_error_for_user(e)}") from e

    async def recv(self) -> str | None:
        if self._ws is None or self._closed:
            return None
        try:
            data = await self._ws.recv()
        except ConnectionClosed as e:
            logger.debug("WebSocket closed by peer", code=e.rcvd.code if e.rcvd else None)
            return None
        except OSError as e:
            raise TransportError(f"Read failed: {format_error_for_user(e)}") from e

        if isinstance(data, bytes):
            return data.decode("utf-8", errors="replace")
        return data

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        ws, self._ws = self._ws, None
        if ws is None:
            return
        try:
            await asyncio.wait_for(ws.close(), timeout=self._close_timeout)
        except (TimeoutError, OSError, ConnectionClosed) as e:
            logger.debug("Error closing WebSocket", error=format_error_for_user(e))

    def is_connected(self) -> bool:
        if self._ws is None or self._closed:
            return False
        return getattr(self._ws, "close_code", None) is None
