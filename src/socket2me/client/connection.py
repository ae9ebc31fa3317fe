"""A single relay connection attempt with a serialized writer."""

from __future__ import annotations

import asyncio

from pydantic import BaseModel

from socket2me.core.transport import Transport
from socket2me.protocol.messages import encode_message


class Connection:
    """Owns one transport for the lifetime of one connection attempt.

    Writes from the dispatch loop, the heartbeat and request tasks share a
    lock so frames are never interleaved. Only the dispatch loop reads.
    """

    def __init__(self, transport: Transport) -> None:
        self.transport = transport
        self._write_lock = asyncio.Lock()
        self._closed = False
        self.frames_sent = 0
        self.frames_received = 0

    @property
    def closed(self) -> bool:
        return self._closed

    async def send(self, msg: BaseModel) -> None:
        """Encode and write one envelope.

        Raises:
            TransportError: If the write fails
        """
        data = encode_message(msg)
        async with self._write_lock:
            await self.transport.send(data)
            self.frames_sent += 1

    async def recv(self) -> str | None:
        """Read the next raw frame, ``None`` once the relay has closed."""
        data = await self.transport.recv()
        if data is not None:
            self.frames_received += 1
        return data

    async def close(self) -> None:
        """Close the transport exactly once."""
        if self._closed:
            return
        self._closed = True
        await self.transport.close()
