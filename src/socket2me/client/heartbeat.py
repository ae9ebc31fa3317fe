"""Periodic keepalive pings on an authenticated connection."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from uuid import uuid4

import structlog
from pydantic import BaseModel

from socket2me.core.exceptions import TransportError, format_error_for_user
from socket2me.protocol.messages import PingMessage

logger = structlog.get_logger()

DEFAULT_HEARTBEAT_INTERVAL = 15.0


class HeartbeatTask:
    """Sends a ``ping`` at start and then every ``interval`` seconds.

    The schedule is fixed relative to the task start, so a slow write does
    not push later pings back. A failed write ends the heartbeat quietly:
    the dispatch loop sees the same dead connection and decides what to do.
    No pong is awaited.
    """

    def __init__(
        self,
        send: Callable[[BaseModel], Awaitable[None]],
        interval: float = DEFAULT_HEARTBEAT_INTERVAL,
    ) -> None:
        if interval <= 0:
            raise ValueError("Heartbeat interval must be positive")
        self._send = send
        self.interval = interval
        self.pings_sent = 0
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> asyncio.Task[None]:
        if self._task is not None:
            raise RuntimeError("Heartbeat already started")
        self._task = asyncio.create_task(self.run(), name="heartbeat")
        return self._task

    async def run(self) -> None:
        loop = asyncio.get_running_loop()
        started = loop.time()
        while True:
            ping = PingMessage(id=str(uuid4()), at=int(time.time()))
            try:
                await self._send(ping)
            except TransportError as e:
                logger.debug("Heartbeat stopped", error=format_error_for_user(e))
                return
            self.pings_sent += 1
            logger.debug("Sent ping", id=ping.id, at=ping.at)

            next_at = started + self.pings_sent * self.interval
            await asyncio.sleep(max(0.0, next_at - loop.time()))

    async def stop(self) -> None:
        """Cancel the heartbeat and wait for it to finish."""
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.debug("Heartbeat failed", error=format_error_for_user(e))
