"""Tunnel session: connect, authenticate, dispatch, back off, reconnect."""

from __future__ import annotations

import asyncio
import contextlib
import json
from collections.abc import Callable
from enum import Enum
from typing import Any

import structlog

from socket2me.client.connection import Connection
from socket2me.client.forwarder import ProxyConfig, RequestForwarder
from socket2me.client.heartbeat import HeartbeatTask
from socket2me.core.config import ClientConfig, SessionSettings, get_settings
from socket2me.core.exceptions import (
    AuthenticationError,
    ConnectionClosedError,
    ProtocolError,
    ServerRejectedError,
    Socket2MeError,
    TransportError,
    is_unauthorized,
)
from socket2me.core.transport import Transport, WebSocketTransport
from socket2me.protocol.messages import (
    Envelope,
    ErrorMessage,
    PingMessage,
    PongMessage,
    ReadyMessage,
    RequestMessage,
    ResponseMessage,
    decode_message,
)

logger = structlog.get_logger()


class SessionState(Enum):
    """Tunnel session state."""

    IDLE = "idle"
    CONNECTING = "connecting"
    AUTHENTICATING = "authenticating"
    READY = "ready"
    DRAINING = "draining"
    TERMINATED = "terminated"


def next_backoff(current: float, maximum: float) -> float:
    """Double the reconnect delay, capped at ``maximum``."""
    return min(current * 2, maximum)


def _request_id_of(raw: str) -> Any:
    """Best-effort ``id`` of a malformed ``request`` frame, else ``None``."""
    try:
        data = json.loads(raw)
    except ValueError:
        return None
    if isinstance(data, dict) and data.get("type") == "request":
        request_id = data.get("id")
        if isinstance(request_id, str | int):
            return request_id
    return None


class TunnelSession:
    """Keeps one tunnel alive for the lifetime of a client run.

    Features:
    - Exponential reconnect backoff (1s doubling to 30s), reset once authenticated
    - Credential and server rejections end the run without retrying
    - Concurrent request forwarding with a single serialized writer
    - Heartbeat pings while authenticated
    - Prompt shutdown: ``request_stop()`` wakes any pending connect, read or sleep
    """

    def __init__(
        self,
        config: ClientConfig,
        settings: SessionSettings | None = None,
        forwarder: RequestForwarder | None = None,
        transport_factory: Callable[[], Transport] | None = None,
        verbose: bool = False,
    ) -> None:
        self.config = config
        self.settings = settings or get_settings()
        self.forwarder = forwarder or RequestForwarder(
            config.local,
            proxy_config=ProxyConfig.from_settings(self.settings, config.local),
            verbose=verbose,
        )
        self._transport_factory = transport_factory or self._create_transport

        self._state = SessionState.IDLE
        self._backoff = self.settings.initial_backoff
        self._stop = asyncio.Event()
        self._connection: Connection | None = None
        self._in_flight: set[asyncio.Task[None]] = set()

        self._state_hooks: list[Callable[[SessionState], None]] = []

        # Metrics
        self._connection_attempts = 0
        self._requests_forwarded = 0
        self._frames_sent = 0
        self._frames_received = 0

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def backoff(self) -> float:
        """Delay before the next reconnect attempt, in seconds."""
        return self._backoff

    @property
    def stop_requested(self) -> bool:
        return self._stop.is_set()

    @property
    def connection(self) -> Connection | None:
        return self._connection

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    @property
    def stats(self) -> dict[str, Any]:
        frames_sent, frames_received = self._frames_sent, self._frames_received
        if self._connection is not None:
            frames_sent += self._connection.frames_sent
            frames_received += self._connection.frames_received
        return {
            "state": self._state.value,
            "backoff_sec": self._backoff,
            "connection_attempts": self._connection_attempts,
            "requests_forwarded": self._requests_forwarded,
            "frames_sent": frames_sent,
            "frames_received": frames_received,
            "in_flight": len(self._in_flight),
        }

    def add_state_hook(self, hook: Callable[[SessionState], None]) -> None:
        """Add a hook to be called on state changes."""
        self._state_hooks.append(hook)

    def remove_state_hook(self, hook: Callable[[SessionState], None]) -> None:
        if hook in self._state_hooks:
            self._state_hooks.remove(hook)

    def _set_state(self, state: SessionState) -> None:
        """Set state and notify hooks."""
        if self._state == state or self._state == SessionState.TERMINATED:
            return
        old_state = self._state
        self._state = state
        logger.debug("State changed", old=old_state.value, new=state.value)
        for hook in self._state_hooks:
            try:
                hook(state)
            except Exception as e:
                logger.warning("State hook error", error=str(e))

    def request_stop(self) -> None:
        """Ask the session to shut down.

        Only sets the stop event, so it is safe to call from a signal
        handler callback; the running session performs the teardown.
        """
        self._stop.set()

    def _create_transport(self) -> Transport:
        return WebSocketTransport(connect_timeout=self.settings.connect_timeout)

    async def run(self) -> None:
        """Run until stopped or until the relay ends the session.

        Returns normally after a requested stop.

        Raises:
            AuthenticationError: If the relay rejected the credentials
            ServerRejectedError: If the relay ended the session with an error
        """
        if self._state != SessionState.IDLE:
            raise RuntimeError("A session can only be run once")

        try:
            while not self._stop.is_set():
                try:
                    await self._run_attempt()
                except TransportError as e:
                    if self._stop.is_set():
                        break
                    self._set_state(SessionState.CONNECTING)
                    logger.warning(
                        "Connection failed, backing off",
                        error=e.message,
                        backoff_sec=self._backoff,
                    )
                    await self._backoff_sleep()
                    self._backoff = next_backoff(self._backoff, self.settings.max_backoff)
                except AuthenticationError:
                    logger.error(
                        "Authorization failed, check the username and key in your config",
                        username=self.config.username,
                    )
                    raise
                except ServerRejectedError as e:
                    logger.error("Server ended the session", error=e.message)
                    raise

            self._set_state(SessionState.DRAINING)
        finally:
            with contextlib.suppress(Exception):
                await self.forwarder.aclose()
            self._set_state(SessionState.TERMINATED)
            logger.info("Session closed", stats=self.stats)

    async def _run_attempt(self) -> None:
        """Run one connection attempt, abandoning it as soon as stop is requested."""
        attempt = asyncio.create_task(self._run_connection(), name="connection")
        stop_waiter = asyncio.create_task(self._stop.wait(), name="stop-watch")
        try:
            done, _ = await asyncio.wait(
                {attempt, stop_waiter},
                return_when=asyncio.FIRST_COMPLETED,
            )
        except asyncio.CancelledError:
            self.request_stop()
            await self._cancel_attempt(attempt)
            raise
        finally:
            stop_waiter.cancel()

        if attempt in done:
            # Re-raises TransportError / AuthenticationError / ServerRejectedError
            attempt.result()
            return

        await self._cancel_attempt(attempt)

    async def _cancel_attempt(self, attempt: asyncio.Task[None]) -> None:
        attempt.cancel()
        try:
            await attempt
        except asyncio.CancelledError:
            pass
        except Socket2MeError as e:
            logger.debug("Connection ended during shutdown", error=e.message)

    async def _backoff_sleep(self) -> None:
        """Sleep for the current backoff, waking early if stop is requested."""
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(self._stop.wait(), timeout=self._backoff)

    async def _run_connection(self) -> None:
        self._connection_attempts += 1
        self._set_state(SessionState.CONNECTING)
        connection = Connection(self._transport_factory())
        heartbeat: HeartbeatTask | None = None
        # State after a connection that ends without a stop request
        ended = SessionState.CONNECTING

        try:
            await connection.transport.connect(self.config.websocket_url)
            self._connection = connection
            self._set_state(SessionState.AUTHENTICATING)
            await self._authenticate(connection)

            self._backoff = self.settings.initial_backoff
            self._set_state(SessionState.READY)

            heartbeat = HeartbeatTask(connection.send, self.settings.heartbeat_interval)
            heartbeat.start()

            await self._dispatch_loop(connection)
        except (AuthenticationError, ServerRejectedError):
            ended = SessionState.DRAINING
            raise
        finally:
            stopping = self._stop.is_set()
            # No connection is published outside AUTHENTICATING/READY
            self._connection = None
            self._set_state(SessionState.DRAINING if stopping else ended)
            if heartbeat is not None:
                await heartbeat.stop()
            await self._drain_in_flight(self.settings.drain_timeout if stopping else 0.0)
            await connection.close()
            self._frames_sent += connection.frames_sent
            self._frames_received += connection.frames_received

    async def _authenticate(self, connection: Connection) -> None:
        logger.debug("Authenticating", url=self.config.websocket_url)
        await connection.send(
            ReadyMessage(username=self.config.username, token=self.config.token)
        )

        try:
            raw = await asyncio.wait_for(connection.recv(), timeout=self.settings.auth_timeout)
        except TimeoutError as e:
            raise TransportError("Timed out waiting for authentication") from e
        if raw is None:
            raise ConnectionClosedError("Connection closed during authentication")

        try:
            msg = decode_message(raw)
        except ProtocolError as e:
            raise ServerRejectedError(f"Unexpected auth response: {e.message}") from e

        if isinstance(msg, ReadyMessage):
            logger.info(
                "Connection established",
                url=self.config.websocket_url,
                username=self.config.username,
            )
            return
        if isinstance(msg, ErrorMessage):
            raise self._server_error(msg)
        raise ServerRejectedError(f"Unexpected auth response: {msg.type}")

    @staticmethod
    def _server_error(msg: ErrorMessage) -> Socket2MeError:
        if is_unauthorized(msg.message):
            return AuthenticationError(msg.message)
        return ServerRejectedError(msg.message or "Server reported an error")

    async def _dispatch_loop(self, connection: Connection) -> None:
        while True:
            raw = await connection.recv()
            if raw is None:
                raise ConnectionClosedError()

            try:
                msg = decode_message(raw)
            except ProtocolError as e:
                logger.warning("Failed to decode message", error=e.message, data_preview=raw[:80])
                request_id = _request_id_of(raw)
                if request_id is not None:
                    await connection.send(ResponseMessage.json_error(request_id, 502, e.message))
                continue

            await self._dispatch(connection, msg)

    async def _dispatch(self, connection: Connection, msg: Envelope) -> None:
        if isinstance(msg, RequestMessage):
            self._spawn_request(connection, msg)
        elif isinstance(msg, PingMessage):
            logger.debug("Received ping", id=msg.id)
            await connection.send(PongMessage(id=msg.id))
        elif isinstance(msg, PongMessage):
            logger.debug("Received pong", id=msg.id)
        elif isinstance(msg, ReadyMessage):
            logger.warning("Unexpected ready message")
        elif isinstance(msg, ErrorMessage):
            raise self._server_error(msg)
        elif isinstance(msg, ResponseMessage):
            logger.warning("Unexpected response message", id=msg.id)
        else:
            logger.warning("Unknown message type", type=msg.type)

    def _spawn_request(self, connection: Connection, request: RequestMessage) -> None:
        task = asyncio.create_task(
            self._handle_request(connection, request),
            name=f"request-{request.id}",
        )
        self._in_flight.add(task)
        task.add_done_callback(self._in_flight.discard)

    async def _handle_request(self, connection: Connection, request: RequestMessage) -> None:
        response = await self.forwarder.forward(request)
        try:
            await connection.send(response)
        except TransportError as e:
            logger.warning(
                "Failed to send response",
                request_id=request.id,
                status=response.status,
                error=e.message,
            )
            return
        self._requests_forwarded += 1
        logger.debug("Sent response", request_id=request.id, status=response.status)

    async def _drain_in_flight(self, grace: float) -> None:
        """Let in-flight requests finish within ``grace`` seconds, then cancel the rest."""
        tasks = set(self._in_flight)
        if not tasks:
            return

        pending = tasks
        if grace > 0:
            logger.info("Waiting for in-flight requests", count=len(tasks), grace_sec=grace)
            _, pending = await asyncio.wait(tasks, timeout=grace)

        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            logger.debug("Abandoned in-flight requests", count=len(pending))
