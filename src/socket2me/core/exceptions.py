"""Error types for the tunnel client.

Errors are grouped by how far they are allowed to travel:

- ``ConfigurationError``: raised before the session starts, ends the process.
- ``AuthenticationError`` / ``ServerRejectedError``: the relay ended the
  session; fatal for the whole run, never retried.
- ``TransportError``: the connection failed or dropped; the session
  reconnects with backoff.
- ``ProtocolError``: a single frame could not be decoded; logged and skipped.
"""

from __future__ import annotations


class Socket2MeError(Exception):
    """Base class for all client errors."""

    code = "SOCKET2ME_ERROR"

    def __init__(self, message: str, code: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code


class ConfigurationError(Socket2MeError):
    """Missing or malformed configuration."""

    code = "CONFIG_ERROR"


class AuthenticationError(Socket2MeError):
    """The relay rejected our credentials."""

    code = "UNAUTHORIZED"

    def __init__(self, message: str = "unauthorized") -> None:
        super().__init__(message)


class ServerRejectedError(Socket2MeError):
    """The relay ended the session with an error frame."""

    code = "SERVER_ERROR"


class TransportError(Socket2MeError):
    """Connecting to, reading from, or writing to the relay failed."""

    code = "TRANSPORT_ERROR"


class ConnectionClosedError(TransportError):
    """The relay connection is closed."""

    code = "CONNECTION_CLOSED"

    def __init__(self, message: str = "Connection closed by server") -> None:
        super().__init__(message)


class ProtocolError(Socket2MeError):
    """A frame could not be decoded into a known envelope."""

    code = "PROTOCOL_ERROR"


def is_unauthorized(message: str | None) -> bool:
    """Check whether a server error message signals bad credentials."""
    return (message or "").strip().lower() == "unauthorized"


def format_error_for_user(error: BaseException) -> str:
    """Return a non-empty, human readable description of an exception."""
    if isinstance(error, Socket2MeError):
        return error.message
    message = str(error).strip()
    if message:
        return message
    return type(error).__name__
