"""Wire protocol: JSON envelopes with base64-encoded bodies.

Every frame is a JSON object with a ``type`` field. HTTP bodies travel as
standard base64 in ``body_b64`` so arbitrary binary content survives the
text transport.
"""

from __future__ import annotations

import base64
import binascii
import json
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from socket2me.core.exceptions import ProtocolError

JSON_HEADERS = {"Content-Type": "application/json"}


def b64_encode(data: bytes | str | None) -> str:
    """Encode bytes as strict (no newlines) base64."""
    if data is None:
        return ""
    if isinstance(data, str):
        data = data.encode("utf-8")
    return base64.b64encode(data).decode("ascii")


def b64_decode(data: str | None) -> bytes:
    """Decode base64, returning ``b""`` for missing or malformed input."""
    if not data:
        return b""
    try:
        return base64.b64decode(data)
    except (binascii.Error, ValueError):
        return b""


def json_body(payload: dict[str, Any]) -> bytes:
    return json.dumps(payload, separators=(",", ":")).encode("utf-8")


class ReadyMessage(BaseModel):
    """Authentication frame.

    Sent by the client with credentials, echoed back by the server without
    them once the credentials are accepted.
    """

    type: Literal["ready"] = "ready"
    username: str | None = None
    token: str | None = Field(default=None, repr=False)


class ErrorMessage(BaseModel):
    """Server-side error. Always ends the session."""

    type: Literal["error"] = "error"
    message: str = ""

    @field_validator("message", mode="before")
    @classmethod
    def _message_as_text(cls, value: Any) -> str:
        # null or structured messages still end the session
        if value is None:
            return ""
        if isinstance(value, str):
            return value
        return json.dumps(value)


class RequestMessage(BaseModel):
    """HTTP request to forward to the local server."""

    type: Literal["request"] = "request"
    id: str | int
    method: str
    path: str
    headers: dict[str, Any] = Field(default_factory=dict)
    body_b64: str | None = None

    @property
    def body(self) -> bytes:
        return b64_decode(self.body_b64)


class ResponseMessage(BaseModel):
    """HTTP response from the local server."""

    type: Literal["response"] = "response"
    id: str | int
    status: int
    headers: dict[str, str] = Field(default_factory=dict)
    body_b64: str = ""

    @classmethod
    def build(
        cls,
        request_id: str | int,
        status: int,
        headers: dict[str, str] | None = None,
        body: bytes = b"",
    ) -> ResponseMessage:
        return cls(
            id=request_id,
            status=status,
            headers=dict(headers or {}),
            body_b64=b64_encode(body),
        )

    @classmethod
    def json_error(cls, request_id: str | int, status: int, error: str) -> ResponseMessage:
        """Build a response whose body is ``{"error": <error>}``."""
        return cls.build(request_id, status, JSON_HEADERS, json_body({"error": error}))

    @property
    def body(self) -> bytes:
        return b64_decode(self.body_b64)


class PingMessage(BaseModel):
    """Keep-alive ping.

    Inbound pings are taken as sent: ``id`` is echoed back verbatim in the
    pong and ``at`` is informational only.
    """

    type: Literal["ping"] = "ping"
    id: Any = None
    at: Any = None


class PongMessage(BaseModel):
    """Keep-alive pong, paired with a ping by ``id``."""

    type: Literal["pong"] = "pong"
    id: Any = None


class UnknownMessage(BaseModel):
    """Any frame whose ``type`` this client does not understand."""

    model_config = ConfigDict(extra="allow")

    type: str | None = None


Envelope = (
    ReadyMessage
    | ErrorMessage
    | RequestMessage
    | ResponseMessage
    | PingMessage
    | PongMessage
    | UnknownMessage
)

MESSAGE_TYPES: dict[str, type[BaseModel]] = {
    "ready": ReadyMessage,
    "error": ErrorMessage,
    "request": RequestMessage,
    "response": ResponseMessage,
    "ping": PingMessage,
    "pong": PongMessage,
}


def encode_message(msg: BaseModel) -> str:
    """Serialize an envelope to a JSON text frame, omitting unset optionals."""
    return msg.model_dump_json(exclude_none=True)


def decode_message(data: str | bytes) -> Envelope:
    """Parse a text frame into its envelope model.

    Raises:
        ProtocolError: If the frame is not a JSON object or a known type
            is missing required fields
    """
    try:
        raw = json.loads(data)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ProtocolError(f"Invalid JSON frame: {e}") from e

    if not isinstance(raw, dict):
        raise ProtocolError(f"Expected JSON object, got {type(raw).__name__}")

    msg_type = raw.get("type")
    if not isinstance(msg_type, str):
        raise ProtocolError("Frame has no 'type' field")

    model = MESSAGE_TYPES.get(msg_type)
    if model is None:
        return UnknownMessage.model_validate(raw)

    try:
        return model.model_validate(raw)  # type: ignore[return-value]
    except ValidationError as e:
        raise ProtocolError(f"Malformed {msg_type!r} message: {e}") from e
