"""Protocol."""

from .messages import (
    MESSAGE_TYPES,
    Envelope,
    ErrorMessage,
    PingMessage,
    PongMessage,
    ReadyMessage,
    RequestMessage,
    ResponseMessage,
    UnknownMessage,
    b64_decode,
    b64_encode,
    decode_message,
    encode_message,
)

__all__ = [
    "MESSAGE_TYPES",
    "Envelope",
    "ErrorMessage",
    "PingMessage",
    "PongMessage",
    "ReadyMessage",
    "RequestMessage",
    "ResponseMessage",
    "UnknownMessage",
    "b64_decode",
    "b64_encode",
    "decode_message",
    "encode_message",
]
