"""Local control channel: message codec and Unix socket transport."""

from .protocol import (
    ControlMessage,
    ErrorResponse,
    Message,
    decode,
    encode,
    read_message,
)
from .transport import ControlServer, request

__all__ = [
    "ControlMessage",
    "ControlServer",
    "ErrorResponse",
    "Message",
    "decode",
    "encode",
    "read_message",
    "request",
]
