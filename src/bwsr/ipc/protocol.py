"""
Control-channel messages and their wire codec.

Two protocols share one wire format, newline-terminated UTF-8 JSON with one
message per connection round trip:

CLI -> watchdog:
  {"type":"start","profile":"default","session":"calm-owl"}
  {"type":"stop","session":"calm-owl"}
  {"type":"stopAll"}
  {"type":"list"}
  {"type":"cdp","session":null}

Watchdog -> CLI:
  {"type":"started","ok":true,"session":"calm-owl","debugPort":40123}
  {"type":"instances","ok":true,"instances":[...]}
  {"type":"endpoint","ok":true,"debugPort":40123}
  {"type":"ok","ok":true}
  {"type":"error","ok":false,"error":"Session 'x' not found","code":"not_found"}

Watchdog -> session wrapper:
  {"type":"ping"}
  {"type":"shutdown"}

Session wrapper -> watchdog:
  {"type":"pong","debugPort":40123,"status":"healthy","lastUsed":"..."}
  {"type":"shutdownAck"}

Every message carries a ``type`` tag, so each direction decodes into a tagged
union instead of being inspected field by field.
"""

import asyncio
from datetime import datetime, timezone
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError
from pydantic.alias_generators import to_camel

from bwsr.errors import BwsrError, ProtocolError, error_from_code

DELIMITER = b"\n"

# Upper bound for one frame; readline() raises past this
MAX_FRAME_SIZE = 1024 * 1024

SessionStatus = Literal["healthy", "unhealthy"]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Message(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


# =============================================================================
# CLI -> Watchdog
# =============================================================================

class StartRequest(Message):
    type: Literal["start"] = "start"
    profile: str
    session: Optional[str] = None


class StopRequest(Message):
    type: Literal["stop"] = "stop"
    session: str


class StopAllRequest(Message):
    type: Literal["stopAll"] = "stopAll"


class ListRequest(Message):
    type: Literal["list"] = "list"


class CdpRequest(Message):
    type: Literal["cdp"] = "cdp"
    session: Optional[str] = None


# =============================================================================
# Watchdog -> CLI
# =============================================================================

class InstanceInfo(Message):
    """One running session as reported by ``list``."""
    session: str
    profile: str
    debug_port: int
    last_used: datetime
    last_probe: datetime
    status: SessionStatus


class StartedResponse(Message):
    type: Literal["started"] = "started"
    ok: Literal[True] = True
    session: str
    debug_port: int


class InstancesResponse(Message):
    type: Literal["instances"] = "instances"
    ok: Literal[True] = True
    instances: List[InstanceInfo] = []


class EndpointResponse(Message):
    type: Literal["endpoint"] = "endpoint"
    ok: Literal[True] = True
    debug_port: int


class OkResponse(Message):
    type: Literal["ok"] = "ok"
    ok: Literal[True] = True


class ErrorResponse(Message):
    type: Literal["error"] = "error"
    ok: Literal[False] = False
    error: str
    code: str = BwsrError.code

    @classmethod
    def from_exception(cls, exc: BaseException) -> "ErrorResponse":
        code = exc.code if isinstance(exc, BwsrError) else BwsrError.code
        return cls(error=str(exc) or exc.__class__.__name__, code=code)

    def to_exception(self) -> BwsrError:
        return error_from_code(self.code, self.error)


# =============================================================================
# Watchdog <-> Session wrapper
# =============================================================================

class PingRequest(Message):
    type: Literal["ping"] = "ping"


class ShutdownRequest(Message):
    type: Literal["shutdown"] = "shutdown"


class PongResponse(Message):
    type: Literal["pong"] = "pong"
    debug_port: int
    status: SessionStatus
    last_used: datetime


class ShutdownAckResponse(Message):
    type: Literal["shutdownAck"] = "shutdownAck"


WatchdogRequest = Annotated[
    Union[StartRequest, StopRequest, StopAllRequest, ListRequest, CdpRequest],
    Field(discriminator="type"),
]
WatchdogResponse = Annotated[
    Union[StartedResponse, InstancesResponse, EndpointResponse, OkResponse, ErrorResponse],
    Field(discriminator="type"),
]
WrapperRequest = Annotated[
    Union[PingRequest, ShutdownRequest],
    Field(discriminator="type"),
]
WrapperResponse = Annotated[
    Union[PongResponse, ShutdownAckResponse, ErrorResponse],
    Field(discriminator="type"),
]
ControlMessage = Annotated[
    Union[
        StartRequest, StopRequest, StopAllRequest, ListRequest, CdpRequest,
        StartedResponse, InstancesResponse, EndpointResponse, OkResponse, ErrorResponse,
        PingRequest, ShutdownRequest, PongResponse, ShutdownAckResponse,
    ],
    Field(discriminator="type"),
]

WATCHDOG_REQUEST = TypeAdapter(WatchdogRequest)
WATCHDOG_RESPONSE = TypeAdapter(WatchdogResponse)
WRAPPER_REQUEST = TypeAdapter(WrapperRequest)
WRAPPER_RESPONSE = TypeAdapter(WrapperResponse)
CONTROL_MESSAGE = TypeAdapter(ControlMessage)


# =============================================================================
# Codec
# =============================================================================

def encode(message: Message) -> bytes:
    """Serialize one message as a newline-terminated frame."""
    return message.model_dump_json(by_alias=True).encode("utf-8") + DELIMITER


def decode(data: bytes, adapter: TypeAdapter = CONTROL_MESSAGE) -> Message:
    """
    Parse exactly one frame back into a message.

    Raises:
        ProtocolError: If the frame is empty, holds more than one message, or
            does not match any message of ``adapter``.
    """
    frame = data.strip()
    if not frame:
        raise ProtocolError("Empty frame")
    if DELIMITER in frame:
        raise ProtocolError("Expected exactly one message per frame")

    try:
        return adapter.validate_json(frame)
    except ValidationError as e:
        raise ProtocolError(f"Malformed message: {e.errors()[0]['msg']}")


async def read_message(
    reader: asyncio.StreamReader,
    adapter: TypeAdapter = CONTROL_MESSAGE,
) -> Optional[Message]:
    """
    Read one delimiter-terminated frame from a stream and decode it.

    Chunks are accumulated until the delimiter arrives, so a message split
    across several socket reads decodes the same as one delivered whole.

    Returns:
        The decoded message, or None if the peer closed without sending anything.
    """
    try:
        line = await reader.readuntil(DELIMITER)
    except asyncio.IncompleteReadError as e:
        if not e.partial.strip():
            return None
        raise ProtocolError("Connection closed mid-frame")
    except asyncio.LimitOverrunError:
        raise ProtocolError(f"Frame exceeds {MAX_FRAME_SIZE} bytes")

    return decode(line, adapter)
