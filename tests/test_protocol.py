"""Tests for control message encoding and framing."""

import asyncio
import json
from datetime import datetime, timezone

import pytest

from bwsr.errors import BwsrError, ConflictError, NotFoundError, ProtocolError
from bwsr.ipc.protocol import (
    WATCHDOG_REQUEST,
    WATCHDOG_RESPONSE,
    WRAPPER_REQUEST,
    CdpRequest,
    EndpointResponse,
    ErrorResponse,
    InstanceInfo,
    InstancesResponse,
    ListRequest,
    OkResponse,
    PingRequest,
    PongResponse,
    ShutdownAckResponse,
    ShutdownRequest,
    StartedResponse,
    StartRequest,
    StopAllRequest,
    StopRequest,
    decode,
    encode,
    read_message,
    utcnow,
)


FIXED_TIME = datetime(2024, 1, 1, 12, 30, tzinfo=timezone.utc)

EVERY_MESSAGE = [
    StartRequest(profile="work", session="calm-owl"),
    StartRequest(profile="default"),
    StopRequest(session="calm-owl"),
    StopAllRequest(),
    ListRequest(),
    CdpRequest(session="calm-owl"),
    CdpRequest(),
    StartedResponse(session="calm-owl", debug_port=40123),
    InstancesResponse(
        instances=[
            InstanceInfo(
                session="calm-owl",
                profile="default",
                debug_port=40123,
                last_used=FIXED_TIME,
                last_probe=FIXED_TIME,
                status="unhealthy",
            )
        ]
    ),
    InstancesResponse(instances=[]),
    EndpointResponse(debug_port=40123),
    OkResponse(),
    ErrorResponse(error="Session 'x' not found", code="not_found"),
    PingRequest(),
    ShutdownRequest(),
    PongResponse(debug_port=40123, status="healthy", last_used=FIXED_TIME),
    ShutdownAckResponse(),
]


@pytest.mark.parametrize("message", EVERY_MESSAGE, ids=lambda m: m.type)
def test_every_message_survives_encoding(message):
    assert decode(encode(message)) == message


class TestEncode:

    def test_single_newline_terminated_line(self):
        frame = encode(StartedResponse(session="calm-owl", debug_port=40123))

        assert frame.endswith(b"\n")
        assert frame.count(b"\n") == 1

    def test_camel_case_keys(self):
        frame = encode(StartedResponse(session="calm-owl", debug_port=40123))

        assert json.loads(frame) == {
            "type": "started",
            "ok": True,
            "session": "calm-owl",
            "debugPort": 40123,
        }

    def test_error_response_is_not_ok(self):
        data = json.loads(encode(ErrorResponse(error="nope", code="not_found")))
        assert data["ok"] is False
        assert data["error"] == "nope"


class TestDecode:

    def test_decodes_tagged_request(self):
        message = decode(b'{"type":"start","profile":"work","session":"calm-owl"}\n', WATCHDOG_REQUEST)

        assert isinstance(message, StartRequest)
        assert message.profile == "work"
        assert message.session == "calm-owl"

    def test_optional_session_defaults_to_none(self):
        message = decode(b'{"type":"cdp"}', WATCHDOG_REQUEST)
        assert isinstance(message, CdpRequest)
        assert message.session is None

    def test_decodes_pong_timestamp(self):
        now = utcnow()
        message = decode(encode(PongResponse(debug_port=9222, status="healthy", last_used=now)))

        assert isinstance(message, PongResponse)
        assert message.last_used == now

    def test_instances_response(self):
        data = (
            b'{"type":"instances","ok":true,"instances":[{"session":"calm-owl","profile":"default",'
            b'"debugPort":9222,"lastUsed":"2024-01-01T00:00:00Z","lastProbe":"2024-01-01T00:00:01Z",'
            b'"status":"healthy"}]}'
        )
        message = decode(data, WATCHDOG_RESPONSE)

        assert isinstance(message, InstancesResponse)
        assert message.instances[0].debug_port == 9222

    @pytest.mark.parametrize(
        "data",
        [b"", b"   \n", b"not json", b'{"type":"reboot"}', b'{"type":"stop"}', b"[1, 2]"],
    )
    def test_rejects_malformed(self, data):
        with pytest.raises(ProtocolError):
            decode(data)

    def test_rejects_two_messages_in_one_frame(self):
        with pytest.raises(ProtocolError):
            decode(b'{"type":"list"}\n{"type":"list"}\n')

    def test_adapter_limits_accepted_types(self):
        with pytest.raises(ProtocolError):
            decode(b'{"type":"start","profile":"default"}', WRAPPER_REQUEST)
        assert isinstance(decode(b'{"type":"ping"}', WRAPPER_REQUEST), PingRequest)


class TestErrorResponse:

    def test_round_trips_error_class(self):
        response = ErrorResponse.from_exception(NotFoundError("Session 'x' not found"))

        assert response.code == "not_found"
        error = decode(encode(response)).to_exception()
        assert isinstance(error, NotFoundError)
        assert str(error) == "Session 'x' not found"

    def test_unknown_exception_maps_to_base_error(self):
        response = ErrorResponse.from_exception(RuntimeError("boom"))

        assert response.code == "error"
        error = response.to_exception()
        assert type(error) is BwsrError

    def test_unknown_code_maps_to_base_error(self):
        assert type(ErrorResponse(error="x", code="future_code").to_exception()) is BwsrError

    def test_conflict(self):
        assert isinstance(ErrorResponse.from_exception(ConflictError("taken")).to_exception(), ConflictError)


class TestReadMessage:

    @pytest.mark.asyncio
    async def test_reassembles_fragmented_frame(self):
        reader = asyncio.StreamReader()
        frame = encode(StartRequest(profile="default", session="calm-owl"))

        async def feed():
            for i in range(0, len(frame), 5):
                reader.feed_data(frame[i:i + 5])
                await asyncio.sleep(0)
            reader.feed_eof()

        feeder = asyncio.create_task(feed())
        message = await read_message(reader, WATCHDOG_REQUEST)
        await feeder

        assert isinstance(message, StartRequest)
        assert message.session == "calm-owl"

    @pytest.mark.asyncio
    async def test_reads_only_first_frame(self):
        reader = asyncio.StreamReader()
        reader.feed_data(b'{"type":"ping"}\n{"type":"shutdown"}\n')
        reader.feed_eof()

        assert isinstance(await read_message(reader), PingRequest)

    @pytest.mark.asyncio
    async def test_eof_before_any_data(self):
        reader = asyncio.StreamReader()
        reader.feed_eof()

        assert await read_message(reader) is None

    @pytest.mark.asyncio
    async def test_eof_mid_frame(self):
        reader = asyncio.StreamReader()
        reader.feed_data(b'{"type":"pi')
        reader.feed_eof()

        with pytest.raises(ProtocolError):
            await read_message(reader)
