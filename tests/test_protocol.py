"""Tests for foxros.protocol — frame codec and FoxgloveTransport."""

from __future__ import annotations

import asyncio
import json
import struct
from types import SimpleNamespace
from typing import Any
from unittest.mock import AsyncMock, MagicMock, patch

import aiohttp
from aiohttp import test_utils, web
from conftest import STRING_SCHEMA, STRING_TYPE, cdr_encode, settle
import pytest

from foxros.const import SUBPROTOCOL
from foxros.exceptions import FoxRosConnectionError, FoxRosProtocolError
from foxros.models import Channel, MessageData, Parameter, ParameterValues, ServerInfo, ServiceCallResponse
from foxros.protocol import (
    FoxgloveTransport,
    encode_client_message,
    encode_service_call_request,
    parse_binary,
    parse_text,
)
from foxros.ros import Ros

# ---------------------------------------------------------------------------
# Binary frames
# ---------------------------------------------------------------------------


class TestParseBinary:
    def test_message_data(self):
        frame = struct.pack("<BIQ", 0x01, 42, 1_700_000_000_000_000_000) + b"\x00\x01payload"
        event, msg = parse_binary(frame)
        assert event == "message"
        assert msg == MessageData(subscription_id=42, timestamp=1_700_000_000_000_000_000, data=b"\x00\x01payload")

    def test_time(self):
        event, ts = parse_binary(struct.pack("<BQ", 0x02, 123456789))
        assert (event, ts) == ("time", 123456789)

    def test_service_call_response(self):
        frame = struct.pack("<BIII", 0x03, 7, 9, 3) + b"cdr" + b"\x01\x02"
        event, resp = parse_binary(frame)
        assert event == "serviceCallResponse"
        assert resp == ServiceCallResponse(service_id=7, call_id=9, encoding="cdr", data=b"\x01\x02")

    def test_empty_frame(self):
        with pytest.raises(FoxRosProtocolError):
            parse_binary(b"")

    def test_unknown_opcode(self):
        with pytest.raises(FoxRosProtocolError, match="0x7f"):
            parse_binary(b"\x7f\x00")

    def test_truncated_header(self):
        with pytest.raises(FoxRosProtocolError):
            parse_binary(b"\x01\x00\x00")

    def test_truncated_encoding(self):
        with pytest.raises(FoxRosProtocolError):
            parse_binary(struct.pack("<BIII", 0x03, 1, 1, 10) + b"cd")


class TestEncodeClientFrames:
    def test_message_data(self):
        assert encode_client_message(5, b"abc") == b"\x01\x05\x00\x00\x00abc"

    def test_service_call_request(self):
        frame = encode_service_call_request(7, 2, "cdr", b"\xff")
        assert frame[0] == 0x02
        assert struct.unpack_from("<III", frame, 1) == (7, 2, 3)
        assert frame[13:16] == b"cdr"
        assert frame[16:] == b"\xff"


# ---------------------------------------------------------------------------
# JSON frames
# ---------------------------------------------------------------------------


class TestParseText:
    def test_server_info(self, sample_server_info_dict):
        op, info = parse_text(json.dumps(sample_server_info_dict))
        assert op == "serverInfo"
        assert isinstance(info, ServerInfo)
        assert info.supported_encodings == ["cdr"]
        assert info.session_id == "1718000000"

    def test_advertise(self):
        op, channels = parse_text(
            json.dumps(
                {
                    "op": "advertise",
                    "channels": [
                        {
                            "id": 1,
                            "topic": "/chatter",
                            "encoding": "cdr",
                            "schemaName": "std_msgs/msg/String",
                            "schema": "string data",
                            "schemaEncoding": "ros2msg",
                        }
                    ],
                }
            )
        )
        assert op == "advertise"
        assert channels == [
            Channel(
                id=1,
                topic="/chatter",
                encoding="cdr",
                schema_name="std_msgs/msg/String",
                schema="string data",
                schema_encoding="ros2msg",
            )
        ]

    def test_unadvertise(self):
        assert parse_text('{"op":"unadvertise","channelIds":[1,2]}') == ("unadvertise", [1, 2])

    def test_unadvertise_services(self):
        assert parse_text('{"op":"unadvertiseServices","serviceIds":[3]}') == ("unadvertiseServices", [3])

    def test_parameter_values(self):
        op, values = parse_text('{"op":"parameterValues","id":"4","parameters":[{"name":"a.b","value":5}]}')
        assert op == "parameterValues"
        assert values == ParameterValues(id="4", parameters=[Parameter(name="a.b", value=5)])

    def test_service_call_failure(self):
        op, failure = parse_text('{"op":"serviceCallFailure","serviceId":1,"callId":2,"message":"x"}')
        assert op == "serviceCallFailure"
        assert (failure.service_id, failure.call_id, failure.message) == (1, 2, "x")

    def test_unknown_op_passed_through(self):
        assert parse_text('{"op":"connectionGraphUpdate"}') == ("connectionGraphUpdate", {"op": "connectionGraphUpdate"})

    def test_invalid_json(self):
        with pytest.raises(FoxRosProtocolError):
            parse_text("{not json")

    def test_missing_op(self):
        with pytest.raises(FoxRosProtocolError):
            parse_text('{"channels": []}')

    def test_malformed_payload(self):
        with pytest.raises(FoxRosProtocolError):
            parse_text('{"op":"advertise","channels":[{"topic":"/no-id"}]}')


# ---------------------------------------------------------------------------
# Transport
# ---------------------------------------------------------------------------


class FakeWebSocket:
    """Minimal ``aiohttp.ClientWebSocketResponse`` stand-in."""

    def __init__(self) -> None:
        self.protocol = SUBPROTOCOL
        self.closed = False
        self.close_code: int | None = None
        self.sent: list[str | bytes] = []
        self._inbox: asyncio.Queue = asyncio.Queue()

    def feed_text(self, text: str) -> None:
        self._inbox.put_nowait(SimpleNamespace(type=aiohttp.WSMsgType.TEXT, data=text))

    def feed_binary(self, data: bytes) -> None:
        self._inbox.put_nowait(SimpleNamespace(type=aiohttp.WSMsgType.BINARY, data=data))

    def drop(self, code: int = 1006) -> None:
        self.closed = True
        self.close_code = code
        self._inbox.put_nowait(None)

    def __aiter__(self):
        return self

    async def __anext__(self):
        msg = await self._inbox.get()
        if msg is None:
            raise StopAsyncIteration
        return msg

    async def send_str(self, data: str) -> None:
        self.sent.append(data)

    async def send_bytes(self, data: bytes) -> None:
        self.sent.append(data)

    async def close(self) -> None:
        if not self.closed:
            self.drop(1000)

    def exception(self):
        return None


def _session(ws: FakeWebSocket) -> MagicMock:
    session = MagicMock()
    session.ws_connect = AsyncMock(return_value=ws)
    return session


async def _open(ws: FakeWebSocket) -> FoxgloveTransport:
    transport = FoxgloveTransport("ws://robot:8765", session=_session(ws))
    await transport.connect()
    return transport


@pytest.mark.asyncio
class TestFoxgloveTransport:
    async def test_connect_negotiates_subprotocol_and_emits_open(self):
        ws = FakeWebSocket()
        session = _session(ws)
        transport = FoxgloveTransport("ws://robot:8765", max_message_size=1024, session=session)
        opened = MagicMock()
        transport.on("open", opened)
        await transport.connect()
        session.ws_connect.assert_awaited_once_with(
            "ws://robot:8765", protocols=(SUBPROTOCOL,), max_msg_size=1024
        )
        opened.assert_called_once_with()
        assert transport.is_connected
        await transport.close()

    async def test_connect_failure_raises(self):
        session = MagicMock()
        session.ws_connect = AsyncMock(side_effect=aiohttp.ClientConnectionError("refused"))
        transport = FoxgloveTransport("ws://robot:8765", session=session)
        with pytest.raises(FoxRosConnectionError, match="refused"):
            await transport.connect()
        assert not transport.is_connected

    async def test_send_before_connect_raises(self):
        transport = FoxgloveTransport("ws://robot:8765")
        with pytest.raises(FoxRosConnectionError):
            transport.subscribe(1)

    async def test_outbound_operations_preserve_order(self):
        ws = FakeWebSocket()
        transport = await _open(ws)
        sub_id = transport.subscribe(3)
        channel_id = transport.advertise("/cmd", "cdr", "std_msgs/msg/String")
        transport.send_message(channel_id, b"xyz")
        transport.send_service_call_request(7, 0, "cdr", b"\x01")
        transport.get_parameters(["a.b"], "0")
        transport.set_parameters([Parameter(name="a.b", value=b"\x01\x02")], "1")
        transport.unsubscribe(sub_id)
        transport.unadvertise(channel_id)
        await settle()

        sent = ws.sent
        assert json.loads(sent[0]) == {"op": "subscribe", "subscriptions": [{"id": sub_id, "channelId": 3}]}
        assert json.loads(sent[1]) == {
            "op": "advertise",
            "channels": [{"id": channel_id, "topic": "/cmd", "encoding": "cdr", "schemaName": "std_msgs/msg/String"}],
        }
        assert sent[2] == encode_client_message(channel_id, b"xyz")
        assert sent[3] == encode_service_call_request(7, 0, "cdr", b"\x01")
        assert json.loads(sent[4]) == {"op": "getParameters", "parameterNames": ["a.b"], "id": "0"}
        assert json.loads(sent[5]) == {
            "op": "setParameters",
            "parameters": [{"name": "a.b", "value": "AQI=", "type": "byte_array"}],
            "id": "1",
        }
        assert json.loads(sent[6]) == {"op": "unsubscribe", "subscriptionIds": [sub_id]}
        assert json.loads(sent[7]) == {"op": "unadvertise", "channelIds": [channel_id]}
        await transport.close()

    async def test_ids_are_unique(self):
        transport = await _open(FakeWebSocket())
        assert len({transport.subscribe(1) for _ in range(5)}) == 5
        assert len({transport.advertise("/t", "cdr", "x/msg/Y") for _ in range(5)}) == 5
        await transport.close()

    async def test_inbound_frames_dispatched(self):
        ws = FakeWebSocket()
        transport = await _open(ws)
        on_advertise = MagicMock()
        on_message = MagicMock()
        transport.on("advertise", on_advertise)
        transport.on("message", on_message)

        ws.feed_text('{"op":"advertise","channels":[{"id":1,"topic":"/a","encoding":"cdr","schemaName":"x/msg/Y"}]}')
        ws.feed_binary(struct.pack("<BIQ", 1, 4, 99) + b"data")
        await settle()

        assert on_advertise.call_args.args[0][0].topic == "/a"
        on_message.assert_called_once_with(MessageData(subscription_id=4, timestamp=99, data=b"data"))
        await transport.close()

    async def test_malformed_frame_emits_error_and_continues(self):
        ws = FakeWebSocket()
        transport = await _open(ws)
        errors = MagicMock()
        unadvertised = MagicMock()
        transport.on("error", errors)
        transport.on("unadvertise", unadvertised)

        ws.feed_binary(b"\x09")
        ws.feed_text('{"op":"unadvertise","channelIds":[1]}')
        await settle()

        assert isinstance(errors.call_args.args[0], FoxRosProtocolError)
        unadvertised.assert_called_once_with([1])
        await transport.close()

    async def test_listener_exception_does_not_stop_reader(self):
        ws = FakeWebSocket()
        transport = await _open(ws)
        after = MagicMock()
        transport.on("unadvertise", MagicMock(side_effect=RuntimeError("boom")))
        transport.on("unadvertise", after)
        ws.feed_text('{"op":"unadvertise","channelIds":[1]}')
        ws.feed_text('{"op":"unadvertise","channelIds":[2]}')
        await settle()
        assert after.call_count == 2
        await transport.close()

    async def test_server_close_emits_close_once(self):
        ws = FakeWebSocket()
        transport = await _open(ws)
        closed = MagicMock()
        transport.on("close", closed)
        ws.drop(1006)
        await settle()
        closed.assert_called_once_with(1006)
        assert not transport.is_connected
        with pytest.raises(FoxRosConnectionError):
            transport.subscribe(1)
        await transport.close()
        closed.assert_called_once()

    async def test_close_is_idempotent(self):
        ws = FakeWebSocket()
        transport = await _open(ws)
        closed = MagicMock()
        transport.on("close", closed)
        await transport.close()
        await transport.close()
        closed.assert_called_once_with(1000)

    async def test_off_and_duplicate_registration(self):
        transport = FoxgloveTransport("ws://robot:8765")
        cb = MagicMock()
        transport.on("open", cb)
        transport.on("open", cb)
        transport._emit("open")
        cb.assert_called_once()
        transport.off("open", cb)
        transport.off("open", cb)
        transport._emit("open")
        cb.assert_called_once()

    async def test_close_sends_queued_frames_first(self):
        ws = FakeWebSocket()
        transport = await _open(ws)
        channel_id = transport.advertise("/cmd", "cdr", "std_msgs/msg/String")
        transport.send_message(channel_id, b"xyz")
        transport.unadvertise(channel_id)
        await transport.close()
        assert [json.loads(f)["op"] if isinstance(f, str) else f for f in ws.sent] == [
            "advertise",
            encode_client_message(channel_id, b"xyz"),
            "unadvertise",
        ]
        assert ws.closed

    async def test_close_gives_up_on_stalled_writer(self):
        ws = FakeWebSocket()
        stalled = asyncio.Event()

        async def never_sent(_data):
            stalled.set()
            await asyncio.Event().wait()

        ws.send_str = never_sent
        transport = await _open(ws)
        transport.subscribe(1)
        transport.subscribe(2)
        with patch("foxros.protocol.CLOSE_DRAIN_TIMEOUT", 0.01):
            await transport.close()
        assert stalled.is_set()
        assert ws.closed


# ---------------------------------------------------------------------------
# Real WebSocket server
# ---------------------------------------------------------------------------


class BridgeServer:
    """A minimal Foxglove bridge on a local aiohttp server, recording client frames."""

    def __init__(self) -> None:
        self.received: list[Any] = []
        self.finished = asyncio.Event()
        app = web.Application()
        app.router.add_get("/", self._handle)
        self.server = test_utils.TestServer(app)

    @property
    def url(self) -> str:
        return str(self.server.make_url("/"))

    async def _handle(self, request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse(protocols=(SUBPROTOCOL,))
        await ws.prepare(request)
        await ws.send_str(json.dumps({"op": "serverInfo", "name": "test", "supportedEncodings": ["cdr"]}))
        await ws.send_str(
            json.dumps(
                {
                    "op": "advertise",
                    "channels": [
                        {
                            "id": 1,
                            "topic": "/chatter",
                            "encoding": "cdr",
                            "schemaName": STRING_TYPE,
                            "schema": STRING_SCHEMA,
                            "schemaEncoding": "ros2msg",
                        }
                    ],
                }
            )
        )
        async for msg in ws:
            if msg.type == aiohttp.WSMsgType.TEXT:
                self.received.append(json.loads(msg.data))
            elif msg.type == aiohttp.WSMsgType.BINARY:
                self.received.append(msg.data)
        self.finished.set()
        return ws


@pytest.mark.asyncio
class TestSessionAgainstServer:
    async def test_frames_queued_before_close_reach_server(self):
        bridge = BridgeServer()
        await bridge.server.start_server()
        try:
            await self._publish_and_close(bridge)
        finally:
            await bridge.server.close()

        ops = [frame["op"] if isinstance(frame, dict) else "message" for frame in bridge.received]
        assert ops == ["subscribe", "advertise", "message", "unadvertise", "unsubscribe"]
        advertised = bridge.received[1]["channels"][0]
        expected = encode_client_message(advertised["id"], cdr_encode(STRING_TYPE, STRING_SCHEMA, {"data": "asdf"}))
        assert bridge.received[2] == expected
        assert bridge.received[3]["channelIds"] == [advertised["id"]]

    async def _publish_and_close(self, bridge: BridgeServer) -> None:
        ros = Ros(bridge.url, connect_timeout=5)
        await ros.connect()
        while await ros.get_topic_type("/chatter") is None:
            await asyncio.sleep(0.01)
        sub = await ros.create_subscription("/chatter", lambda msg: None)
        pub = await ros.create_publisher("/chatter", STRING_TYPE)
        await pub.publish({"data": "asdf"})
        pub.close()
        sub.close()
        await ros.close()
        await asyncio.wait_for(bridge.finished.wait(), timeout=5)
