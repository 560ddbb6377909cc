"""
pytest fixtures and a fake Foxglove transport for foxros tests.
"""

from __future__ import annotations

import asyncio
import itertools
from typing import Any
from unittest.mock import patch

from mcap_ros2._dynamic import generate_dynamic, serialize_dynamic
import pytest

from foxros.models import Channel, MessageData, RemoteService, ServerInfo, ServiceCallResponse

# ---------------------------------------------------------------------------
# Schemas (as advertised by foxglove_bridge for ROS 2)
# ---------------------------------------------------------------------------

STRING_TYPE = "std_msgs/msg/String"
STRING_SCHEMA = "string data"

SETBOOL_TYPE = "std_srvs/srv/SetBool"
SETBOOL_REQUEST = "bool data"
SETBOOL_RESPONSE = "bool success\nstring message"


def cdr_encode(schema_name: str, schema: str, message: dict[str, Any]) -> bytes:
    """Serialize *message* the way a ROS 2 bridge would."""
    return bytes(serialize_dynamic(schema_name, schema)[schema_name](message))


def cdr_decode(schema_name: str, schema: str, data: bytes) -> Any:
    return generate_dynamic(schema_name, schema)[schema_name](data)


def string_channel(channel_id: int = 1, topic: str = "/chatter") -> Channel:
    return Channel(
        id=channel_id,
        topic=topic,
        encoding="cdr",
        schema_name=STRING_TYPE,
        schema=STRING_SCHEMA,
        schema_encoding="ros2msg",
    )


def setbool_service(service_id: int = 7, name: str = "/enable") -> RemoteService:
    return RemoteService(
        id=service_id,
        name=name,
        type=SETBOOL_TYPE,
        request_schema=SETBOOL_REQUEST,
        response_schema=SETBOOL_RESPONSE,
    )


async def settle(rounds: int = 5) -> None:
    """Let pending tasks run up to their next suspension point."""
    for _ in range(rounds):
        await asyncio.sleep(0)


# ---------------------------------------------------------------------------
# Fake transport
# ---------------------------------------------------------------------------


class FakeTransport:
    """
    Stand-in for :class:`foxros.protocol.FoxgloveTransport`.

    Records every outbound operation in :attr:`calls` and lets tests push
    inbound events with :meth:`emit`.
    """

    def __init__(self, server_info: ServerInfo | None = None) -> None:
        self.server_info = server_info if server_info is not None else ServerInfo(
            name="foxglove_bridge", supported_encodings=["cdr"]
        )
        self.listeners: dict[str, list[Any]] = {}
        self.calls: list[tuple[Any, ...]] = []
        self.is_connected = False
        self.connect_count = 0
        self._channel_ids = itertools.count(100)
        self._subscription_ids = itertools.count(1)

    def on(self, event: str, callback: Any) -> None:
        self.listeners.setdefault(event, []).append(callback)

    def off(self, event: str, callback: Any) -> None:
        self.listeners.get(event, []).remove(callback)

    def emit(self, event: str, *args: Any) -> None:
        for callback in list(self.listeners.get(event, [])):
            callback(*args)

    def ops(self, name: str) -> list[tuple[Any, ...]]:
        return [c for c in self.calls if c[0] == name]

    # -- inbound helpers ------------------------------------------------

    def advertise_channels(self, *channels: Channel) -> None:
        self.emit("advertise", list(channels))

    def advertise_services(self, *services: RemoteService) -> None:
        self.emit("advertiseServices", list(services))

    def deliver(self, subscription_id: int, data: bytes, timestamp: int = 0) -> None:
        self.emit("message", MessageData(subscription_id=subscription_id, timestamp=timestamp, data=data))

    def respond(self, service_id: int, call_id: int, data: bytes, encoding: str = "cdr") -> None:
        self.emit(
            "serviceCallResponse",
            ServiceCallResponse(service_id=service_id, call_id=call_id, encoding=encoding, data=data),
        )

    # -- transport API ----------------------------------------------------

    async def connect(self) -> None:
        self.connect_count += 1
        self.is_connected = True
        self.emit("open")
        if self.server_info is not None:
            self.emit("serverInfo", self.server_info)

    async def close(self) -> None:
        if self.is_connected:
            self.is_connected = False
            self.emit("close", 1000)

    def advertise(self, topic: str, encoding: str, schema_name: str) -> int:
        channel_id = next(self._channel_ids)
        self.calls.append(("advertise", topic, encoding, schema_name, channel_id))
        return channel_id

    def unadvertise(self, channel_id: int) -> None:
        self.calls.append(("unadvertise", channel_id))

    def subscribe(self, channel_id: int) -> int:
        subscription_id = next(self._subscription_ids)
        self.calls.append(("subscribe", channel_id, subscription_id))
        return subscription_id

    def unsubscribe(self, subscription_id: int) -> None:
        self.calls.append(("unsubscribe", subscription_id))

    def send_message(self, channel_id: int, data: bytes) -> None:
        self.calls.append(("send_message", channel_id, data))

    def send_service_call_request(self, service_id: int, call_id: int, encoding: str, data: bytes) -> None:
        self.calls.append(("call", service_id, call_id, encoding, data))

    def get_parameters(self, names: list[str], request_id: str | None = None) -> None:
        self.calls.append(("get_parameters", names, request_id))

    def set_parameters(self, parameters: list[Any], request_id: str | None = None) -> None:
        self.calls.append(("set_parameters", parameters, request_id))


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def transport():
    """Patch the session's transport class with a :class:`FakeTransport`."""
    fake = FakeTransport()
    with patch("foxros.ros.FoxgloveTransport", return_value=fake) as MockTransport:  # noqa: N806
        fake.factory = MockTransport
        yield fake


@pytest.fixture
def sample_server_info_dict() -> dict[str, Any]:
    """``serverInfo`` as sent by foxglove_bridge (ROS 2 Humble)."""
    return {
        "op": "serverInfo",
        "name": "foxglove_bridge",
        "capabilities": ["clientPublish", "parameters", "services", "connectionGraph"],
        "supportedEncodings": ["cdr"],
        "metadata": {"ROS_DISTRO": "humble"},
        "sessionId": "1718000000",
    }
