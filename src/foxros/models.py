"""
foxros.models — Typed dataclasses for every Foxglove WebSocket protocol object.

All dataclasses use Python's ``dataclasses`` module and include ``from_dict``
factory methods for deserialising the server's JSON operations. Binary frame
events (:class:`MessageData`, :class:`ServiceCallResponse`) are built by
:mod:`foxros.protocol` directly.

References:
- foxglove/ws-protocol ``docs/spec.md`` — ``advertise``, ``advertiseServices``,
  ``serverInfo``, ``parameterValues`` payload shapes
"""

from __future__ import annotations

import base64
from dataclasses import dataclass, field
from typing import Any

from .const import ENCODING_ROS1

# ---------------------------------------------------------------------------
# Server info
# ---------------------------------------------------------------------------


@dataclass
class ServerInfo:
    """
    One-time capability announcement sent by the server after the handshake.

    ``supported_encodings`` decides the session's message encoding: a server
    listing ``"ros1"`` is a ROS 1 bridge, everything else is treated as CDR.
    """

    name: str = ""
    capabilities: list[str] = field(default_factory=list)
    supported_encodings: list[str] = field(default_factory=list)
    metadata: dict[str, str] = field(default_factory=dict)
    session_id: str | None = None

    @property
    def legacy_encoding(self) -> bool:
        """True when messages must use the ROS 1 binary form."""
        return ENCODING_ROS1 in self.supported_encodings

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> ServerInfo:
        return cls(
            name=d.get("name", ""),
            capabilities=list(d.get("capabilities") or []),
            supported_encodings=list(d.get("supportedEncodings") or []),
            metadata=dict(d.get("metadata") or {}),
            session_id=d.get("sessionId"),
        )


# ---------------------------------------------------------------------------
# Discovery
# ---------------------------------------------------------------------------


@dataclass
class Channel:
    """
    A server-advertised topic.

    Identity is :attr:`id`; :attr:`topic` is the caller-facing key and is
    unique among currently-advertised channels.
    """

    id: int
    topic: str
    encoding: str = ""
    schema_name: str = ""
    schema: str = ""
    schema_encoding: str | None = None

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> Channel:
        return cls(
            id=int(d["id"]),
            topic=d["topic"],
            encoding=d.get("encoding", ""),
            schema_name=d.get("schemaName", ""),
            schema=d.get("schema", ""),
            schema_encoding=d.get("schemaEncoding"),
        )


@dataclass
class RemoteService:
    """
    A server-advertised service.

    Older servers send flat ``requestSchema`` / ``responseSchema`` strings;
    newer ones nest ``request`` / ``response`` objects carrying their own
    ``schema`` and ``schemaEncoding``. Both shapes are accepted.
    """

    id: int
    name: str
    type: str
    request_schema: str = ""
    response_schema: str = ""
    request_schema_encoding: str | None = None
    response_schema_encoding: str | None = None

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> RemoteService:
        request = d.get("request") or {}
        response = d.get("response") or {}
        return cls(
            id=int(d["id"]),
            name=d["name"],
            type=d.get("type", ""),
            request_schema=d.get("requestSchema", request.get("schema", "")),
            response_schema=d.get("responseSchema", response.get("schema", "")),
            request_schema_encoding=request.get("schemaEncoding"),
            response_schema_encoding=response.get("schemaEncoding"),
        )


# ---------------------------------------------------------------------------
# Parameters
# ---------------------------------------------------------------------------


@dataclass
class Parameter:
    """
    A named server parameter.

    ``byte_array`` values travel base64-encoded on the wire and are exposed
    as :class:`bytes` here.
    """

    name: str
    value: Any = None
    type: str | None = None

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> Parameter:
        value = d.get("value")
        ptype = d.get("type")
        if ptype == "byte_array" and isinstance(value, str):
            value = base64.b64decode(value)
        return cls(name=d["name"], value=value, type=ptype)

    def to_dict(self) -> dict[str, Any]:
        """Return the JSON shape used by ``setParameters``."""
        if isinstance(self.value, (bytes, bytearray)):
            return {
                "name": self.name,
                "value": base64.b64encode(bytes(self.value)).decode("ascii"),
                "type": "byte_array",
            }
        out: dict[str, Any] = {"name": self.name, "value": self.value}
        if self.type is not None:
            out["type"] = self.type
        return out


# ---------------------------------------------------------------------------
# Inbound data events
# ---------------------------------------------------------------------------


@dataclass
class MessageData:
    """A message delivered for one of our subscriptions."""

    subscription_id: int
    timestamp: int
    data: bytes


@dataclass
class ServiceCallResponse:
    """The response to a service call request."""

    service_id: int
    call_id: int
    encoding: str
    data: bytes


@dataclass
class ServiceCallFailure:
    """Server notice that a service call could not be completed."""

    service_id: int
    call_id: int
    message: str = ""

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> ServiceCallFailure:
        return cls(
            service_id=int(d["serviceId"]),
            call_id=int(d["callId"]),
            message=d.get("message", ""),
        )


@dataclass
class ParameterValues:
    """The reply to ``getParameters`` / ``setParameters``."""

    id: str | None
    parameters: list[Parameter] = field(default_factory=list)

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> ParameterValues:
        return cls(
            id=d.get("id"),
            parameters=[Parameter.from_dict(p) for p in d.get("parameters") or []],
        )
