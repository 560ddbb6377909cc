"""
foxros.protocol — Async Foxglove WebSocket transport.

Wraps an ``aiohttp`` WebSocket in the client side of the
``foxglove.websocket.v1`` protocol: JSON text frames for control operations,
little-endian binary frames for message data and service calls.

Protocol notes (foxglove/ws-protocol ``docs/spec.md``):
- The server speaks first with ``serverInfo``; channels and services are
  announced with ``advertise`` / ``advertiseServices`` at any later time.
- Channel ids (server) and subscription ids (client) are independent
  id spaces; the client picks subscription ids and client-channel ids.
- Binary server frames: ``0x01`` message data, ``0x02`` time,
  ``0x03`` service call response.
- Binary client frames: ``0x01`` message data, ``0x02`` service call request.

Inbound frames are parsed on a single reader task and dispatched to the
listeners registered with :meth:`FoxgloveTransport.on`, one at a time.
Outbound operations are plain (non-async) calls that enqueue a frame for a
single writer task, so they preserve call order and can be issued from
inside listeners.
"""

from __future__ import annotations

import asyncio
import contextlib
import itertools
import json
import logging
import struct
from typing import TYPE_CHECKING, Any

import aiohttp

from .const import (
    BINARY_MESSAGE_DATA,
    BINARY_SERVICE_CALL_RESPONSE,
    BINARY_TIME,
    CLIENT_BINARY_MESSAGE_DATA,
    CLIENT_BINARY_SERVICE_CALL_REQUEST,
    CLOSE_DRAIN_TIMEOUT,
    DEFAULT_MAX_MESSAGE_SIZE,
    OP_ADVERTISE,
    OP_ADVERTISE_SERVICES,
    OP_GET_PARAMETERS,
    OP_PARAMETER_VALUES,
    OP_REMOVE_STATUS,
    OP_SERVER_INFO,
    OP_SERVICE_CALL_FAILURE,
    OP_SET_PARAMETERS,
    OP_STATUS,
    OP_SUBSCRIBE,
    OP_UNADVERTISE,
    OP_UNADVERTISE_SERVICES,
    OP_UNSUBSCRIBE,
    SUBPROTOCOL,
)
from .exceptions import FoxRosConnectionError, FoxRosProtocolError
from .models import (
    Channel,
    MessageData,
    Parameter,
    ParameterValues,
    RemoteService,
    ServerInfo,
    ServiceCallFailure,
    ServiceCallResponse,
)

if TYPE_CHECKING:
    from collections.abc import Callable

logger = logging.getLogger(__name__)

_U32 = struct.Struct("<I")
_MESSAGE_HEADER = struct.Struct("<BIQ")
_TIME = struct.Struct("<BQ")
_SERVICE_HEADER = struct.Struct("<BIII")
_CLIENT_MESSAGE_HEADER = struct.Struct("<BI")

_STATUS_LEVELS = {0: logging.INFO, 1: logging.WARNING, 2: logging.ERROR}


# ---------------------------------------------------------------------------
# Binary frame codec
# ---------------------------------------------------------------------------


def parse_binary(data: bytes) -> tuple[str, Any]:
    """
    Parse a binary server frame into ``(event_name, event)``.

    Raises:
        FoxRosProtocolError: On an unknown opcode or a truncated frame.
    """
    if not data:
        raise FoxRosProtocolError("empty binary frame")
    opcode = data[0]
    try:
        if opcode == BINARY_MESSAGE_DATA:
            _, subscription_id, timestamp = _MESSAGE_HEADER.unpack_from(data)
            return "message", MessageData(
                subscription_id=subscription_id,
                timestamp=timestamp,
                data=bytes(data[_MESSAGE_HEADER.size :]),
            )
        if opcode == BINARY_TIME:
            _, timestamp = _TIME.unpack_from(data)
            return "time", timestamp
        if opcode == BINARY_SERVICE_CALL_RESPONSE:
            _, service_id, call_id, encoding_len = _SERVICE_HEADER.unpack_from(data)
            start = _SERVICE_HEADER.size
            if len(data) < start + encoding_len:
                raise FoxRosProtocolError("truncated service call response encoding")
            encoding = bytes(data[start : start + encoding_len]).decode("utf-8")
            return "serviceCallResponse", ServiceCallResponse(
                service_id=service_id,
                call_id=call_id,
                encoding=encoding,
                data=bytes(data[start + encoding_len :]),
            )
    except struct.error as exc:
        raise FoxRosProtocolError(f"truncated binary frame (opcode 0x{opcode:02x})") from exc
    raise FoxRosProtocolError(f"unknown binary opcode 0x{opcode:02x}")


def encode_client_message(channel_id: int, payload: bytes) -> bytes:
    """Build a client ``0x01`` message-data frame."""
    return _CLIENT_MESSAGE_HEADER.pack(CLIENT_BINARY_MESSAGE_DATA, channel_id) + payload


def encode_service_call_request(service_id: int, call_id: int, encoding: str, payload: bytes) -> bytes:
    """Build a client ``0x02`` service-call-request frame."""
    raw_encoding = encoding.encode("utf-8")
    header = _SERVICE_HEADER.pack(CLIENT_BINARY_SERVICE_CALL_REQUEST, service_id, call_id, len(raw_encoding))
    return header + raw_encoding + payload


def parse_text(text: str) -> tuple[str, Any]:
    """
    Parse a JSON server frame into ``(event_name, event)``.

    Unknown operations are returned as ``(op, raw_dict)``.

    Raises:
        FoxRosProtocolError: If the frame is not a JSON object with an ``op``.
    """
    try:
        msg = json.loads(text)
    except json.JSONDecodeError as exc:
        raise FoxRosProtocolError(f"invalid JSON frame: {exc}") from exc
    if not isinstance(msg, dict) or "op" not in msg:
        raise FoxRosProtocolError("JSON frame without 'op'")
    op = msg["op"]
    try:
        if op == OP_SERVER_INFO:
            return op, ServerInfo.from_dict(msg)
        if op == OP_ADVERTISE:
            return op, [Channel.from_dict(c) for c in msg.get("channels", [])]
        if op == OP_UNADVERTISE:
            return op, [int(i) for i in msg.get("channelIds", [])]
        if op == OP_ADVERTISE_SERVICES:
            return op, [RemoteService.from_dict(s) for s in msg.get("services", [])]
        if op == OP_UNADVERTISE_SERVICES:
            return op, [int(i) for i in msg.get("serviceIds", [])]
        if op == OP_PARAMETER_VALUES:
            return op, ParameterValues.from_dict(msg)
        if op == OP_SERVICE_CALL_FAILURE:
            return op, ServiceCallFailure.from_dict(msg)
    except (KeyError, TypeError, ValueError) as exc:
        raise FoxRosProtocolError(f"malformed {op!r} frame: {exc}") from exc
    return op, msg


# ---------------------------------------------------------------------------
# Transport
# ---------------------------------------------------------------------------


class FoxgloveTransport:
    """
    Asyncio client for one Foxglove WebSocket connection.

    Events (register with :meth:`on`)
    ~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~
    ``open``, ``close`` (close code), ``error`` (exception),
    ``serverInfo`` (:class:`~foxros.models.ServerInfo`),
    ``advertise`` (list of :class:`~foxros.models.Channel`),
    ``unadvertise`` (list of channel ids),
    ``advertiseServices`` (list of :class:`~foxros.models.RemoteService`),
    ``unadvertiseServices`` (list of service ids),
    ``message`` (:class:`~foxros.models.MessageData`),
    ``serviceCallResponse``, ``serviceCallFailure``, ``parameterValues``,
    ``status`` (raw dict) and ``time`` (nanoseconds).

    Example::

        transport = FoxgloveTransport("ws://localhost:8765")
        transport.on("advertise", lambda channels: print(channels))
        await transport.connect()
        sub_id = transport.subscribe(channel_id=3)
        ...
        await transport.close()
    """

    def __init__(
        self,
        url: str,
        max_message_size: int = DEFAULT_MAX_MESSAGE_SIZE,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self._url = url
        self._max_message_size = max_message_size
        self._session = session
        self._owns_session = session is None
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._listeners: dict[str, list[Callable[..., None]]] = {}
        self._outbox: asyncio.Queue[str | bytes | None] = asyncio.Queue()
        self._reader_task: asyncio.Task[None] | None = None
        self._writer_task: asyncio.Task[None] | None = None
        self._closed = False
        self._channel_ids = itertools.count()
        self._subscription_ids = itertools.count()

    @property
    def url(self) -> str:
        """Endpoint URL."""
        return self._url

    @property
    def is_connected(self) -> bool:
        """True while the WebSocket is open."""
        return self._ws is not None and not self._ws.closed and not self._closed

    def on(self, event: str, callback: Callable[..., None]) -> None:
        """Register *callback* for *event*. Duplicates are ignored."""
        callbacks = self._listeners.setdefault(event, [])
        if callback not in callbacks:
            callbacks.append(callback)

    def off(self, event: str, callback: Callable[..., None]) -> None:
        """Remove *callback* from *event*; unknown callbacks are ignored."""
        with contextlib.suppress(KeyError, ValueError):
            self._listeners[event].remove(callback)

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        """
        Open the WebSocket and start the reader and writer tasks.

        Emits ``open`` once the handshake completes.

        Raises:
            FoxRosConnectionError: If the endpoint cannot be reached.
        """
        if self._session is None:
            self._session = aiohttp.ClientSession()
        try:
            self._ws = await self._session.ws_connect(
                self._url,
                protocols=(SUBPROTOCOL,),
                max_msg_size=self._max_message_size,
            )
        except (aiohttp.ClientError, OSError) as exc:
            await self._close_session()
            raise FoxRosConnectionError(f"Cannot connect to {self._url}: {exc}") from exc

        if self._ws.protocol != SUBPROTOCOL:
            logger.warning("Server at %s did not accept subprotocol %s", self._url, SUBPROTOCOL)
        logger.info("WebSocket connected to %s", self._url)
        self._emit("open")
        self._reader_task = asyncio.create_task(self._read_loop(self._ws))
        self._writer_task = asyncio.create_task(self._write_loop(self._ws))

    async def close(self) -> None:
        """
        Close the WebSocket and stop the background tasks.

        Frames already queued by outbound operations are sent first; the
        writer is cancelled only if that takes longer than
        ``CLOSE_DRAIN_TIMEOUT`` seconds. Safe to call more than once. Emits
        ``close`` (once) if the connection was open.
        """
        writer = self._writer_task
        if writer is not None:
            self._writer_task = None
            self._outbox.put_nowait(None)
            try:
                await asyncio.wait_for(asyncio.shield(writer), timeout=CLOSE_DRAIN_TIMEOUT)
            except TimeoutError:
                logger.warning("Dropping %d unsent frame(s) to %s", self._outbox.qsize(), self._url)
                writer.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await writer
        if self._ws is not None and not self._ws.closed:
            await self._ws.close()
        if self._reader_task is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await self._reader_task
            self._reader_task = None
        await self._close_session()

    async def _close_session(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()

    # ------------------------------------------------------------------
    # Outbound operations
    # ------------------------------------------------------------------

    def advertise(self, topic: str, encoding: str, schema_name: str) -> int:
        """Advertise a client channel; returns the client-chosen channel id."""
        channel_id = next(self._channel_ids)
        self._send_json(
            {
                "op": OP_ADVERTISE,
                "channels": [
                    {"id": channel_id, "topic": topic, "encoding": encoding, "schemaName": schema_name}
                ],
            }
        )
        return channel_id

    def unadvertise(self, channel_id: int) -> None:
        self._send_json({"op": OP_UNADVERTISE, "channelIds": [channel_id]})

    def subscribe(self, channel_id: int) -> int:
        """Subscribe to a server channel; returns the client-chosen subscription id."""
        subscription_id = next(self._subscription_ids)
        self._send_json(
            {"op": OP_SUBSCRIBE, "subscriptions": [{"id": subscription_id, "channelId": channel_id}]}
        )
        return subscription_id

    def unsubscribe(self, subscription_id: int) -> None:
        self._send_json({"op": OP_UNSUBSCRIBE, "subscriptionIds": [subscription_id]})

    def send_message(self, channel_id: int, data: bytes) -> None:
        """Publish *data* on a client channel previously returned by :meth:`advertise`."""
        self._send(encode_client_message(channel_id, data))
        logger.debug("→ WS message channel=%d (%d bytes)", channel_id, len(data))

    def send_service_call_request(self, service_id: int, call_id: int, encoding: str, data: bytes) -> None:
        self._send(encode_service_call_request(service_id, call_id, encoding, data))
        logger.debug("→ WS service call service=%d call=%d (%d bytes)", service_id, call_id, len(data))

    def get_parameters(self, names: list[str], request_id: str | None = None) -> None:
        msg: dict[str, Any] = {"op": OP_GET_PARAMETERS, "parameterNames": names}
        if request_id is not None:
            msg["id"] = request_id
        self._send_json(msg)

    def set_parameters(self, parameters: list[Parameter], request_id: str | None = None) -> None:
        msg: dict[str, Any] = {"op": OP_SET_PARAMETERS, "parameters": [p.to_dict() for p in parameters]}
        if request_id is not None:
            msg["id"] = request_id
        self._send_json(msg)

    def _send_json(self, msg: dict[str, Any]) -> None:
        text = json.dumps(msg, separators=(",", ":"))
        self._send(text)
        logger.debug("→ WS %s", text[:160])

    def _send(self, frame: str | bytes) -> None:
        if not self.is_connected:
            raise FoxRosConnectionError(f"Not connected to {self._url}.")
        self._outbox.put_nowait(frame)

    # ------------------------------------------------------------------
    # Background tasks
    # ------------------------------------------------------------------

    async def _write_loop(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        while True:
            frame = await self._outbox.get()
            if frame is None:
                return
            try:
                if isinstance(frame, str):
                    await ws.send_str(frame)
                else:
                    await ws.send_bytes(frame)
            except (aiohttp.ClientError, ConnectionError, RuntimeError) as exc:
                logger.error("WebSocket send to %s failed: %s", self._url, exc)
                self._emit("error", FoxRosConnectionError(f"send failed: {exc}"))

    async def _read_loop(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        try:
            async for msg in ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    self._handle_frame(parse_text, msg.data)
                elif msg.type == aiohttp.WSMsgType.BINARY:
                    self._handle_frame(parse_binary, msg.data)
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    exc = ws.exception()
                    logger.error("WebSocket error on %s: %s", self._url, exc)
                    self._emit("error", FoxRosConnectionError(f"websocket error: {exc}"))
        finally:
            self._closed = True
            logger.info("WebSocket to %s closed (code=%s)", self._url, ws.close_code)
            self._emit("close", ws.close_code)

    def _handle_frame(self, parser: Callable[[Any], tuple[str, Any]], raw: Any) -> None:
        try:
            event, payload = parser(raw)
        except FoxRosProtocolError as exc:
            logger.error("Dropping malformed frame from %s: %s", self._url, exc)
            self._emit("error", exc)
            return
        if event != "message":
            logger.debug("← WS %s %s", event, str(payload)[:160])
        if event == OP_STATUS:
            logger.log(
                _STATUS_LEVELS.get(payload.get("level"), logging.INFO),
                "Server status: %s",
                payload.get("message", ""),
            )
        elif event == OP_REMOVE_STATUS:
            return
        self._emit(event, payload)

    def _emit(self, event: str, *args: Any) -> None:
        for callback in list(self._listeners.get(event, ())):
            try:
                callback(*args)
            except Exception:
                logger.exception("Listener for %r raised", event)
