"""
foxros.ros — Ros: the session manager for one Foxglove WebSocket connection.

Owns the single transport connection and everything scoped to it: the
directory of advertised channels and services, the pending-resolution table,
the registration table (multiplexer), the call correlators and the codec
cache. Application code reaches the robot through :class:`Ros` directly or
through the :mod:`foxros.topic`, :mod:`foxros.service`, :mod:`foxros.param`
and :mod:`foxros.action` façades.

Lifecycle:
- ``connect()`` opens exactly one connection. The session is *ready* once the
  transport reports ``open`` AND the server's ``serverInfo`` has arrived;
  ``serverInfo`` fixes the session encoding (``ros1`` or ``cdr``).
- Every directory-dependent operation awaits readiness first.
- ``close()`` is idempotent and discards all session state; any later call
  raises :exc:`~foxros.exceptions.FoxRosClosedError`.

Known limitations:
- If the connection drops before the session is ready, operations already
  waiting for readiness stay pending. Operations issued after the drop fail
  immediately with :exc:`~foxros.exceptions.FoxRosConnectionError`.
- Requests in flight when the connection drops (or the session is closed)
  are not rejected. Wrap calls in :func:`asyncio.wait_for` to bound them.
- There is no reconnect; create a new :class:`Ros`.
"""

from __future__ import annotations

import asyncio
import functools
import logging
from typing import TYPE_CHECKING, Any

from ._codec import CodecCache
from .const import (
    DEFAULT_CONNECT_TIMEOUT,
    DEFAULT_MAX_MESSAGE_SIZE,
    DEFAULT_URL,
    ENCODING_CDR,
    ENCODING_ROS1,
    EVENT_CLOSE,
    EVENT_CONNECTION,
    EVENT_ERROR,
    SESSION_EVENTS,
)
from .correlator import CallCorrelator
from .directory import Directory, PendingKind
from .error_reporting import report_exception
from .exceptions import (
    FoxRosClosedError,
    FoxRosConnectionError,
    FoxRosNotAdvertisedError,
    FoxRosServiceError,
    FoxRosTimeoutError,
)
from .models import Parameter
from .multiplexer import Multiplexer
from .protocol import FoxgloveTransport

if TYPE_CHECKING:
    from collections.abc import Callable
    from types import TracebackType

    from .models import (
        Channel,
        MessageData,
        ParameterValues,
        RemoteService,
        ServerInfo,
        ServiceCallFailure,
        ServiceCallResponse,
    )

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Handles
# ---------------------------------------------------------------------------


class Subscription:
    """
    One logical subscriber returned by :meth:`Ros.create_subscription`.

    Call :meth:`close` to detach; the protocol subscription is released once
    the last subscriber of the topic detaches.
    """

    def __init__(self, ros: Ros, name: str, handler: Callable[[Any], None]) -> None:
        self._ros = ros
        self.name = name
        self.handler = handler
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def close(self) -> None:
        """Detach this subscriber. Safe to call more than once."""
        if self._active:
            self._active = False
            self._ros._detach_subscriber(self.name, self.handler)


class Publisher:
    """
    One logical publisher returned by :meth:`Ros.create_publisher`.

    Example::

        pub = await ros.create_publisher("/chatter", "std_msgs/msg/String")
        await pub.publish({"data": "hello"})
        pub.close()
    """

    def __init__(self, ros: Ros, name: str, message_type: str) -> None:
        self._ros = ros
        self.name = name
        self.message_type = message_type
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    async def publish(self, message: Any) -> None:
        """
        Encode *message* and send it on the topic.

        Waits until the server has advertised the topic (its schema is needed
        for encoding).

        Raises:
            FoxRosNotAdvertisedError: The topic was withdrawn, or this
                publisher was closed.
            FoxRosCodecError: *message* does not fit the topic's schema.
        """
        if not self._active:
            raise FoxRosNotAdvertisedError(self.name, f"publisher on {self.name!r} is closed")
        await self._ros._publish(self.name, message)

    def close(self) -> None:
        """Release this publisher. Safe to call more than once."""
        if self._active:
            self._active = False
            self._ros._detach_publisher(self.name)


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------


class Ros:
    """
    Session over one Foxglove WebSocket connection.

    Example (async context manager)::

        async with Ros("ws://robot:8765") as ros:
            print(await ros.get_topics())
            sub = await ros.create_subscription("/chatter", print)
            await asyncio.sleep(5)
            sub.close()

    Example (manual lifecycle)::

        ros = Ros()
        await ros.connect("ws://robot:8765")
        value = await ros.get_parameter("/talker.use_sim_time")
        await ros.close()

    Args:
        url:              Bridge endpoint; may also be given to :meth:`connect`.
        connect_timeout:  Seconds :meth:`connect` waits for ``open`` and
                          ``serverInfo`` (default 10).
        max_message_size: Maximum inbound frame size in bytes; 0 = unlimited.
    """

    def __init__(
        self,
        url: str | None = None,
        *,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
        max_message_size: int = DEFAULT_MAX_MESSAGE_SIZE,
    ) -> None:
        self._url = url
        self._connect_timeout = connect_timeout
        self._max_message_size = max_message_size
        self._transport: FoxgloveTransport | None = None
        self._directory = Directory()
        self._codecs = CodecCache()
        self._mux: Multiplexer | None = None
        self._calls: CallCorrelator[int] = CallCorrelator(int)
        self._params: CallCorrelator[str] = CallCorrelator(str)
        self._listeners: dict[str, list[Callable[..., None]]] = {}
        self._ready: asyncio.Future[None] | None = None
        self._opened = False
        self._server_info: ServerInfo | None = None
        self._encoding = ENCODING_CDR
        self._lost = False
        self._closed = False

    # ------------------------------------------------------------------
    # Context manager
    # ------------------------------------------------------------------

    async def __aenter__(self) -> Ros:
        await self.connect()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def url(self) -> str | None:
        return self._url

    @property
    def is_connected(self) -> bool:
        """True once the session is ready and until the connection ends."""
        return (
            not self._closed
            and not self._lost
            and self._ready is not None
            and self._ready.done()
            and self._transport is not None
            and self._transport.is_connected
        )

    @property
    def is_closed(self) -> bool:
        return self._closed

    @property
    def server_info(self) -> ServerInfo | None:
        """The server's capability announcement, once received."""
        return self._server_info

    @property
    def encoding(self) -> str:
        """Session message encoding: ``"cdr"`` or ``"ros1"``."""
        return self._encoding

    @property
    def directory(self) -> Directory:
        return self._directory

    # ------------------------------------------------------------------
    # Listeners
    # ------------------------------------------------------------------

    def on(self, event: str, callback: Callable[..., None]) -> None:
        """
        Register *callback* for a session event.

        ``"connection"`` receives the :class:`~foxros.models.ServerInfo`,
        ``"close"`` the WebSocket close code and ``"error"`` the exception.
        """
        if event not in SESSION_EVENTS:
            raise ValueError(f"unknown event {event!r}; expected one of {SESSION_EVENTS}")
        callbacks = self._listeners.setdefault(event, [])
        if callback not in callbacks:
            callbacks.append(callback)

    def off(self, event: str, callback: Callable[..., None]) -> None:
        callbacks = self._listeners.get(event, [])
        if callback in callbacks:
            callbacks.remove(callback)

    def _emit(self, event: str, *args: Any) -> None:
        for callback in list(self._listeners.get(event, ())):
            try:
                callback(*args)
            except Exception:
                logger.exception("Session %r listener raised", event)

    # ------------------------------------------------------------------
    # Connection
    # ------------------------------------------------------------------

    async def connect(self, url: str | None = None) -> None:
        """
        Open the connection and wait until the session is ready.

        Raises:
            FoxRosClosedError:     The session was closed.
            FoxRosConnectionError: Already connected, or the endpoint is unreachable.
            FoxRosTimeoutError:    ``serverInfo`` did not arrive within
                                   ``connect_timeout`` seconds.
        """
        if self._closed:
            raise FoxRosClosedError("Session is closed; create a new Ros.")
        if self._transport is not None:
            raise FoxRosConnectionError(f"Session already connected to {self._url}.")
        self._url = url or self._url or DEFAULT_URL
        self._ready = asyncio.get_running_loop().create_future()

        transport = FoxgloveTransport(self._url, max_message_size=self._max_message_size)
        for event, handler in (
            ("open", self._on_open),
            ("serverInfo", self._on_server_info),
            ("advertise", self._on_advertise),
            ("unadvertise", self._on_unadvertise),
            ("advertiseServices", self._on_advertise_services),
            ("unadvertiseServices", self._on_unadvertise_services),
            ("message", self._on_message),
            ("serviceCallResponse", self._on_service_call_response),
            ("serviceCallFailure", self._on_service_call_failure),
            ("parameterValues", self._on_parameter_values),
            ("close", self._on_close),
            ("error", self._on_error),
        ):
            transport.on(event, handler)
        self._transport = transport
        self._mux = Multiplexer(transport, self._directory, self._codecs, self._encoding)

        try:
            await transport.connect()
        except FoxRosConnectionError as exc:
            if self._closed:
                raise FoxRosClosedError("Session was closed while connecting.") from exc
            self._transport = None
            self._mux = None
            self._ready = None
            raise
        if self._closed:
            await transport.close()
            raise FoxRosClosedError("Session was closed while connecting.")

        try:
            await asyncio.wait_for(asyncio.shield(self._ready), timeout=self._connect_timeout)
        except TimeoutError as exc:
            raise FoxRosTimeoutError(
                f"No serverInfo from {self._url} within {self._connect_timeout}s."
            ) from exc
        logger.info("Ros session ready on %s (encoding=%s)", self._url, self._encoding)

    async def close(self) -> None:
        """
        Close the connection and discard all session state. Idempotent.

        Requests still waiting for a response are left pending. A
        :meth:`connect` still waiting for ``serverInfo`` raises
        :class:`~foxros.exceptions.FoxRosClosedError`.
        """
        if self._closed:
            return
        self._closed = True
        transport = self._transport
        if self._ready is not None and not self._ready.done():
            self._ready.set_exception(FoxRosClosedError("Session was closed while connecting."))
            # Retrieved here so an unawaited future logs nothing.
            self._ready.exception()
        if self._mux is not None:
            self._mux.clear()
        self._directory.clear()
        self._calls.clear()
        self._params.clear()
        self._codecs.clear()
        if transport is not None:
            await transport.close()
        logger.info("Ros session on %s closed", self._url)

    async def _wait_ready(self) -> Multiplexer:
        self._check_usable()
        if self._ready is not None:
            await asyncio.shield(self._ready)
        return self._check_usable()

    def _check_usable(self) -> Multiplexer:
        if self._closed:
            raise FoxRosClosedError("Session is closed.")
        if self._mux is None or self._ready is None:
            raise FoxRosConnectionError("Not connected; call connect() first.")
        if self._lost:
            raise FoxRosConnectionError(f"Connection to {self._url} was lost.")
        return self._mux

    # ------------------------------------------------------------------
    # Transport events
    # ------------------------------------------------------------------

    def _on_open(self) -> None:
        self._opened = True
        self._check_ready()

    def _on_server_info(self, info: ServerInfo) -> None:
        if self._server_info is not None:
            logger.warning("Ignoring repeated serverInfo from %s", self._url)
            return
        self._server_info = info
        self._encoding = ENCODING_ROS1 if info.legacy_encoding else ENCODING_CDR
        self._codecs = CodecCache(legacy=info.legacy_encoding)
        if self._mux is not None:
            self._mux.codecs = self._codecs
            self._mux.encoding = self._encoding
        logger.info(
            "Server %r (encodings=%s, capabilities=%s)",
            info.name,
            info.supported_encodings,
            info.capabilities,
        )
        self._check_ready()

    def _check_ready(self) -> None:
        if self._opened and self._server_info is not None and self._ready is not None and not self._ready.done():
            self._ready.set_result(None)
            self._emit(EVENT_CONNECTION, self._server_info)

    def _on_advertise(self, channels: list[Channel]) -> None:
        for channel in channels:
            self._directory.upsert_channel(channel)

    def _on_unadvertise(self, channel_ids: list[int]) -> None:
        for channel_id in channel_ids:
            if self._mux is not None:
                self._mux.orphan(channel_id)
            self._directory.remove_channel(channel_id)

    def _on_advertise_services(self, services: list[RemoteService]) -> None:
        for service in services:
            self._directory.upsert_service(service)

    def _on_unadvertise_services(self, service_ids: list[int]) -> None:
        for service_id in service_ids:
            service = self._directory.remove_service(service_id)
            name = service.name if service is not None else ""
            for key in self._calls.keys():
                if isinstance(key, tuple) and key[0] == service_id:
                    self._calls.reject(key, FoxRosNotAdvertisedError(name))

    def _on_message(self, message: MessageData) -> None:
        if self._mux is not None:
            self._mux.dispatch(message)

    def _on_service_call_response(self, response: ServiceCallResponse) -> None:
        self._calls.resolve((response.service_id, response.call_id), response.data)

    def _on_service_call_failure(self, failure: ServiceCallFailure) -> None:
        key = (failure.service_id, failure.call_id)
        call = self._calls.get(key)
        name = call.name if call is not None else ""
        self._calls.reject(key, FoxRosServiceError(failure.message, service=name, call_id=failure.call_id))

    def _on_parameter_values(self, values: ParameterValues) -> None:
        if values.id is None:
            logger.debug("Dropping parameterValues without id")
            return
        call = self._params.get(values.id)
        if call is None:
            logger.debug("Dropping unmatched parameterValues %r", values.id)
            return
        if values.parameters and values.parameters[0].name != call.name:
            logger.debug(
                "Ignoring parameterValues %r for %r (expected %r)",
                values.id,
                values.parameters[0].name,
                call.name,
            )
            return
        self._params.resolve(values.id, values.parameters)

    def _on_close(self, code: int | None) -> None:
        self._lost = True
        self._emit(EVENT_CLOSE, code)

    def _on_error(self, exc: BaseException) -> None:
        report_exception(exc)
        self._emit(EVENT_ERROR, exc)

    # ------------------------------------------------------------------
    # Discovery
    # ------------------------------------------------------------------

    async def get_topics(self) -> dict[str, list[str]]:
        """Return ``{"topics": [...], "types": [...]}`` for advertised topics."""
        await self._wait_ready()
        channels = self._directory.channels()
        return {
            "topics": [c.topic for c in channels],
            "types": [c.schema_name for c in channels],
        }

    async def get_services(self) -> list[str]:
        await self._wait_ready()
        return [s.name for s in self._directory.services()]

    async def get_topic_type(self, name: str) -> str | None:
        """Message type of topic *name*, or ``None`` if not advertised."""
        await self._wait_ready()
        channel = self._directory.channel(name)
        return channel.schema_name if channel is not None else None

    async def get_service_type(self, name: str) -> str | None:
        await self._wait_ready()
        service = self._directory.service(name)
        return service.type if service is not None else None

    # ------------------------------------------------------------------
    # Topics
    # ------------------------------------------------------------------

    async def create_subscription(self, name: str, handler: Callable[[Any], None]) -> Subscription:
        """
        Call *handler* with every decoded message on topic *name*.

        Returns immediately even if the topic is not advertised yet; messages
        flow once it is.

        Raises:
            FoxRosNotAdvertisedError: The topic was withdrawn while other
                subscribers are still attached.
        """
        mux = await self._wait_ready()
        mux.attach_subscriber(name, handler)
        return Subscription(self, name, handler)

    async def create_publisher(self, name: str, message_type: str) -> Publisher:
        """
        Advertise topic *name* with *message_type* and return a publisher.

        Raises:
            FoxRosNotAdvertisedError: The topic was withdrawn while other
                publishers are still attached.
        """
        mux = await self._wait_ready()
        mux.attach_publisher(name, message_type)
        return Publisher(self, name, message_type)

    def _detach_subscriber(self, name: str, handler: Callable[[Any], None]) -> None:
        if self._mux is not None and not self._closed:
            self._mux.detach_subscriber(name, handler)

    def _detach_publisher(self, name: str) -> None:
        if self._mux is not None and not self._closed:
            self._mux.detach_publisher(name)

    async def _publish(self, name: str, message: Any) -> None:
        mux = await self._wait_ready()
        reg = mux.publisher(name)
        if reg is None or reg.resolved is None:
            raise FoxRosNotAdvertisedError(name, f"no publisher on {name!r}")
        if reg.orphaned:
            raise FoxRosNotAdvertisedError(name)
        channel = await asyncio.shield(reg.resolved)
        self._check_usable()
        if reg.orphaned or reg.protocol_id is None:
            raise FoxRosNotAdvertisedError(name)
        writer = self._codecs.get_writer(channel.schema_name, channel.schema, channel.schema_encoding)
        data = self._codecs.encode(writer, message)
        mux.transport.send_message(reg.protocol_id, data)

    # ------------------------------------------------------------------
    # Services
    # ------------------------------------------------------------------

    async def _resolve_service(self, name: str) -> RemoteService:
        service = self._directory.service(name)
        if service is not None:
            return service
        found: asyncio.Future[None] = asyncio.get_running_loop().create_future()

        def waiter() -> None:
            if not found.done():
                found.set_result(None)

        self._directory.pending.add(PendingKind.CALL, name, waiter)
        try:
            await found
        except asyncio.CancelledError:
            self._directory.pending.discard(PendingKind.CALL, name, waiter)
            raise
        self._check_usable()
        service = self._directory.service(name)
        if service is None:
            raise FoxRosNotAdvertisedError(name)
        return service

    async def send_service_request(self, name: str, request: Any) -> Any:
        """
        Call service *name* with *request* and return the decoded response.

        Waits for the service to be advertised if it is not known yet.

        Raises:
            FoxRosServiceError: The server reported the call as failed.
            FoxRosCodecError:   The request or response could not be encoded/decoded.
        """
        await self._wait_ready()
        service = await self._resolve_service(name)
        transport = self._check_usable().transport
        writer = self._codecs.get_writer(service.type, service.request_schema, service.request_schema_encoding)
        reader = self._codecs.get_reader(service.type, service.response_schema, service.response_schema_encoding)
        data = self._codecs.encode(writer, request)

        call_id = self._calls.next_id()
        key = (service.id, call_id)
        fut = self._calls.register(key, decoder=functools.partial(self._codecs.decode, reader), name=name)
        try:
            transport.send_service_call_request(service.id, call_id, self._encoding, data)
        except FoxRosConnectionError:
            self._calls.pop(key)
            raise
        return await fut

    # ------------------------------------------------------------------
    # Parameters
    # ------------------------------------------------------------------

    async def _parameter_request(self, name: str, send: Callable[[str], None]) -> list[Parameter]:
        request_id = self._params.next_id()
        fut = self._params.register(request_id, name=name)
        try:
            send(request_id)
        except FoxRosConnectionError:
            self._params.pop(request_id)
            raise
        return await fut

    async def get_parameter(self, name: str) -> Any:
        """Return the value of parameter *name*, or ``None`` if the server has none."""
        transport = (await self._wait_ready()).transport
        params = await self._parameter_request(name, lambda rid: transport.get_parameters([name], rid))
        return params[0].value if params else None

    async def set_parameter(self, name: str, value: Any) -> Any:
        """Set parameter *name* and return the value the server reports back."""
        transport = (await self._wait_ready()).transport
        params = await self._parameter_request(
            name, lambda rid: transport.set_parameters([Parameter(name=name, value=value)], rid)
        )
        return params[0].value if params else value
