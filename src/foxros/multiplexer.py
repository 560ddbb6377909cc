"""
foxros.multiplexer — Ref-counted protocol subscriptions and advertisements.

Any number of logical subscribers (or publishers) of one topic share a single
protocol-level subscription (or client advertisement). The first attach for a
name issues the protocol operation; later attaches only bump the reference
count. The last detach issues the matching unsubscribe / unadvertise.

The :class:`Registration` for a name is created synchronously on the first
attach, before anything can suspend, so interleaved attaches never issue two
protocol ids for one name.

Subscriptions to a topic the server has not advertised yet are deferred
through the directory's pending table. Detaching before that resolves
withdraws the waiter, so no protocol subscription is ever sent.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
import functools
import logging
from typing import TYPE_CHECKING, Any

from ._codec import CodecCache
from .const import ENCODING_CDR
from .directory import PendingKind
from .exceptions import FoxRosCodecError, FoxRosNotAdvertisedError

if TYPE_CHECKING:
    from collections.abc import Callable

    from .directory import Directory
    from .models import Channel, MessageData
    from .protocol import FoxgloveTransport

logger = logging.getLogger(__name__)

SUBSCRIBE = "subscribe"
PUBLISH = "publish"


@dataclass
class Registration:
    """
    The single wire-level subscription or advertisement for one name.

    Attributes:
        name: Topic name.
        kind: ``"subscribe"`` or ``"publish"``.
        refcount: Number of logical callers attached (always >= 1 while held).
        protocol_id: Subscription id or client channel id; ``None`` until issued.
        channel: Server channel the registration is bound to, once known.
        handlers: Subscriber callbacks in attach order.
        schema_name: Message type requested by the publisher.
        orphaned: True once the server withdrew :attr:`channel`.
    """

    name: str
    kind: str
    refcount: int = 1
    protocol_id: int | None = None
    channel: Channel | None = None
    handlers: list[Callable[[Any], None]] = field(default_factory=list)
    schema_name: str = ""
    orphaned: bool = False
    waiter: Callable[[], None] | None = None
    resolved: asyncio.Future[Channel] | None = None


def _consume(fut: asyncio.Future[Any]) -> None:
    if not fut.cancelled():
        fut.exception()


class Multiplexer:
    """
    Registration table for one session.

    Args:
        transport: Connected :class:`~foxros.protocol.FoxgloveTransport`.
        directory: The session's :class:`~foxros.directory.Directory`.
        codecs: Codec cache used to decode inbound messages.
        encoding: Message encoding for client advertisements.
    """

    def __init__(
        self,
        transport: FoxgloveTransport,
        directory: Directory,
        codecs: CodecCache | None = None,
        encoding: str = ENCODING_CDR,
    ) -> None:
        self._transport = transport
        self._directory = directory
        self.codecs = codecs if codecs is not None else CodecCache()
        self.encoding = encoding
        self._subscriptions: dict[str, Registration] = {}
        self._publishers: dict[str, Registration] = {}
        self._by_subscription_id: dict[int, Registration] = {}

    @property
    def transport(self) -> FoxgloveTransport:
        return self._transport

    def subscription(self, name: str) -> Registration | None:
        return self._subscriptions.get(name)

    def publisher(self, name: str) -> Registration | None:
        return self._publishers.get(name)

    def registrations(self) -> list[Registration]:
        return [*self._subscriptions.values(), *self._publishers.values()]

    # ------------------------------------------------------------------
    # Subscribers
    # ------------------------------------------------------------------

    def attach_subscriber(self, name: str, handler: Callable[[Any], None]) -> Registration:
        """
        Attach *handler* to topic *name*.

        Raises:
            FoxRosNotAdvertisedError: If *name* is held by an orphaned
                registration that still has callers attached.
        """
        reg = self._subscriptions.get(name)
        if reg is not None:
            if reg.orphaned:
                raise FoxRosNotAdvertisedError(name)
            reg.handlers.append(handler)
            reg.refcount += 1
            return reg

        reg = Registration(name=name, kind=SUBSCRIBE, handlers=[handler])
        self._subscriptions[name] = reg
        channel = self._directory.channel(name)
        if channel is not None:
            self._subscribe(reg, channel)
        else:
            reg.waiter = functools.partial(self._resolve_subscription, reg)
            self._directory.pending.add(PendingKind.SUBSCRIBE, name, reg.waiter)
        return reg

    def detach_subscriber(self, name: str, handler: Callable[[Any], None]) -> bool:
        """Detach *handler*; returns ``False`` if it was not attached."""
        reg = self._subscriptions.get(name)
        if reg is None or handler not in reg.handlers:
            return False
        reg.handlers.remove(handler)
        reg.refcount -= 1
        if reg.refcount > 0:
            return True

        del self._subscriptions[name]
        if reg.waiter is not None:
            self._directory.pending.discard(PendingKind.SUBSCRIBE, name, reg.waiter)
            reg.waiter = None
        if reg.protocol_id is not None:
            self._by_subscription_id.pop(reg.protocol_id, None)
            if self._transport.is_connected:
                self._transport.unsubscribe(reg.protocol_id)
        logger.debug("Released subscription on %r", name)
        return True

    def _resolve_subscription(self, reg: Registration) -> None:
        reg.waiter = None
        channel = self._directory.channel(reg.name)
        if self._subscriptions.get(reg.name) is reg and channel is not None:
            self._subscribe(reg, channel)

    def _subscribe(self, reg: Registration, channel: Channel) -> None:
        reg.channel = channel
        reg.protocol_id = self._transport.subscribe(channel.id)
        self._by_subscription_id[reg.protocol_id] = reg
        logger.debug("Subscribed to %r (channel=%d, sub=%d)", reg.name, channel.id, reg.protocol_id)

    def dispatch(self, message: MessageData) -> None:
        """
        Decode an inbound message once and hand it to every handler.

        Decode failures and handler exceptions are logged; unknown
        subscription ids are dropped.
        """
        reg = self._by_subscription_id.get(message.subscription_id)
        if reg is None or reg.channel is None:
            logger.debug("Dropping message for unknown subscription %d", message.subscription_id)
            return
        channel = reg.channel
        try:
            reader = self.codecs.get_reader(channel.schema_name, channel.schema, channel.schema_encoding)
            decoded = self.codecs.decode(reader, message.data)
        except FoxRosCodecError as exc:
            logger.error("Cannot decode message on %r: %s", reg.name, exc)
            return
        for handler in list(reg.handlers):
            try:
                handler(decoded)
            except Exception:
                logger.exception("Subscriber on %r raised", reg.name)

    # ------------------------------------------------------------------
    # Publishers
    # ------------------------------------------------------------------

    def attach_publisher(self, name: str, schema_name: str) -> Registration:
        """
        Advertise *name* (once) and count one more publisher on it.

        The returned registration's ``resolved`` future completes with the
        server channel carrying the schema for encoding.

        Raises:
            FoxRosNotAdvertisedError: If *name* is held by an orphaned
                registration that still has callers attached.
        """
        reg = self._publishers.get(name)
        if reg is not None:
            if reg.orphaned:
                raise FoxRosNotAdvertisedError(name)
            reg.refcount += 1
            return reg

        resolved: asyncio.Future[Channel] = asyncio.get_running_loop().create_future()
        resolved.add_done_callback(_consume)
        reg = Registration(name=name, kind=PUBLISH, schema_name=schema_name, resolved=resolved)
        self._publishers[name] = reg
        reg.protocol_id = self._transport.advertise(name, self.encoding, schema_name)
        logger.debug("Advertised %r as %s (channel=%d)", name, schema_name, reg.protocol_id)
        channel = self._directory.channel(name)
        if channel is not None:
            self._bind_publisher(reg, channel)
        else:
            reg.waiter = functools.partial(self._resolve_publisher, reg)
            self._directory.pending.add(PendingKind.PUBLISH, name, reg.waiter)
        return reg

    def detach_publisher(self, name: str) -> bool:
        """Drop one publisher reference; returns ``False`` if none was held."""
        reg = self._publishers.get(name)
        if reg is None:
            return False
        reg.refcount -= 1
        if reg.refcount > 0:
            return True

        del self._publishers[name]
        if reg.waiter is not None:
            self._directory.pending.discard(PendingKind.PUBLISH, name, reg.waiter)
            reg.waiter = None
        if reg.resolved is not None and not reg.resolved.done():
            reg.resolved.set_exception(FoxRosNotAdvertisedError(name, f"publisher on {name!r} was released"))
        if reg.protocol_id is not None and self._transport.is_connected:
            self._transport.unadvertise(reg.protocol_id)
        logger.debug("Released publisher on %r", name)
        return True

    def _resolve_publisher(self, reg: Registration) -> None:
        reg.waiter = None
        channel = self._directory.channel(reg.name)
        if self._publishers.get(reg.name) is reg and channel is not None:
            self._bind_publisher(reg, channel)

    def _bind_publisher(self, reg: Registration, channel: Channel) -> None:
        if channel.schema_name and reg.schema_name and channel.schema_name != reg.schema_name:
            logger.warning(
                "Publisher type %s differs from advertised type %s on %r",
                reg.schema_name,
                channel.schema_name,
                reg.name,
            )
        reg.channel = channel
        if reg.resolved is not None and not reg.resolved.done():
            reg.resolved.set_result(channel)

    # ------------------------------------------------------------------
    # Withdrawal
    # ------------------------------------------------------------------

    def orphan(self, channel_id: int) -> list[Registration]:
        """Mark every registration bound to *channel_id* as orphaned."""
        orphaned = [
            reg
            for reg in self.registrations()
            if reg.channel is not None and reg.channel.id == channel_id and not reg.orphaned
        ]
        for reg in orphaned:
            reg.orphaned = True
            logger.warning("%s on %r orphaned: channel %d withdrawn", reg.kind, reg.name, channel_id)
        return orphaned

    def clear(self) -> None:
        """Forget every registration without touching the transport."""
        self._subscriptions.clear()
        self._publishers.clear()
        self._by_subscription_id.clear()
