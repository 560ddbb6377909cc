"""
foxros.directory — Known remote channels and services, plus deferred lookups.

:class:`Directory` mirrors what the server has advertised: channels (topics)
and services, indexed both by protocol id and by name. It is mutated only by
inbound discovery events, in the order the transport delivers them.

:class:`PendingResolutionTable` holds operations that referenced a name before
the server advertised it. The directory releases the matching entries right
after every upsert: each waiter runs exactly once, in registration order, and
the entry is removed before the first waiter runs.
"""

from __future__ import annotations

from enum import Enum
import logging
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Callable

    from .models import Channel, RemoteService

logger = logging.getLogger(__name__)


class PendingKind(str, Enum):
    """What a deferred operation is waiting to do with a name."""

    SUBSCRIBE = "subscribe"
    PUBLISH = "publish"
    CALL = "call"


class PendingResolutionTable:
    """
    Waiters keyed by ``(kind, name)``.

    A waiter is a zero-argument callable; it receives nothing because the
    directory entry is guaranteed to be present when it runs.
    """

    def __init__(self) -> None:
        self._entries: dict[tuple[PendingKind, str], list[Callable[[], Any]]] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def add(self, kind: PendingKind, name: str, waiter: Callable[[], Any]) -> None:
        """Append *waiter* to the entry for ``(kind, name)``, creating it if needed."""
        self._entries.setdefault((kind, name), []).append(waiter)
        logger.debug("Deferred %s on %r until advertised", kind.value, name)

    def discard(self, kind: PendingKind, name: str, waiter: Callable[[], Any]) -> bool:
        """
        Withdraw *waiter*. Returns ``True`` if it was still pending.

        The entry is dropped once its last waiter is withdrawn.
        """
        waiters = self._entries.get((kind, name))
        if not waiters or waiter not in waiters:
            return False
        waiters.remove(waiter)
        if not waiters:
            del self._entries[(kind, name)]
        return True

    def release(self, kind: PendingKind, name: str) -> int:
        """
        Run and remove every waiter for ``(kind, name)``.

        Waiter exceptions are logged and do not stop the remaining waiters.
        Returns the number of waiters run.
        """
        waiters = self._entries.pop((kind, name), None)
        if not waiters:
            return 0
        for waiter in waiters:
            try:
                waiter()
            except Exception:
                logger.exception("Deferred %s on %r failed", kind.value, name)
        return len(waiters)

    def clear(self) -> None:
        self._entries.clear()


class Directory:
    """
    Currently-advertised channels and services.

    Example::

        directory = Directory()
        directory.upsert_channel(Channel(id=1, topic="/chatter", schema_name="std_msgs/msg/String"))
        directory.channel("/chatter").id      # 1
        directory.topics()                    # ["/chatter"]
    """

    def __init__(self) -> None:
        self._channels: dict[int, Channel] = {}
        self._channels_by_name: dict[str, Channel] = {}
        self._services: dict[int, RemoteService] = {}
        self._services_by_name: dict[str, RemoteService] = {}
        self.pending = PendingResolutionTable()

    # ------------------------------------------------------------------
    # Channels
    # ------------------------------------------------------------------

    def upsert_channel(self, channel: Channel) -> None:
        """
        Insert or replace *channel*, then release waiters on its topic.

        An existing entry with the same id (renamed channel) or the same
        topic (re-advertised under a new id) is replaced.
        """
        previous = self._channels.pop(channel.id, None)
        if previous is not None and self._channels_by_name.get(previous.topic) is previous:
            del self._channels_by_name[previous.topic]
        stale = self._channels_by_name.get(channel.topic)
        if stale is not None:
            self._channels.pop(stale.id, None)
        self._channels[channel.id] = channel
        self._channels_by_name[channel.topic] = channel
        self.pending.release(PendingKind.SUBSCRIBE, channel.topic)
        self.pending.release(PendingKind.PUBLISH, channel.topic)

    def remove_channel(self, channel_id: int) -> Channel | None:
        """Remove a channel by id; returns the removed entry, if any."""
        channel = self._channels.pop(channel_id, None)
        if channel is not None and self._channels_by_name.get(channel.topic) is channel:
            del self._channels_by_name[channel.topic]
        return channel

    def channel(self, topic: str) -> Channel | None:
        return self._channels_by_name.get(topic)

    def channel_by_id(self, channel_id: int) -> Channel | None:
        return self._channels.get(channel_id)

    def topics(self) -> list[str]:
        """Names of the currently-advertised topics, in advertisement order."""
        return list(self._channels_by_name)

    def channels(self) -> list[Channel]:
        return list(self._channels_by_name.values())

    # ------------------------------------------------------------------
    # Services
    # ------------------------------------------------------------------

    def upsert_service(self, service: RemoteService) -> None:
        """Insert or replace *service*, then release call waiters on its name."""
        previous = self._services.pop(service.id, None)
        if previous is not None and self._services_by_name.get(previous.name) is previous:
            del self._services_by_name[previous.name]
        stale = self._services_by_name.get(service.name)
        if stale is not None:
            self._services.pop(stale.id, None)
        self._services[service.id] = service
        self._services_by_name[service.name] = service
        self.pending.release(PendingKind.CALL, service.name)

    def remove_service(self, service_id: int) -> RemoteService | None:
        service = self._services.pop(service_id, None)
        if service is not None and self._services_by_name.get(service.name) is service:
            del self._services_by_name[service.name]
        return service

    def service(self, name: str) -> RemoteService | None:
        return self._services_by_name.get(name)

    def service_by_id(self, service_id: int) -> RemoteService | None:
        return self._services.get(service_id)

    def services(self) -> list[RemoteService]:
        return list(self._services_by_name.values())

    def clear(self) -> None:
        """Forget every channel, service and pending waiter."""
        self._channels.clear()
        self._channels_by_name.clear()
        self._services.clear()
        self._services_by_name.clear()
        self.pending.clear()
