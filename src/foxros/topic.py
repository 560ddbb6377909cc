"""
foxros.topic — Topic: publish and subscribe on one named topic.

A thin handle over :class:`~foxros.ros.Ros`; all state that matters (the
shared protocol subscription, the advertisement) lives in the session.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import TYPE_CHECKING, Any

from .const import DEFAULT_STREAM_QUEUE_SIZE

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Callable

    from .ros import Publisher, Ros, Subscription

logger = logging.getLogger(__name__)


class Topic:
    """
    Named topic handle.

    Example::

        chatter = Topic(ros, "/chatter", "std_msgs/msg/String")
        await chatter.subscribe(lambda msg: print(msg.data))
        await chatter.publish({"data": "hello"})

        async for msg in chatter.messages():
            print(msg.data)

    Args:
        ros:          Connected session.
        name:         Topic name.
        message_type: Message type; required only for publishing.
    """

    def __init__(self, ros: Ros, name: str, message_type: str | None = None) -> None:
        self.ros = ros
        self.name = name
        self.message_type = message_type
        self._subscriptions: list[Subscription] = []
        self._publisher: Publisher | None = None

    def __repr__(self) -> str:
        return f"Topic({self.name!r}, {self.message_type!r})"

    @property
    def is_advertised(self) -> bool:
        return self._publisher is not None

    # ------------------------------------------------------------------
    # Subscribe
    # ------------------------------------------------------------------

    async def subscribe(self, callback: Callable[[Any], None]) -> Subscription:
        """Call *callback* with every decoded message on this topic."""
        subscription = await self.ros.create_subscription(self.name, callback)
        self._subscriptions.append(subscription)
        return subscription

    def unsubscribe(self, callback: Callable[[Any], None] | None = None) -> None:
        """Detach *callback*, or every callback registered through this handle."""
        keep: list[Subscription] = []
        for subscription in self._subscriptions:
            if callback is None or subscription.handler is callback:
                subscription.close()
            else:
                keep.append(subscription)
        self._subscriptions = keep

    async def messages(self, queue_size: int = DEFAULT_STREAM_QUEUE_SIZE) -> AsyncIterator[Any]:
        """
        Async generator yielding decoded messages.

        Messages are buffered in a bounded queue; when a slow consumer lets
        it fill up, the oldest message is dropped so the newest is always
        delivered. The subscription is released when the generator closes.

        Example::

            async for msg in topic.messages():
                if msg.data == "stop":
                    break
        """
        queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=queue_size)

        def enqueue(message: Any) -> None:
            if queue.full():
                with contextlib.suppress(asyncio.QueueEmpty):
                    queue.get_nowait()
                logger.debug("Stream on %s full; dropped oldest message", self.name)
            queue.put_nowait(message)

        subscription = await self.ros.create_subscription(self.name, enqueue)
        try:
            while True:
                yield await queue.get()
        finally:
            subscription.close()

    # ------------------------------------------------------------------
    # Publish
    # ------------------------------------------------------------------

    async def advertise(self) -> Publisher:
        """Advertise the topic and return its publisher. Idempotent per handle."""
        if self._publisher is None:
            if not self.message_type:
                raise ValueError(f"Topic {self.name!r} needs a message_type to be advertised.")
            self._publisher = await self.ros.create_publisher(self.name, self.message_type)
        return self._publisher

    def unadvertise(self) -> None:
        if self._publisher is not None:
            self._publisher.close()
            self._publisher = None

    async def publish(self, message: Any) -> None:
        """Publish *message*, advertising the topic first if needed."""
        publisher = await self.advertise()
        await publisher.publish(message)
