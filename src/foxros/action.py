"""
foxros.action — Action: ROS 2 action client built on services and a topic.

A ROS 2 action ``<name>`` of type ``<pkg>/action/<Type>`` is exposed by the
bridge as three services and one topic:

- ``<name>/_action/send_goal``   (``<Type>_SendGoal``)
- ``<name>/_action/get_result``  (``<Type>_GetResult``)
- ``<name>/_action/cancel_goal`` (``action_msgs/srv/CancelGoal``)
- ``<name>/_action/feedback``    (``<Type>_FeedbackMessage``)

Goals are identified by a random 16-byte UUID chosen by the client.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any
import uuid

from .const import (
    ACTION_CANCEL_GOAL_TMPL,
    ACTION_FEEDBACK_TMPL,
    ACTION_GET_RESULT_TMPL,
    ACTION_SEND_GOAL_TMPL,
    GOAL_STATUS_ABORTED,
)
from .exceptions import FoxRosActionError
from .service import Service
from .topic import Topic

if TYPE_CHECKING:
    from collections.abc import Callable

    from .ros import Ros

logger = logging.getLogger(__name__)


def _field(message: Any, name: str) -> Any:
    if isinstance(message, dict):
        return message.get(name)
    return getattr(message, name, None)


def _goal_id_bytes(goal_id: Any) -> bytes:
    """Normalise a decoded ``unique_identifier_msgs/UUID`` to 16 bytes."""
    raw = _field(goal_id, "uuid")
    if raw is None:
        return b""
    return bytes(raw)


class ActionGoal:
    """
    A goal accepted by the action server.

    Example::

        goal = await action.send_goal({"order": 5}, feedback_callback=print)
        result = await goal.result()
    """

    def __init__(self, action: Action, goal_id: bytes, result_task: asyncio.Task[Any]) -> None:
        self._action = action
        self.goal_id = goal_id
        self._result_task = result_task

    def __repr__(self) -> str:
        return f"ActionGoal({self.action_name!r}, {self.uuid})"

    @property
    def action_name(self) -> str:
        return self._action.name

    @property
    def uuid(self) -> uuid.UUID:
        return uuid.UUID(bytes=self.goal_id)

    @property
    def done(self) -> bool:
        return self._result_task.done()

    async def result(self) -> Any:
        """
        Wait for the ``get_result`` response.

        Raises:
            FoxRosActionError: The goal finished with status ABORTED.
        """
        return await asyncio.shield(self._result_task)

    async def cancel(self) -> Any:
        """Ask the server to cancel this goal; returns the cancel response."""
        return await self._action.cancel_goal(self.goal_id)


class Action:
    """
    Named action client.

    Args:
        ros:         Connected session.
        name:        Action name, e.g. ``"/fibonacci"``.
        action_type: Action type, e.g. ``"example_interfaces/action/Fibonacci"``.
    """

    def __init__(self, ros: Ros, name: str, action_type: str) -> None:
        self.ros = ros
        self.name = name
        self.action_type = action_type
        self._send_goal = Service(ros, ACTION_SEND_GOAL_TMPL.format(name=name), f"{action_type}_SendGoal")
        self._get_result = Service(ros, ACTION_GET_RESULT_TMPL.format(name=name), f"{action_type}_GetResult")
        self._cancel_goal = Service(ros, ACTION_CANCEL_GOAL_TMPL.format(name=name), "action_msgs/srv/CancelGoal")
        self._feedback = Topic(ros, ACTION_FEEDBACK_TMPL.format(name=name), f"{action_type}_FeedbackMessage")
        self._feedback_callbacks: dict[bytes, Callable[[Any], None]] = {}
        self._feedback_subscribed = False

    def __repr__(self) -> str:
        return f"Action({self.name!r}, {self.action_type!r})"

    async def send_goal(self, goal: Any, feedback_callback: Callable[[Any], None] | None = None) -> ActionGoal:
        """
        Send *goal* and return a handle once the server accepts it.

        *feedback_callback* receives each ``<Type>_FeedbackMessage`` for this
        goal until its result arrives.

        Raises:
            FoxRosActionError: The server rejected the goal.
        """
        goal_id = uuid.uuid4().bytes
        if feedback_callback is not None:
            await self._ensure_feedback()
            self._feedback_callbacks[goal_id] = feedback_callback

        try:
            response = await self._send_goal.call({"goal_id": {"uuid": goal_id}, "goal": goal})
        except BaseException:
            self._feedback_callbacks.pop(goal_id, None)
            raise
        if not _field(response, "accepted"):
            self._feedback_callbacks.pop(goal_id, None)
            raise FoxRosActionError(f"Goal on {self.name!r} was rejected", response)

        logger.debug("Goal %s accepted on %s", uuid.UUID(bytes=goal_id), self.name)
        task = asyncio.ensure_future(self._wait_result(goal_id))
        task.add_done_callback(lambda t: t.cancelled() or t.exception())
        return ActionGoal(self, goal_id, task)

    async def cancel_goal(self, goal_id: bytes) -> Any:
        return await self._cancel_goal.call(
            {"goal_info": {"goal_id": {"uuid": goal_id}, "stamp": {"sec": 0, "nanosec": 0}}}
        )

    def close(self) -> None:
        """Stop listening for feedback."""
        self._feedback.unsubscribe()
        self._feedback_subscribed = False
        self._feedback_callbacks.clear()

    async def _wait_result(self, goal_id: bytes) -> Any:
        try:
            response = await self._get_result.call({"goal_id": {"uuid": goal_id}})
        finally:
            self._feedback_callbacks.pop(goal_id, None)
        if _field(response, "status") == GOAL_STATUS_ABORTED:
            raise FoxRosActionError(f"Goal on {self.name!r} was aborted", response)
        return response

    async def _ensure_feedback(self) -> None:
        if self._feedback_subscribed:
            return
        self._feedback_subscribed = True
        try:
            await self._feedback.subscribe(self._on_feedback)
        except BaseException:
            self._feedback_subscribed = False
            raise

    def _on_feedback(self, message: Any) -> None:
        callback = self._feedback_callbacks.get(_goal_id_bytes(_field(message, "goal_id")))
        if callback is not None:
            callback(message)
