"""
foxros — ROS topics, services, parameters and actions over a Foxglove WebSocket.

Talks to a ``foxglove_bridge`` (ROS 1 or ROS 2) over one WebSocket
connection using the ``foxglove.websocket.v1`` protocol. Any number of topic,
service, parameter and action handles share that connection; the session
deduplicates subscriptions and advertisements and correlates replies.

Quick start::

    import asyncio
    from foxros import Ros, Topic, Service, Param

    async def main():
        async with Ros("ws://localhost:8765") as ros:
            print(await ros.get_topics())

            chatter = Topic(ros, "/chatter", "std_msgs/msg/String")
            await chatter.subscribe(lambda msg: print("heard", msg.data))
            await chatter.publish({"data": "hello"})

            response = await Service(ros, "/enable", "std_srvs/srv/SetBool").call({"data": True})
            print(response.success)

            print(await Param(ros, "/talker:use_sim_time").get())

    asyncio.run(main())

Actions (ROS 2)::

    from foxros import Action

    fib = Action(ros, "/fibonacci", "example_interfaces/action/Fibonacci")
    goal = await fib.send_goal({"order": 5}, feedback_callback=print)
    print(await goal.result())
"""

from __future__ import annotations

__version__ = "0.1.0"
__license__ = "MIT"

from ._codec import to_dict
from .action import Action, ActionGoal
from .error_reporting import init_error_reporting
from .exceptions import (
    FoxRosActionError,
    FoxRosClosedError,
    FoxRosCodecError,
    FoxRosConnectionError,
    FoxRosError,
    FoxRosNotAdvertisedError,
    FoxRosProtocolError,
    FoxRosSchemaError,
    FoxRosServiceError,
    FoxRosTimeoutError,
)
from .models import Channel, Parameter, RemoteService, ServerInfo
from .param import Param
from .ros import Publisher, Ros, Subscription
from .service import Service
from .topic import Topic

__all__ = [  # noqa: RUF022  grouped by category
    # Version
    "__version__",
    # Codec helpers
    "to_dict",
    # Error reporting
    "init_error_reporting",
    # Models (alphabetical)
    "Channel",
    "Parameter",
    "RemoteService",
    "ServerInfo",
    # Session
    "Publisher",
    "Ros",
    "Subscription",
    # Façades (alphabetical)
    "Action",
    "ActionGoal",
    "Param",
    "Service",
    "Topic",
    # Exceptions (alphabetical)
    "FoxRosActionError",
    "FoxRosClosedError",
    "FoxRosCodecError",
    "FoxRosConnectionError",
    "FoxRosError",
    "FoxRosNotAdvertisedError",
    "FoxRosProtocolError",
    "FoxRosSchemaError",
    "FoxRosServiceError",
    "FoxRosTimeoutError",
]

# Opt-in error reporting: enabled only when FOXROS_SENTRY_DSN or SENTRY_DSN is set
init_error_reporting()
