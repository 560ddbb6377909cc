"""
foxros.const — Protocol constants for the Foxglove WebSocket interface.

Subprotocol name, opcodes, message encodings and default values used by the
transport and the session layer.

Protocol reference:
- foxglove/ws-protocol ``docs/spec.md`` (``foxglove.websocket.v1``)
- ``foxglove_bridge`` server behaviour (ROS 1 and ROS 2)

Operation support matrix
------------------------
+------------------------------+-------------+---------------------+
| Operation                    | Implemented | Notes               |
+==============================+=============+=====================+
| subscribe / unsubscribe      | ✅ Yes      | ref-counted         |
| client advertise / publish   | ✅ Yes      | ``clientPublish``   |
| service calls                | ✅ Yes      | ``services``        |
| parameters get / set         | ✅ Yes      | ``parameters``      |
| parameter subscriptions      | ❌ No       |                     |
| connection graph             | ❌ No       |                     |
| asset fetch                  | ❌ No       |                     |
+------------------------------+-------------+---------------------+
"""

from __future__ import annotations

# ---------------------------------------------------------------------------
# Connection
# ---------------------------------------------------------------------------

#: WebSocket subprotocol negotiated with the server.
SUBPROTOCOL = "foxglove.websocket.v1"

#: Default bridge endpoint (``foxglove_bridge`` listens on 8765).
DEFAULT_URL = "ws://localhost:8765"

#: Environment variable consulted by the CLI for the endpoint URL.
ENV_URL = "FOXROS_URL"

#: Default timeout (seconds) waiting for the connection and ``serverInfo``.
DEFAULT_CONNECT_TIMEOUT = 10.0

#: Default maximum inbound WebSocket frame size (bytes); 0 disables the limit.
DEFAULT_MAX_MESSAGE_SIZE = 0

#: Bounded queue size for :meth:`foxros.topic.Topic.messages`.
DEFAULT_STREAM_QUEUE_SIZE = 1000

#: Seconds :meth:`foxros.protocol.FoxgloveTransport.close` waits for queued frames to be sent.
CLOSE_DRAIN_TIMEOUT = 5.0

# ---------------------------------------------------------------------------
# Message encodings
# ---------------------------------------------------------------------------

#: ROS 2 serialization (session default).
ENCODING_CDR = "cdr"

#: ROS 1 serialization; chosen when the server lists it in ``supportedEncodings``.
ENCODING_ROS1 = "ros1"

#: Schema encodings seen on advertised channels.
SCHEMA_ENCODING_ROS1MSG = "ros1msg"
SCHEMA_ENCODING_ROS2MSG = "ros2msg"
SCHEMA_ENCODING_ROS2IDL = "ros2idl"

# ---------------------------------------------------------------------------
# JSON operations
# ---------------------------------------------------------------------------

# Server → client
OP_SERVER_INFO = "serverInfo"
OP_STATUS = "status"
OP_REMOVE_STATUS = "removeStatus"
OP_ADVERTISE = "advertise"
OP_UNADVERTISE = "unadvertise"
OP_ADVERTISE_SERVICES = "advertiseServices"
OP_UNADVERTISE_SERVICES = "unadvertiseServices"
OP_PARAMETER_VALUES = "parameterValues"
OP_SERVICE_CALL_FAILURE = "serviceCallFailure"

# Client → server
OP_SUBSCRIBE = "subscribe"
OP_UNSUBSCRIBE = "unsubscribe"
OP_GET_PARAMETERS = "getParameters"
OP_SET_PARAMETERS = "setParameters"

# ---------------------------------------------------------------------------
# Binary opcodes
# ---------------------------------------------------------------------------

#: Server → client: ``u32 subscriptionId, u64 timestamp, payload``.
BINARY_MESSAGE_DATA = 0x01

#: Server → client: ``u64 timestamp``.
BINARY_TIME = 0x02

#: Server → client: ``u32 serviceId, u32 callId, u32 len, encoding, payload``.
BINARY_SERVICE_CALL_RESPONSE = 0x03

#: Client → server: ``u32 channelId, payload``.
CLIENT_BINARY_MESSAGE_DATA = 0x01

#: Client → server: ``u32 serviceId, u32 callId, u32 len, encoding, payload``.
CLIENT_BINARY_SERVICE_CALL_REQUEST = 0x02

# ---------------------------------------------------------------------------
# Session events
# ---------------------------------------------------------------------------

EVENT_CONNECTION = "connection"
EVENT_CLOSE = "close"
EVENT_ERROR = "error"

#: Events accepted by :meth:`foxros.ros.Ros.on`.
SESSION_EVENTS: tuple[str, ...] = (EVENT_CONNECTION, EVENT_CLOSE, EVENT_ERROR)

# ---------------------------------------------------------------------------
# Actions (ROS 2 action-over-services naming)
# ---------------------------------------------------------------------------

ACTION_SEND_GOAL_TMPL = "{name}/_action/send_goal"
ACTION_GET_RESULT_TMPL = "{name}/_action/get_result"
ACTION_CANCEL_GOAL_TMPL = "{name}/_action/cancel_goal"
ACTION_FEEDBACK_TMPL = "{name}/_action/feedback"

#: ``action_msgs/msg/GoalStatus`` value reported for an aborted goal.
GOAL_STATUS_ABORTED = 6
