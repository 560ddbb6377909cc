"""
foxros.exceptions — Custom exception hierarchy for the foxros library.

All exceptions raised by the library are subclasses of ``FoxRosError``,
making it easy to catch them with a single ``except FoxRosError`` clause.

Hierarchy::

    FoxRosError
    ├── FoxRosConnectionError        # WebSocket connection failed or lost
    │   ├── FoxRosTimeoutError       # Connection / serverInfo timed out
    │   └── FoxRosClosedError        # Session was closed by the caller
    ├── FoxRosProtocolError          # Malformed frame from the server
    ├── FoxRosNotAdvertisedError     # Topic/service withdrawn while in use
    ├── FoxRosCodecError             # Message encode/decode failed
    │   └── FoxRosSchemaError        # Schema definition could not be parsed
    ├── FoxRosServiceError           # Server reported a service call failure
    └── FoxRosActionError            # Action goal rejected or aborted
"""

from __future__ import annotations

from typing import Any


class FoxRosError(Exception):
    """Base class for all foxros exceptions."""


# ---------------------------------------------------------------------------
# Connection
# ---------------------------------------------------------------------------


class FoxRosConnectionError(FoxRosError):
    """
    WebSocket connection failed, was lost, or was never established.

    Raised when the bridge cannot be reached, or when an operation is issued
    before :meth:`~foxros.ros.Ros.connect` or after the server closed the
    connection.
    """


class FoxRosTimeoutError(FoxRosConnectionError):
    """
    The connection or the initial ``serverInfo`` did not arrive in time.
    """


class FoxRosClosedError(FoxRosConnectionError):
    """
    The session was closed with :meth:`~foxros.ros.Ros.close`.

    A closed session never reconnects; create a new :class:`~foxros.ros.Ros`.
    """


# ---------------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------------


class FoxRosProtocolError(FoxRosError):
    """
    Unexpected or malformed data received from the server.

    Raised when a JSON or binary frame cannot be parsed.
    """


class FoxRosNotAdvertisedError(FoxRosError):
    """
    A topic or service was withdrawn by the server while still referenced.

    Attributes:
        name: Topic or service name that is no longer advertised.
    """

    def __init__(self, name: str, message: str = "") -> None:
        super().__init__(message or f"{name!r} is no longer advertised")
        self.name = name


# ---------------------------------------------------------------------------
# Codec
# ---------------------------------------------------------------------------


class FoxRosCodecError(FoxRosError):
    """
    A message payload could not be encoded or decoded.
    """


class FoxRosSchemaError(FoxRosCodecError):
    """
    A schema definition could not be turned into a reader or writer.

    Attributes:
        schema_name: Name of the offending schema.
    """

    def __init__(self, schema_name: str, message: str = "") -> None:
        super().__init__(message or f"bad schema {schema_name!r}")
        self.schema_name = schema_name


# ---------------------------------------------------------------------------
# Services & actions
# ---------------------------------------------------------------------------


class FoxRosServiceError(FoxRosError):
    """
    The server reported that a service call failed.

    Attributes:
        service: Service name.
        call_id: Correlation id of the failed call.
    """

    def __init__(self, message: str, service: str = "", call_id: int | None = None) -> None:
        super().__init__(message)
        self.service = service
        self.call_id = call_id

    def __str__(self) -> str:
        if self.service:
            return f"FoxRosServiceError(service={self.service!r}): {self.args[0]}"
        return f"FoxRosServiceError: {self.args[0]}"


class FoxRosActionError(FoxRosError):
    """
    An action goal was rejected by the server or finished aborted.

    Attributes:
        response: The decoded ``send_goal`` or ``get_result`` response, if any.
    """

    def __init__(self, message: str, response: Any = None) -> None:
        super().__init__(message)
        self.response = response
