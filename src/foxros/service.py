"""
foxros.service — Service: call one named remote service.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .ros import Ros


class Service:
    """
    Named service handle.

    Example::

        set_bool = Service(ros, "/enable", "std_srvs/srv/SetBool")
        response = await set_bool.call({"data": True})
        print(response.success, response.message)

    ``service_type`` is informational; the request is encoded with the
    schema the server advertised.
    """

    def __init__(self, ros: Ros, name: str, service_type: str | None = None) -> None:
        self.ros = ros
        self.name = name
        self.service_type = service_type

    def __repr__(self) -> str:
        return f"Service({self.name!r}, {self.service_type!r})"

    async def call(self, request: Any) -> Any:
        """Send *request* and return the decoded response."""
        return await self.ros.send_service_request(self.name, request)
