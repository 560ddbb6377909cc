"""
foxros.param — Param: read and write one server parameter.

ROS 2 parameter names are addressed as ``<node>.<param>`` by the bridge; the
``<node>:<param>`` form is accepted and normalised.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .ros import Ros


def normalize_name(name: str) -> str:
    """Replace ``:`` separators with ``.``."""
    return name.replace(":", ".")


class Param:
    """
    Named parameter handle.

    Example::

        p = Param(ros, "/talker:use_sim_time")
        await p.set(True)
        assert await p.get() is True
    """

    def __init__(self, ros: Ros, name: str) -> None:
        self.ros = ros
        self.name = normalize_name(name)

    def __repr__(self) -> str:
        return f"Param({self.name!r})"

    async def get(self) -> Any:
        return await self.ros.get_parameter(self.name)

    async def set(self, value: Any) -> Any:
        return await self.ros.set_parameter(self.name, value)
