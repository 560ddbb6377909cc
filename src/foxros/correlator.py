"""
foxros.correlator — Match asynchronous responses to the requests that caused them.

Every outstanding request (service call, parameter get, parameter set) is a
:class:`PendingCall` holding a single-shot future. Ids come from a counter
owned by the session, so they are never reused within it and never shared
between sessions.

A response is matched by key, the entry is popped, and the future resolved.
A response for an unknown key, or a second response for the same key, is
dropped and logged at DEBUG. There is no timeout here: callers wrap the
awaitable in :func:`asyncio.wait_for` when they need one.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
import itertools
import logging
from typing import TYPE_CHECKING, Any, Generic, TypeVar

if TYPE_CHECKING:
    from collections.abc import Callable, Hashable

logger = logging.getLogger(__name__)

_IdT = TypeVar("_IdT")


@dataclass
class PendingCall:
    """One outstanding request."""

    key: Hashable
    future: asyncio.Future[Any]
    decoder: Callable[[Any], Any] | None = None
    name: str = ""


class CallCorrelator(Generic[_IdT]):
    """
    Table of outstanding requests.

    Args:
        id_format: Turns the counter value into the wire id (``int`` for
            service calls, ``str`` for parameter requests).

    Example::

        calls = CallCorrelator()
        call_id = calls.next_id()
        fut = calls.register((service_id, call_id), decoder=reader)
        transport.send_service_call_request(service_id, call_id, "cdr", data)
        response = await fut
    """

    def __init__(self, id_format: Callable[[int], _IdT] = int) -> None:  # type: ignore[assignment]
        self._id_format = id_format
        self._counter = itertools.count()
        self._pending: dict[Hashable, PendingCall] = {}

    def __len__(self) -> int:
        return len(self._pending)

    def __contains__(self, key: object) -> bool:
        return key in self._pending

    def next_id(self) -> _IdT:
        """Return a fresh id, never returned before by this correlator."""
        return self._id_format(next(self._counter))

    def register(
        self,
        key: Hashable,
        decoder: Callable[[Any], Any] | None = None,
        name: str = "",
    ) -> asyncio.Future[Any]:
        """Record a pending request and return the future its response resolves."""
        if key in self._pending:
            raise ValueError(f"request {key!r} is already pending")
        fut: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._pending[key] = PendingCall(key=key, future=fut, decoder=decoder, name=name)
        return fut

    def keys(self) -> list[Hashable]:
        """Snapshot of the outstanding keys, safe to iterate while rejecting."""
        return list(self._pending)

    def get(self, key: Hashable) -> PendingCall | None:
        return self._pending.get(key)

    def pop(self, key: Hashable) -> PendingCall | None:
        return self._pending.pop(key, None)

    def resolve(self, key: Hashable, payload: Any) -> bool:
        """
        Complete the request for *key* with *payload*.

        The payload runs through the call's decoder first; a decoder
        exception rejects the future instead. Returns ``False`` when no
        request was pending under *key*.
        """
        call = self._pending.pop(key, None)
        if call is None:
            logger.debug("Dropping unmatched response %r", key)
            return False
        if call.future.done():
            logger.debug("Dropping response %r: caller stopped waiting", key)
            return True
        if call.decoder is None:
            call.future.set_result(payload)
            return True
        try:
            result = call.decoder(payload)
        except Exception as exc:  # noqa: BLE001
            call.future.set_exception(exc)
        else:
            call.future.set_result(result)
        return True

    def reject(self, key: Hashable, exc: BaseException) -> bool:
        """Fail the request for *key* with *exc*; returns ``False`` if unknown."""
        call = self._pending.pop(key, None)
        if call is None:
            logger.debug("Dropping unmatched failure %r", key)
            return False
        if not call.future.done():
            call.future.set_exception(exc)
        return True

    def clear(self) -> None:
        """Forget every pending request. Futures are left as they are."""
        self._pending.clear()
