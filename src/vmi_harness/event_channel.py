"""
Introspection event channel abstraction.

The harness only reads from a channel. Producers (a KVMI socket reader, a
Xen event loop, a test double) push events in; test bodies take them out
through the bounded waiter. QueueEventChannel is the in-process building
block: other threads hand events over with publish_threadsafe().
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any, Protocol, runtime_checkable

from vmi_harness._logging import get_logger
from vmi_harness.exceptions import ChannelClosedError
from vmi_harness.models import VmIdentity

logger = get_logger(__name__)


@runtime_checkable
class EventChannel(Protocol):
    """Protocol for an introspection event source.

    try_recv() never blocks; recv() waits for the next event. Both raise
    ChannelClosedError once the channel is permanently closed and drained.
    A cancelled recv() must not lose an event.
    Events are never None: None is how try_recv() reports "nothing pending".
    """

    def try_recv(self) -> Any | None:
        """Return the next pending event, or None if none is pending."""
        ...

    async def recv(self) -> Any:
        """Wait for the next event."""
        ...

    async def close(self) -> None:
        """Close the channel. Idempotent."""
        ...


ChannelFactory = Callable[[VmIdentity], Awaitable[EventChannel]]
"""Opens the introspection channel for a VM that has just reached Ready."""


class _Closed:
    """Queue sentinel marking permanent closure."""

    __slots__ = ()


_CLOSED = _Closed()


class QueueEventChannel:
    """EventChannel backed by an unbounded asyncio.Queue.

    Events published before close() are still delivered; after they are
    drained, every receive raises ChannelClosedError. Must be created and
    consumed on one event loop; other threads publish through
    publish_threadsafe().
    """

    __slots__ = ("_closed", "_name", "_queue")

    def __init__(self, name: str = "queue") -> None:
        self._name = name
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        """Whether close() was called."""
        return self._closed

    def publish(self, event: Any) -> None:
        """Deliver an event (event-loop thread only).

        Raises:
            ValueError: event is None
            ChannelClosedError: The channel is closed
        """
        if event is None:
            raise ValueError("None is not a deliverable event")
        if self._closed:
            raise ChannelClosedError(f"Channel {self._name} is closed", context={"channel": self._name})
        self._queue.put_nowait(event)

    def publish_threadsafe(self, event: Any, loop: asyncio.AbstractEventLoop) -> None:
        """Deliver an event from a foreign thread (e.g. a blocking introspection library)."""
        loop.call_soon_threadsafe(self._publish_or_drop, event)

    def _publish_or_drop(self, event: Any) -> None:
        if event is None:
            logger.warning("Dropping None event", extra={"channel": self._name})
            return
        if self._closed:
            logger.debug("Dropping event published after close", extra={"channel": self._name})
            return
        self._queue.put_nowait(event)

    def try_recv(self) -> Any | None:
        try:
            item = self._queue.get_nowait()
        except asyncio.QueueEmpty:
            return None
        if item is _CLOSED:
            # Leave the sentinel for every later receiver
            self._queue.put_nowait(_CLOSED)
            raise ChannelClosedError(f"Channel {self._name} is closed", context={"channel": self._name})
        return item

    async def recv(self) -> Any:
        item = await self._queue.get()
        if item is _CLOSED:
            self._queue.put_nowait(_CLOSED)
            raise ChannelClosedError(f"Channel {self._name} is closed", context={"channel": self._name})
        return item

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(_CLOSED)
        logger.debug("Event channel closed", extra={"channel": self._name})


class NullEventChannel:
    """Channel for runs without an introspection source: always closed."""

    __slots__ = ()

    def try_recv(self) -> Any | None:
        raise ChannelClosedError("No introspection channel configured")

    async def recv(self) -> Any:
        raise ChannelClosedError("No introspection channel configured")

    async def close(self) -> None:
        return None


async def open_null_channel(identity: VmIdentity) -> EventChannel:
    """Default ChannelFactory: no introspection source."""
    logger.debug("No channel factory configured, using null channel", extra={"vm": identity.name})
    return NullEventChannel()
