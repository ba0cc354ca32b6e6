"""Bounded waiter: time-limited waits for introspection events.

Turns the channel's unbounded recv() into a race between the next event and
a Deadline. The losing side is cancelled, so no blocked receiver outlives
the call:

    outcome = await await_event(channel, timeout=5.0)
    match outcome:
        case Received(event=event): ...
        case TimedOut(): ...          # expected outcome, not an error
        case ChannelClosed(): ...     # introspection layer died: fatal
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

from vmi_harness._logging import get_logger
from vmi_harness.deadline import Deadline
from vmi_harness.exceptions import ChannelClosedError
from vmi_harness.models import ChannelClosed, EventOutcome, Received, TimedOut

if TYPE_CHECKING:
    from vmi_harness.event_channel import EventChannel

logger = get_logger(__name__)


async def await_event(channel: EventChannel, timeout: float) -> EventOutcome:
    """Wait at most `timeout` seconds for the next event on `channel`.

    A zero timeout performs exactly one non-blocking check. An event already
    pending is always returned, even when the deadline has passed.

    Args:
        channel: Event source to read from.
        timeout: Wait bound in seconds (>= 0).

    Returns:
        Received(event), TimedOut, or ChannelClosed.

    Raises:
        ValueError: timeout is negative
    """
    deadline = Deadline.after(timeout)

    try:
        event = channel.try_recv()
    except ChannelClosedError as e:
        return ChannelClosed(reason=e.message)
    if event is not None:
        return Received(event)

    if deadline.expired():
        return TimedOut(timeout_seconds=timeout)

    try:
        async with asyncio.timeout(deadline.remaining()):
            event = await channel.recv()
    except TimeoutError:
        logger.debug("Event wait timed out", extra={"timeout_seconds": timeout})
        return TimedOut(timeout_seconds=timeout)
    except ChannelClosedError as e:
        return ChannelClosed(reason=e.message)
    return Received(event)


class BoundedWaiter:
    """await_event() bound to one channel with a configured default timeout.

    Owned by a VmSession for the duration of one test. Restartable: a
    TimedOut outcome leaves the channel usable for the next wait.
    """

    __slots__ = ("_channel", "_default_timeout")

    def __init__(self, channel: EventChannel, default_timeout: float) -> None:
        if default_timeout < 0:
            raise ValueError(f"default_timeout must be >= 0, got {default_timeout}")
        self._channel = channel
        self._default_timeout = default_timeout

    @property
    def default_timeout(self) -> float:
        """Default wait bound in seconds."""
        return self._default_timeout

    @property
    def channel(self) -> EventChannel:
        return self._channel

    async def await_event(self, timeout: float | None = None) -> EventOutcome:
        """Wait for the next event; `timeout` defaults to the configured bound."""
        return await await_event(self._channel, self._default_timeout if timeout is None else timeout)

