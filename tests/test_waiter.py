"""Tests for the bounded waiter.

The three outcomes (Received, TimedOut, ChannelClosed) are ordinary return
values; only a negative timeout raises.
"""

import asyncio
import time

import pytest

from vmi_harness.event_channel import NullEventChannel, QueueEventChannel
from vmi_harness.models import ChannelClosed, Received, TimedOut
from vmi_harness.waiter import BoundedWaiter, await_event


class TestAwaitEvent:
    async def test_zero_timeout_empty_channel(self) -> None:
        channel = QueueEventChannel()
        start = time.monotonic()

        outcome = await await_event(channel, 0)

        assert outcome == TimedOut(timeout_seconds=0)
        assert time.monotonic() - start < 0.5

    async def test_zero_timeout_pending_event(self) -> None:
        channel = QueueEventChannel()
        channel.publish("int3")

        assert await await_event(channel, 0) == Received("int3")

    async def test_event_arriving_before_deadline(self) -> None:
        channel = QueueEventChannel()
        asyncio.get_running_loop().call_later(0.02, channel.publish, "cr3_write")

        assert await await_event(channel, 2.0) == Received("cr3_write")

    async def test_timeout_then_restart(self) -> None:
        """A TimedOut wait leaves the channel usable and loses nothing."""
        channel = QueueEventChannel()

        assert await await_event(channel, 0.02) == TimedOut(timeout_seconds=0.02)

        channel.publish("late")
        assert await await_event(channel, 0.02) == Received("late")

    async def test_timeout_honoured(self) -> None:
        channel = QueueEventChannel()
        start = time.monotonic()

        outcome = await await_event(channel, 0.05)

        elapsed = time.monotonic() - start
        assert isinstance(outcome, TimedOut)
        assert 0.04 <= elapsed < 1.0

    async def test_closed_channel(self) -> None:
        channel = QueueEventChannel(name="kvmi")
        await channel.close()

        outcome = await await_event(channel, 1.0)

        assert isinstance(outcome, ChannelClosed)
        assert "kvmi" in outcome.reason

    async def test_close_while_waiting(self) -> None:
        channel = QueueEventChannel()
        asyncio.get_running_loop().call_later(0.02, lambda: asyncio.ensure_future(channel.close()))

        assert isinstance(await await_event(channel, 2.0), ChannelClosed)

    async def test_events_before_close_still_delivered(self) -> None:
        channel = QueueEventChannel()
        channel.publish("a")
        await channel.close()

        assert await await_event(channel, 0) == Received("a")
        assert isinstance(await await_event(channel, 0), ChannelClosed)

    async def test_null_channel(self) -> None:
        assert isinstance(await await_event(NullEventChannel(), 1.0), ChannelClosed)

    async def test_negative_timeout_rejected(self) -> None:
        with pytest.raises(ValueError):
            await await_event(QueueEventChannel(), -1)


class TestBoundedWaiter:
    async def test_default_timeout(self) -> None:
        waiter = BoundedWaiter(QueueEventChannel(), default_timeout=0.01)

        assert waiter.default_timeout == 0.01
        assert await waiter.await_event() == TimedOut(timeout_seconds=0.01)

    async def test_explicit_timeout_overrides_default(self) -> None:
        waiter = BoundedWaiter(QueueEventChannel(), default_timeout=30)

        assert await waiter.await_event(timeout=0) == TimedOut(timeout_seconds=0)

    def test_negative_default_rejected(self) -> None:
        with pytest.raises(ValueError):
            BoundedWaiter(QueueEventChannel(), default_timeout=-0.5)
