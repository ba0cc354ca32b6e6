"""Built-in integration tests.

Importing this module registers them in the default registry:

    init                 the VM resets and the introspection channel opens
    event_channel_alive  the channel is open right after start
"""

from vmi_harness.models import ChannelClosed
from vmi_harness.registry import integration_test
from vmi_harness.session import SessionHandle


@integration_test(name="init")
async def init(handle: SessionHandle) -> None:
    """Setup, channel initialisation and teardown succeed with an empty body."""


@integration_test(name="event_channel_alive")
async def event_channel_alive(handle: SessionHandle) -> None:
    outcome = await handle.await_event(timeout=0)
    assert not isinstance(outcome, ChannelClosed), f"introspection channel closed: {outcome.reason}"
