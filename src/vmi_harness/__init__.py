"""vmi-harness: integration-test harness for VM introspection.

Every test runs against a VM reset to a known-good state (libvirt
snapshot/revert or Xen checkpoint/restore) and the VM is destroyed
afterwards on every exit path. Test bodies wait for introspection events
with bounded waits that report Received, TimedOut or ChannelClosed.

Quick Start:
    ```python
    from vmi_harness import HarnessConfig, HarnessRunner, Received

    async def breakpoint_hit(handle):
        outcome = await handle.await_event()
        assert isinstance(outcome, Received)

    runner = HarnessRunner(HarnessConfig(vm_name="winxp"), channel_factory=open_kvmi_channel)
    result = await runner.run(breakpoint_hit)
    print(result.status, result.teardown_error)
    ```

Registered suite:
    ```python
    from vmi_harness import integration_test

    @integration_test(name="init")
    async def init(handle): ...
    ```
    then `vmi-harness --load mytests`.
"""

from vmi_harness.backend import BackendAdapter, create_backend
from vmi_harness.checkpoint_backend import XlCheckpointBackend
from vmi_harness.config import HarnessConfig
from vmi_harness.deadline import Deadline
from vmi_harness.event_channel import (
    ChannelFactory,
    EventChannel,
    NullEventChannel,
    QueueEventChannel,
    open_null_channel,
)
from vmi_harness.exceptions import (
    BackendUnreachableError,
    ChannelClosedError,
    ChannelInitError,
    EventTimeoutError,
    HarnessError,
    InfrastructureError,
    SessionStateError,
    SetupError,
    StateMismatchError,
    TeardownError,
    TeardownTimeoutError,
    TeardownUnreachableError,
)
from vmi_harness.models import (
    BackendKind,
    ChannelClosed,
    EventOutcome,
    Received,
    SessionState,
    TestResult,
    TestStatus,
    TimedOut,
    VmIdentity,
)
from vmi_harness.registry import IntegrationTest, TestRegistry, default_registry, integration_test
from vmi_harness.runner import HarnessRunner
from vmi_harness.session import SessionHandle, VmSession
from vmi_harness.snapshot_backend import VirshSnapshotBackend
from vmi_harness.waiter import BoundedWaiter, await_event

__all__ = [
    "BackendAdapter",
    "BackendKind",
    "BackendUnreachableError",
    "BoundedWaiter",
    "ChannelClosed",
    "ChannelClosedError",
    "ChannelFactory",
    "ChannelInitError",
    "Deadline",
    "EventChannel",
    "EventOutcome",
    "EventTimeoutError",
    "HarnessConfig",
    "HarnessError",
    "HarnessRunner",
    "InfrastructureError",
    "IntegrationTest",
    "NullEventChannel",
    "QueueEventChannel",
    "Received",
    "SessionHandle",
    "SessionState",
    "SessionStateError",
    "SetupError",
    "StateMismatchError",
    "TeardownError",
    "TeardownTimeoutError",
    "TeardownUnreachableError",
    "TestRegistry",
    "TestResult",
    "TestStatus",
    "TimedOut",
    "VirshSnapshotBackend",
    "VmIdentity",
    "VmSession",
    "XlCheckpointBackend",
    "await_event",
    "create_backend",
    "default_registry",
    "integration_test",
    "open_null_channel",
]

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("vmi-harness")
except PackageNotFoundError:
    __version__ = "0.0.0.dev0"
