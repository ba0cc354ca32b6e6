"""Backend adapter contract.

A backend adapter owns the two privileged operations a session needs
against one hypervisor family:

    reset(identity)    bring the VM to its known-good state
    destroy(identity)  stop the VM so the next test starts from a clean slate

Adapters do not retry; retrying is the runner's decision (a fresh session
per attempt). The adapter is chosen once per run from configuration.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol, runtime_checkable

from vmi_harness.models import BackendKind

if TYPE_CHECKING:
    from vmi_harness.config import HarnessConfig
    from vmi_harness.models import VmIdentity


@runtime_checkable
class BackendAdapter(Protocol):
    """Capability set {reset, destroy} for one hypervisor family.

    Uses structural typing (Protocol) instead of inheritance: the two
    backends share no implementation, only this contract.
    """

    @property
    def kind(self) -> BackendKind:
        """Which state-reset protocol this adapter implements."""
        ...

    async def reset(self, identity: VmIdentity) -> None:
        """Bring the VM to its configured known-good, running state.

        Raises:
            BackendUnreachableError: Control channel could not be reached
            StateMismatchError: VM is not running after the reset
        """
        ...

    async def destroy(self, identity: VmIdentity) -> None:
        """Forcibly stop the VM. An already stopped VM is success.

        Raises:
            TeardownUnreachableError: Destroy command failed
            TeardownTimeoutError: Destroy command exceeded its bound
        """
        ...


def create_backend(config: HarnessConfig) -> BackendAdapter:
    """Build the adapter selected by config.backend."""
    match config.backend:
        case BackendKind.SNAPSHOT_REVERT:
            from vmi_harness.snapshot_backend import VirshSnapshotBackend  # noqa: PLC0415

            return VirshSnapshotBackend(
                config.virsh_uri,
                destroy_timeout=config.teardown_timeout_seconds,
            )
        case BackendKind.CHECKPOINT_RESTORE:
            from vmi_harness.checkpoint_backend import XlCheckpointBackend  # noqa: PLC0415

            return XlCheckpointBackend(
                config.xen_checkpoint,
                destroy_timeout=config.teardown_timeout_seconds,
            )
