"""Harness configuration for vmi-harness.

HarnessConfig gathers everything one test run needs: which VM, which
backend, the time bounds and the backend-specific endpoints. It is built
once per run and never mutated.

Example:
    ```python
    from vmi_harness import HarnessConfig, HarnessRunner

    config = HarnessConfig.from_env()  # TEST_VM, TEST_TIMEOUT, ...
    runner = HarnessRunner(config)
    results = await runner.run_suite()
    ```
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from vmi_harness import constants
from vmi_harness.models import BackendKind, VmIdentity

_BACKEND_ALIASES: dict[str, BackendKind] = {
    "kvm": BackendKind.SNAPSHOT_REVERT,
    "xen": BackendKind.CHECKPOINT_RESTORE,
}


class HarnessConfig(BaseModel):
    """Configuration for HarnessRunner.

    Attributes:
        backend: State-reset protocol. Fixed for the whole run.
        vm_name: VM instance to operate on.
        vcpu_count: VM's configured vCPU count (informational for adapters).
        test_timeout_seconds: Overall bound on each test body.
        event_timeout_ms: Default bound on a single event wait.
        teardown_timeout_seconds: Bound on each destroy() call.
        setup_retries: Fresh sessions to try after a SetupError (0 = no retry).
        virsh_uri: libvirt URI (SnapshotRevert backend).
        kvmi_socket: KVMI socket path, passed opaquely to the channel factory.
        xen_checkpoint: Checkpoint file (CheckpointRestore backend).
    """

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
    )

    backend: BackendKind = Field(
        default=BackendKind.SNAPSHOT_REVERT,
        description="Hypervisor backend (snapshot/revert or checkpoint/restore)",
    )
    vm_name: str = Field(default=constants.DEFAULT_VM_NAME, min_length=1)
    vcpu_count: int = Field(default=constants.DEFAULT_VCPU_COUNT, ge=1)

    test_timeout_seconds: float = Field(
        default=constants.DEFAULT_TEST_TIMEOUT_SECONDS,
        gt=0,
        le=constants.MAX_TEST_TIMEOUT_SECONDS,
        description="Overall test timeout in seconds",
    )
    event_timeout_ms: int = Field(
        default=constants.DEFAULT_EVENT_TIMEOUT_MS,
        ge=0,
        description="Default event-wait timeout in milliseconds",
    )
    teardown_timeout_seconds: float = Field(
        default=constants.DEFAULT_TEARDOWN_TIMEOUT_SECONDS,
        gt=0,
        description="Bound on destroy()",
    )
    setup_retries: int = Field(default=0, ge=0, le=constants.MAX_SETUP_RETRIES)

    virsh_uri: str = Field(default=constants.DEFAULT_VIRSH_URI, min_length=1)
    kvmi_socket: Path = Field(default=constants.DEFAULT_KVMI_SOCKET)
    xen_checkpoint: Path = Field(default=constants.DEFAULT_XEN_CHECKPOINT)

    @classmethod
    def from_env(cls, **overrides: Any) -> HarnessConfig:
        """Build the configuration from TEST_* environment variables.

        Keyword overrides (e.g. from CLI options) win over the environment;
        None values are ignored.

        Raises:
            pydantic.ValidationError: A value is out of range
        """
        from vmi_harness.settings import Settings  # noqa: PLC0415

        settings = Settings()
        values: dict[str, Any] = {
            "backend": _BACKEND_ALIASES[settings.backend],
            "vm_name": settings.vm,
            "vcpu_count": settings.vcpu,
            "test_timeout_seconds": settings.timeout,
            "event_timeout_ms": settings.event_timeout,
            "teardown_timeout_seconds": settings.teardown_timeout,
            "setup_retries": settings.setup_retries,
            "virsh_uri": settings.kvm_virsh_uri,
            "kvmi_socket": settings.kvmi_socket,
            "xen_checkpoint": settings.xen_checkpoint,
        }
        values.update({key: value for key, value in overrides.items() if value is not None})
        return cls(**values)

    @property
    def event_timeout_seconds(self) -> float:
        """Default event-wait timeout in seconds."""
        return self.event_timeout_ms / 1000

    def identity(self) -> VmIdentity:
        """VmIdentity for sessions created from this configuration."""
        return VmIdentity(name=self.vm_name, vcpu_count=self.vcpu_count)


def backend_kind_from_alias(alias: str) -> BackendKind:
    """Map "kvm"/"xen" (or a BackendKind value) to BackendKind.

    Raises:
        ValueError: Unknown backend name
    """
    normalized = alias.strip().lower()
    if normalized in _BACKEND_ALIASES:
        return _BACKEND_ALIASES[normalized]
    return BackendKind(normalized)
