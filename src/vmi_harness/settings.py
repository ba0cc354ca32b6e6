"""Runtime configuration from environment variables."""

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from vmi_harness import constants


class Settings(BaseSettings):
    """Harness settings read from TEST_* environment variables.

    Every value is optional. Example:
        TEST_BACKEND=xen TEST_VM=win7 TEST_XEN_CHECKPOINT=/srv/win7.chk vmi-harness
    """

    model_config = SettingsConfigDict(
        env_prefix="TEST_",
        extra="ignore",
    )

    # Backend selection: kvm = libvirt snapshot/revert, xen = xl checkpoint/restore
    backend: Literal["kvm", "xen"] = "kvm"

    # VM identity
    vm: str = constants.DEFAULT_VM_NAME
    vcpu: int = constants.DEFAULT_VCPU_COUNT

    # Timeouts
    timeout: float = constants.DEFAULT_TEST_TIMEOUT_SECONDS
    """Overall test timeout in seconds."""
    event_timeout: int = constants.DEFAULT_EVENT_TIMEOUT_MS
    """Event-wait timeout in milliseconds."""
    teardown_timeout: float = constants.DEFAULT_TEARDOWN_TIMEOUT_SECONDS

    setup_retries: int = 0

    # KVM (libvirt) backend
    kvm_virsh_uri: str = constants.DEFAULT_VIRSH_URI
    kvmi_socket: Path = Field(default=constants.DEFAULT_KVMI_SOCKET)

    # Xen backend
    xen_checkpoint: Path = Field(default=constants.DEFAULT_XEN_CHECKPOINT)
