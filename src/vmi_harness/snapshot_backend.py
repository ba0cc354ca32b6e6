"""Snapshot/revert backend over libvirt's virsh.

Reset:
    virsh --connect=URI snapshot-revert VM --current --running
    then poll `virsh domstate VM` until it reports "running".
    `virsh vcpucount VM --active --live` is compared with the configured count (warning only).
Destroy:
    virsh --connect=URI destroy VM  ("domain is not running" counts as success)
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

from vmi_harness import constants
from vmi_harness._logging import get_logger
from vmi_harness.exceptions import (
    BackendUnreachableError,
    StateMismatchError,
    TeardownTimeoutError,
    TeardownUnreachableError,
)
from vmi_harness.models import BackendKind
from vmi_harness.subprocess_utils import CommandResult, run_command

if TYPE_CHECKING:
    from vmi_harness.models import VmIdentity

logger = get_logger(__name__)

# virsh diagnostics meaning libvirtd could not be reached at all
_CONNECTION_FAILURE_MARKERS = (
    "failed to connect to the hypervisor",
    "failed to connect socket",
    "no connection driver available",
    "unable to connect to server",
)

# virsh diagnostics meaning there is nothing left to destroy
_ALREADY_GONE_MARKERS = (
    "domain is not running",
    "domain not found",
    "failed to get domain",
)

_RUNNING_STATE = "running"


def _matches(result: CommandResult, markers: tuple[str, ...]) -> bool:
    output = result.output.lower()
    return any(marker in output for marker in markers)


class VirshSnapshotBackend:
    """BackendAdapter reverting a libvirt domain to its current snapshot.

    Attributes:
        uri: libvirt connection URI (e.g. qemu:///system)
    """

    __slots__ = (
        "_command_timeout",
        "_destroy_timeout",
        "_poll_interval",
        "_running_timeout",
        "uri",
    )

    def __init__(
        self,
        uri: str = constants.DEFAULT_VIRSH_URI,
        *,
        command_timeout: float = constants.DEFAULT_COMMAND_TIMEOUT_SECONDS,
        destroy_timeout: float = constants.DEFAULT_TEARDOWN_TIMEOUT_SECONDS,
        running_timeout: float = constants.RUNNING_STATE_TIMEOUT_SECONDS,
        poll_interval: float = constants.RUNNING_STATE_POLL_INTERVAL_SECONDS,
    ) -> None:
        self.uri = uri
        self._command_timeout = command_timeout
        self._destroy_timeout = destroy_timeout
        self._running_timeout = running_timeout
        self._poll_interval = poll_interval

    @property
    def kind(self) -> BackendKind:
        return BackendKind.SNAPSHOT_REVERT

    def _virsh(self, *args: str) -> list[str]:
        return [constants.VIRSH_BIN, f"--connect={self.uri}", *args]

    async def reset(self, identity: VmIdentity) -> None:
        """Revert the domain to its current snapshot and wait until it runs."""
        logger.info("Reverting VM to current snapshot", extra={"vm": identity.name, "uri": self.uri})
        try:
            result = await run_command(
                self._virsh("snapshot-revert", identity.name, "--current", "--running"),
                timeout=self._command_timeout,
                context_id=identity.name,
            )
        except TimeoutError as e:
            raise BackendUnreachableError(
                f"virsh snapshot-revert did not finish within {self._command_timeout}s",
                context={"vm": identity.name, "uri": self.uri},
            ) from e
        except OSError as e:
            raise BackendUnreachableError(
                f"Failed to start virsh: {e}",
                context={"vm": identity.name, "uri": self.uri},
            ) from e

        if not result.ok:
            context = {"vm": identity.name, "uri": self.uri, "returncode": result.returncode, "output": result.output}
            if _matches(result, _CONNECTION_FAILURE_MARKERS):
                raise BackendUnreachableError(f"Cannot reach libvirt at {self.uri}", context=context)
            raise StateMismatchError(f"virsh snapshot-revert failed for {identity.name}", context=context)

        await self._wait_running(identity)
        await self._check_vcpus(identity)

    async def domain_state(self, identity: VmIdentity) -> str:
        """Return the domain state as reported by virsh ("" if undefined).

        Raises:
            BackendUnreachableError: virsh could not be run or reach libvirtd
        """
        try:
            result = await run_command(
                self._virsh("domstate", identity.name),
                timeout=constants.STATE_QUERY_TIMEOUT_SECONDS,
                context_id=identity.name,
            )
        except TimeoutError as e:
            raise BackendUnreachableError(
                f"virsh domstate did not answer within {constants.STATE_QUERY_TIMEOUT_SECONDS}s",
                context={"vm": identity.name},
            ) from e
        except OSError as e:
            raise BackendUnreachableError(f"Failed to start virsh: {e}", context={"vm": identity.name}) from e
        if not result.ok:
            if _matches(result, _CONNECTION_FAILURE_MARKERS):
                raise BackendUnreachableError(f"Cannot reach libvirt at {self.uri}", context={"vm": identity.name})
            return ""
        return result.stdout.strip()

    async def _check_vcpus(self, identity: VmIdentity) -> None:
        """Warn when the running domain's vCPU count differs from configuration.

        Only reported: a query failure or an unexpected answer does not fail the reset.
        """
        try:
            result = await run_command(
                self._virsh("vcpucount", identity.name, "--active", "--live"),
                timeout=constants.STATE_QUERY_TIMEOUT_SECONDS,
                context_id=identity.name,
            )
        except OSError as e:
            logger.warning("vCPU count query failed", extra={"vm": identity.name, "error": str(e)})
            return
        try:
            vcpus = int(result.stdout.strip()) if result.ok else None
        except ValueError:
            vcpus = None
        if vcpus is None:
            logger.warning("vCPU count unavailable", extra={"vm": identity.name, "output": result.output})
        elif vcpus != identity.vcpu_count:
            logger.warning(
                "Reverted VM vCPU count differs from configuration",
                extra={"vm": identity.name, "vcpus": vcpus, "configured": identity.vcpu_count},
            )

    async def _wait_running(self, identity: VmIdentity) -> None:
        last_state = ""
        try:
            async with asyncio.timeout(self._running_timeout):
                while True:
                    last_state = await self.domain_state(identity)
                    if last_state == _RUNNING_STATE:
                        logger.debug("VM running after revert", extra={"vm": identity.name})
                        return
                    await asyncio.sleep(self._poll_interval)
        except TimeoutError as e:
            raise StateMismatchError(
                f"VM {identity.name} not running {self._running_timeout}s after revert (state={last_state or 'undefined'})",
                context={"vm": identity.name, "state": last_state},
            ) from e

    async def destroy(self, identity: VmIdentity) -> None:
        """Destroy (hard stop) the domain. Already stopped is success."""
        logger.info("Destroying VM", extra={"vm": identity.name, "uri": self.uri})
        try:
            result = await run_command(
                self._virsh("destroy", identity.name),
                timeout=self._destroy_timeout,
                context_id=identity.name,
            )
        except TimeoutError as e:
            raise TeardownTimeoutError(
                f"virsh destroy did not finish within {self._destroy_timeout}s",
                context={"vm": identity.name, "uri": self.uri},
            ) from e
        except OSError as e:
            raise TeardownUnreachableError(
                f"Failed to start virsh: {e}",
                context={"vm": identity.name, "uri": self.uri},
            ) from e

        if result.ok:
            return
        if _matches(result, _ALREADY_GONE_MARKERS):
            logger.info("VM already stopped", extra={"vm": identity.name, "output": result.output})
            return
        raise TeardownUnreachableError(
            f"virsh destroy failed for {identity.name}",
            context={"vm": identity.name, "uri": self.uri, "returncode": result.returncode, "output": result.output},
        )
