"""Checkpoint/restore backend over the Xen xl toolstack.

Reset:
    xl restore CHECKPOINT   (domain comes back unpaused)
    then `xl list VM` must show it running or blocked.
Destroy:
    xl destroy VM  ("invalid domain identifier" counts as success)
"""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING

import aiofiles.os

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

# xl/libxl diagnostics meaning the toolstack itself is unavailable
_CONNECTION_FAILURE_MARKERS = (
    "cannot init xl context",
    "could not obtain handle on privileged command interface",
    "cannot open libxc handle",
    "failed to open xenstore",
)

_ALREADY_GONE_MARKERS = ("invalid domain identifier",)


def _matches(result: CommandResult, markers: tuple[str, ...]) -> bool:
    output = result.output.lower()
    return any(marker in output for marker in markers)


def parse_xl_list(output: str, name: str) -> tuple[int, str] | None:
    """Extract (vcpus, state flags) for `name` from `xl list` output.

    Example output:
        Name                                        ID   Mem VCPUs      State   Time(s)
        winxp                                        5  2048     1     -b----       3.2

    Returns:
        (vcpus, state) or None if the domain is not listed
    """
    for line in output.splitlines():
        fields = line.split()
        if len(fields) >= 5 and fields[0] == name:
            try:
                return int(fields[3]), fields[4]
            except ValueError:
                return None
    return None


def is_running_state(state: str) -> bool:
    """Whether xl state flags describe a live, scheduled domain.

    r = running, b = blocked (idle); p/s/c/d = paused/shutdown/crashed/dying.
    """
    flags = set(state.replace("-", ""))
    return bool(flags & {"r", "b"}) and not flags & {"p", "s", "c", "d"}


class XlCheckpointBackend:
    """BackendAdapter restoring a Xen domain from a checkpoint file.

    Attributes:
        checkpoint: Saved domain image passed to `xl restore`
    """

    __slots__ = ("_command_timeout", "_destroy_timeout", "checkpoint")

    def __init__(
        self,
        checkpoint: Path = constants.DEFAULT_XEN_CHECKPOINT,
        *,
        command_timeout: float = constants.DEFAULT_COMMAND_TIMEOUT_SECONDS,
        destroy_timeout: float = constants.DEFAULT_TEARDOWN_TIMEOUT_SECONDS,
    ) -> None:
        self.checkpoint = Path(checkpoint)
        self._command_timeout = command_timeout
        self._destroy_timeout = destroy_timeout

    @property
    def kind(self) -> BackendKind:
        return BackendKind.CHECKPOINT_RESTORE

    async def reset(self, identity: VmIdentity) -> None:
        """Restore the domain from the checkpoint file and verify it runs."""
        context: dict[str, object] = {"vm": identity.name, "checkpoint": str(self.checkpoint)}
        if not await aiofiles.os.path.isfile(self.checkpoint):
            raise StateMismatchError(f"Checkpoint file not found: {self.checkpoint}", context=context)

        logger.info("Restoring VM from checkpoint", extra=context)
        try:
            result = await run_command(
                [constants.XL_BIN, "restore", str(self.checkpoint)],
                timeout=self._command_timeout,
                context_id=identity.name,
            )
        except TimeoutError as e:
            raise BackendUnreachableError(
                f"xl restore did not finish within {self._command_timeout}s", context=context
            ) from e
        except OSError as e:
            raise BackendUnreachableError(f"Failed to start xl: {e}", context=context) from e

        if not result.ok:
            context |= {"returncode": result.returncode, "output": result.output}
            if _matches(result, _CONNECTION_FAILURE_MARKERS):
                raise BackendUnreachableError("Cannot reach the Xen toolstack", context=context)
            raise StateMismatchError(f"xl restore failed for {identity.name}", context=context)

        await self._verify_running(identity)

    async def _verify_running(self, identity: VmIdentity) -> None:
        try:
            result = await run_command(
                [constants.XL_BIN, "list", identity.name],
                timeout=constants.STATE_QUERY_TIMEOUT_SECONDS,
                context_id=identity.name,
            )
        except (OSError, TimeoutError) as e:
            raise BackendUnreachableError(f"xl list failed: {e}", context={"vm": identity.name}) from e

        listed = parse_xl_list(result.stdout, identity.name) if result.ok else None
        if listed is None:
            raise StateMismatchError(
                f"VM {identity.name} not present after restore",
                context={"vm": identity.name, "output": result.output},
            )
        vcpus, state = listed
        if not is_running_state(state):
            raise StateMismatchError(
                f"VM {identity.name} not running after restore (state={state})",
                context={"vm": identity.name, "state": state},
            )
        if vcpus != identity.vcpu_count:
            logger.warning(
                "Restored VM vCPU count differs from configuration",
                extra={"vm": identity.name, "vcpus": vcpus, "configured": identity.vcpu_count},
            )

    async def destroy(self, identity: VmIdentity) -> None:
        """Destroy the domain. An unknown domain is success."""
        logger.info("Destroying VM", extra={"vm": identity.name})
        try:
            result = await run_command(
                [constants.XL_BIN, "destroy", identity.name],
                timeout=self._destroy_timeout,
                context_id=identity.name,
            )
        except TimeoutError as e:
            raise TeardownTimeoutError(
                f"xl destroy did not finish within {self._destroy_timeout}s",
                context={"vm": identity.name},
            ) from e
        except OSError as e:
            raise TeardownUnreachableError(f"Failed to start xl: {e}", context={"vm": identity.name}) from e

        if result.ok:
            return
        if _matches(result, _ALREADY_GONE_MARKERS):
            logger.info("VM already stopped", extra={"vm": identity.name, "output": result.output})
            return
        raise TeardownUnreachableError(
            f"xl destroy failed for {identity.name}",
            context={"vm": identity.name, "returncode": result.returncode, "output": result.output},
        )
