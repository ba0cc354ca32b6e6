"""Control-command execution utilities.

- run_command: run a hypervisor CLI (virsh, xl) to completion under a timeout
- log_task_exception: done-callback surfacing failures of abandoned tasks
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import TYPE_CHECKING

from vmi_harness._logging import get_logger
from vmi_harness.platform_utils import ProcessWrapper
from vmi_harness.resource_cleanup import cleanup_process

if TYPE_CHECKING:
    from collections.abc import Sequence

logger = get_logger(__name__)


@dataclass(frozen=True, slots=True)
class CommandResult:
    """Completed control command. Exit status is the only success signal."""

    argv: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def output(self) -> str:
        """stderr and stdout joined, for matching diagnostic messages."""
        return "\n".join(part for part in (self.stderr.strip(), self.stdout.strip()) if part)


async def run_command(
    argv: Sequence[str],
    *,
    timeout: float,
    context_id: str,
) -> CommandResult:
    """Run a command to completion and capture its output.

    On timeout or cancellation the child is terminated (SIGTERM, then
    SIGKILL) and reaped before the TimeoutError or CancelledError propagates,
    so no control command outlives its caller.

    Args:
        argv: Program and arguments (no shell).
        timeout: Seconds to wait for exit.
        context_id: VM name for log correlation.

    Returns:
        CommandResult with decoded stdout/stderr.

    Raises:
        OSError: The program could not be started (FileNotFoundError if missing).
        TimeoutError: The program did not exit within timeout.
    """
    command = tuple(argv)
    logger.debug("Running control command", extra={"context_id": context_id, "argv": command})

    proc = ProcessWrapper(
        await asyncio.create_subprocess_exec(
            *command,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    )
    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except TimeoutError:
        logger.warning(
            "Control command timed out",
            extra={"context_id": context_id, "argv": command, "timeout": timeout, "pid": proc.pid},
        )
        await cleanup_process(proc, name=" ".join(command[:2]), context_id=context_id)
        raise
    except asyncio.CancelledError:
        logger.warning(
            "Control command cancelled, stopping it",
            extra={"context_id": context_id, "argv": command, "pid": proc.pid},
        )
        await asyncio.shield(cleanup_process(proc, name=" ".join(command[:2]), context_id=context_id))
        raise

    result = CommandResult(
        argv=command,
        returncode=proc.returncode if proc.returncode is not None else -1,
        stdout=stdout.decode(errors="replace"),
        stderr=stderr.decode(errors="replace"),
    )
    logger.debug(
        "Control command finished",
        extra={"context_id": context_id, "argv": command, "returncode": result.returncode},
    )
    return result


def log_task_exception(task: asyncio.Task[object]) -> None:
    """Log the exception of a task nobody awaits any more.

    Attached to abandoned test bodies so a failure after the overall
    deadline still shows up in the log instead of "exception never retrieved".
    """
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.warning(
            "Abandoned task failed",
            extra={"task_name": task.get_name()},
            exc_info=exc,
        )
