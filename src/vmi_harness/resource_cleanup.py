"""Cleanup of control-command processes that outlived their bound.

Cleanup never raises: it logs and reports success as a bool, because it
runs on error paths where the original failure must stay visible.
"""

from vmi_harness import constants
from vmi_harness._logging import get_logger
from vmi_harness.platform_utils import ProcessWrapper

logger = get_logger(__name__)


async def cleanup_process(
    proc: ProcessWrapper | None,
    name: str,
    context_id: str,
    term_timeout: float = constants.PROCESS_TERM_TIMEOUT_SECONDS,
    kill_timeout: float = constants.PROCESS_KILL_TIMEOUT_SECONDS,
) -> bool:
    """Stop a child process (SIGTERM, then SIGKILL) and reap it.

    Args:
        proc: Process to stop (None is a no-op)
        name: Command name for logging (e.g. "virsh destroy")
        context_id: VM name for log correlation
        term_timeout: Seconds to wait after SIGTERM before SIGKILL
        kill_timeout: Seconds to wait after SIGKILL before giving up

    Returns:
        True if the process is gone, False if it could not be reaped
    """
    if proc is None:
        return True

    try:
        if proc.returncode is not None:
            return True

        logger.debug(f"Sending SIGTERM to {name}", extra={"context_id": context_id})
        await proc.terminate()

        try:
            await proc.wait_with_timeout(timeout=term_timeout)
            return True
        except TimeoutError:
            logger.warning(
                f"{name} didn't respond to SIGTERM, force killing",
                extra={"context_id": context_id, "term_timeout": term_timeout},
            )

        await proc.kill()

        try:
            await proc.wait_with_timeout(timeout=kill_timeout)
            logger.warning(f"{name} force killed (SIGKILL)", extra={"context_id": context_id})
            return True
        except TimeoutError:
            logger.error(
                f"{name} didn't respond to SIGKILL within timeout",
                extra={"context_id": context_id, "kill_timeout": kill_timeout, "pid": proc.pid},
            )
            return False

    except ProcessLookupError:
        return True

    except OSError as e:
        logger.error(
            f"{name} cleanup error",
            extra={"context_id": context_id, "error": str(e), "error_type": type(e).__name__},
            exc_info=True,
        )
        return False
