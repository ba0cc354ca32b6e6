"""PID-reuse safe handle on a hypervisor control command.

virsh/xl commands run as short-lived children with captured output. When
one hangs (a wedged libvirtd, an xl waiting on a stuck domain) or its
caller is cancelled, it is stopped through psutil, which refuses to signal
a recycled PID.
"""

import asyncio
import contextlib
from collections.abc import Callable

import psutil


class ProcessWrapper:
    """A control-command child: output capture plus safe signalling."""

    def __init__(self, async_proc: asyncio.subprocess.Process) -> None:
        self.async_proc = async_proc
        self.psutil_proc: psutil.Process | None = None

        if async_proc.pid:
            with contextlib.suppress(psutil.NoSuchProcess, psutil.AccessDenied):
                self.psutil_proc = psutil.Process(async_proc.pid)

    @property
    def pid(self) -> int | None:
        return self.async_proc.pid

    @property
    def returncode(self) -> int | None:
        """Exit status (None while running)."""
        return self.async_proc.returncode

    async def is_running(self) -> bool:
        """Check if the child is still running (PID-reuse safe).

        The psutil call runs in a worker thread so a hung /proc read cannot
        block the event loop.
        """
        if not self.psutil_proc:
            return self.async_proc.returncode is None

        try:
            return await asyncio.to_thread(self.psutil_proc.is_running)
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            return False

    async def communicate(self) -> tuple[bytes, bytes]:
        """Wait for exit and return (stdout, stderr)."""
        return await self.async_proc.communicate()

    async def terminate(self) -> None:
        """Send SIGTERM."""
        await self._signal(psutil.Process.terminate, self.async_proc.terminate)

    async def kill(self) -> None:
        """Send SIGKILL."""
        await self._signal(psutil.Process.kill, self.async_proc.kill)

    async def _signal(self, via_psutil: Callable[[psutil.Process], None], fallback: Callable[[], None]) -> None:
        if self.psutil_proc and await self.is_running():
            with contextlib.suppress(psutil.NoSuchProcess, psutil.AccessDenied):
                await asyncio.to_thread(via_psutil, self.psutil_proc)
        else:
            fallback()

    async def wait_with_timeout(self, timeout: float) -> int:
        """Reap the child, draining its pipes so it cannot block on a full pipe.

        Raises:
            TimeoutError: Child did not exit within timeout
        """
        await asyncio.wait_for(self.async_proc.communicate(), timeout=timeout)
        return self.returncode  # type: ignore[return-value]
