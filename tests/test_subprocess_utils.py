"""Tests for run_command, process cleanup and abandoned-task logging.

Uses real short-lived processes (sh, sleep).
"""

import asyncio
import logging
import time
from pathlib import Path

import psutil
import pytest

from vmi_harness.platform_utils import ProcessWrapper
from vmi_harness.resource_cleanup import cleanup_process
from vmi_harness.subprocess_utils import CommandResult, log_task_exception, run_command


class TestRunCommand:
    async def test_captures_output_and_status(self) -> None:
        result = await run_command(
            ["sh", "-c", "echo out; echo err >&2; exit 3"],
            timeout=5,
            context_id="winxp",
        )

        assert result.returncode == 3
        assert not result.ok
        assert result.stdout == "out\n"
        assert result.stderr == "err\n"
        assert result.output == "err\nout"

    async def test_success(self) -> None:
        result = await run_command(["true"], timeout=5, context_id="winxp")
        assert result.ok
        assert result.argv == ("true",)

    async def test_missing_binary(self) -> None:
        with pytest.raises(FileNotFoundError):
            await run_command(["vmi-harness-no-such-binary"], timeout=5, context_id="winxp")

    async def test_timeout_kills_child(self) -> None:
        start = time.monotonic()
        with pytest.raises(TimeoutError):
            await run_command(["sleep", "30"], timeout=0.1, context_id="winxp")
        assert time.monotonic() - start < 10

    async def test_cancellation_kills_child(self, tmp_path: Path) -> None:
        pid_file = tmp_path / "child.pid"
        task = asyncio.create_task(
            run_command(["sh", "-c", f"echo $$ > {pid_file}; exec sleep 30"], timeout=30, context_id="winxp")
        )
        async with asyncio.timeout(5):
            while not pid_file.exists() or not pid_file.read_text().strip():
                await asyncio.sleep(0.01)

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert not psutil.pid_exists(int(pid_file.read_text()))


class TestCommandResult:
    def test_output_skips_empty_streams(self) -> None:
        assert CommandResult(argv=("x",), returncode=0, stdout=" hi \n", stderr="").output == "hi"


class TestCleanupProcess:
    async def test_none_is_noop(self) -> None:
        assert await cleanup_process(None, name="virsh", context_id="winxp") is True

    async def test_already_exited(self) -> None:
        proc = ProcessWrapper(await asyncio.create_subprocess_exec("true"))
        await proc.wait_with_timeout(5)
        assert await cleanup_process(proc, name="true", context_id="winxp") is True

    async def test_terminates_running_process(self) -> None:
        proc = ProcessWrapper(
            await asyncio.create_subprocess_exec(
                "sleep",
                "30",
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        )
        assert await cleanup_process(proc, name="sleep", context_id="winxp") is True
        assert proc.returncode is not None
        assert not await proc.is_running()


class TestLogTaskException:
    async def test_logs_failure(self, caplog: pytest.LogCaptureFixture) -> None:
        async def boom() -> None:
            raise RuntimeError("late failure")

        task = asyncio.create_task(boom(), name="vmi-test-late")
        await asyncio.wait({task})

        with caplog.at_level(logging.WARNING, logger="vmi_harness"):
            log_task_exception(task)

        assert "Abandoned task failed" in caplog.text

    async def test_ignores_cancelled(self, caplog: pytest.LogCaptureFixture) -> None:
        task = asyncio.create_task(asyncio.sleep(30))
        task.cancel()
        await asyncio.wait({task})

        with caplog.at_level(logging.WARNING, logger="vmi_harness"):
            log_task_exception(task)

        assert caplog.text == ""
