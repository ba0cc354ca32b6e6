"""Tests for VirshSnapshotBackend.

virsh is never executed: run_command is patched and fed canned results
taken from real virsh diagnostics.
"""

import logging
from unittest.mock import AsyncMock, patch

import pytest

from vmi_harness.backend import BackendAdapter
from vmi_harness.exceptions import (
    BackendUnreachableError,
    StateMismatchError,
    TeardownTimeoutError,
    TeardownUnreachableError,
)
from vmi_harness.models import BackendKind, VmIdentity
from vmi_harness.snapshot_backend import VirshSnapshotBackend
from vmi_harness.subprocess_utils import CommandResult

URI = "qemu:///system"


def ok(stdout: str = "") -> CommandResult:
    return CommandResult(argv=("virsh",), returncode=0, stdout=stdout, stderr="")


def failed(stderr: str) -> CommandResult:
    return CommandResult(argv=("virsh",), returncode=1, stdout="", stderr=stderr)


@pytest.fixture
def snapshot_backend() -> VirshSnapshotBackend:
    return VirshSnapshotBackend(URI, running_timeout=0.2, poll_interval=0.01)


class TestReset:
    def test_is_backend_adapter(self, snapshot_backend: VirshSnapshotBackend) -> None:
        assert isinstance(snapshot_backend, BackendAdapter)
        assert snapshot_backend.kind == BackendKind.SNAPSHOT_REVERT

    async def test_revert_then_wait_running(
        self, snapshot_backend: VirshSnapshotBackend, identity: VmIdentity
    ) -> None:
        run = AsyncMock(side_effect=[ok("Domain snapshot reverted"), ok("paused\n"), ok("running\n"), ok("1\n")])
        with patch("vmi_harness.snapshot_backend.run_command", run):
            await snapshot_backend.reset(identity)

        argvs = [call.args[0] for call in run.await_args_list]
        assert argvs[0] == ["virsh", f"--connect={URI}", "snapshot-revert", "winxp", "--current", "--running"]
        assert argvs[1] == ["virsh", f"--connect={URI}", "domstate", "winxp"]
        assert argvs[3] == ["virsh", f"--connect={URI}", "vcpucount", "winxp", "--active", "--live"]
        assert len(argvs) == 4

    async def test_connection_failure(self, snapshot_backend: VirshSnapshotBackend, identity: VmIdentity) -> None:
        run = AsyncMock(
            return_value=failed(
                "error: failed to connect to the hypervisor\n"
                "error: Failed to connect socket to '/var/run/libvirt/libvirt-sock': No such file or directory"
            )
        )
        with patch("vmi_harness.snapshot_backend.run_command", run), pytest.raises(BackendUnreachableError):
            await snapshot_backend.reset(identity)

    async def test_missing_binary(self, snapshot_backend: VirshSnapshotBackend, identity: VmIdentity) -> None:
        run = AsyncMock(side_effect=FileNotFoundError("virsh"))
        with (
            patch("vmi_harness.snapshot_backend.run_command", run),
            pytest.raises(BackendUnreachableError, match="Failed to start virsh"),
        ):
            await snapshot_backend.reset(identity)

    async def test_revert_hangs(self, snapshot_backend: VirshSnapshotBackend, identity: VmIdentity) -> None:
        run = AsyncMock(side_effect=TimeoutError())
        with (
            patch("vmi_harness.snapshot_backend.run_command", run),
            pytest.raises(BackendUnreachableError, match="did not finish"),
        ):
            await snapshot_backend.reset(identity)

    async def test_domain_state_hangs(self, snapshot_backend: VirshSnapshotBackend, identity: VmIdentity) -> None:
        run = AsyncMock(side_effect=TimeoutError())
        with (
            patch("vmi_harness.snapshot_backend.run_command", run),
            pytest.raises(BackendUnreachableError, match="did not answer"),
        ):
            await snapshot_backend.domain_state(identity)

    async def test_vcpu_mismatch_only_warns(
        self, snapshot_backend: VirshSnapshotBackend, identity: VmIdentity, caplog: pytest.LogCaptureFixture
    ) -> None:
        run = AsyncMock(side_effect=[ok(), ok("running\n"), ok("4\n")])
        with (
            patch("vmi_harness.snapshot_backend.run_command", run),
            caplog.at_level(logging.WARNING, logger="vmi_harness"),
        ):
            await snapshot_backend.reset(identity)

        assert "vCPU count differs" in caplog.text

    async def test_vcpu_query_failure_only_warns(
        self, snapshot_backend: VirshSnapshotBackend, identity: VmIdentity, caplog: pytest.LogCaptureFixture
    ) -> None:
        run = AsyncMock(side_effect=[ok(), ok("running\n"), failed("error: unsupported flags")])
        with (
            patch("vmi_harness.snapshot_backend.run_command", run),
            caplog.at_level(logging.WARNING, logger="vmi_harness"),
        ):
            await snapshot_backend.reset(identity)

        assert "vCPU count unavailable" in caplog.text

    async def test_no_current_snapshot(self, snapshot_backend: VirshSnapshotBackend, identity: VmIdentity) -> None:
        run = AsyncMock(return_value=failed("error: the domain does not have a current snapshot"))
        with patch("vmi_harness.snapshot_backend.run_command", run), pytest.raises(StateMismatchError) as exc_info:
            await snapshot_backend.reset(identity)
        assert exc_info.value.context["returncode"] == 1

    async def test_never_running(self, snapshot_backend: VirshSnapshotBackend, identity: VmIdentity) -> None:
        async def fake_run(argv: list[str], **_kwargs: object) -> CommandResult:
            return ok("shut off\n") if "domstate" in argv else ok()

        with (
            patch("vmi_harness.snapshot_backend.run_command", fake_run),
            pytest.raises(StateMismatchError, match="shut off"),
        ):
            await snapshot_backend.reset(identity)

    async def test_domain_state_undefined(self, snapshot_backend: VirshSnapshotBackend, identity: VmIdentity) -> None:
        run = AsyncMock(return_value=failed("error: failed to get domain 'winxp'"))
        with patch("vmi_harness.snapshot_backend.run_command", run):
            assert await snapshot_backend.domain_state(identity) == ""


class TestDestroy:
    async def test_destroy(self, snapshot_backend: VirshSnapshotBackend, identity: VmIdentity) -> None:
        run = AsyncMock(return_value=ok("Domain 'winxp' destroyed"))
        with patch("vmi_harness.snapshot_backend.run_command", run):
            await snapshot_backend.destroy(identity)

        assert run.await_args is not None
        assert run.await_args.args[0] == ["virsh", f"--connect={URI}", "destroy", "winxp"]

    @pytest.mark.parametrize(
        "stderr",
        [
            "error: Failed to destroy domain 'winxp'\nerror: Requested operation is not valid: domain is not running",
            "error: failed to get domain 'winxp'",
        ],
    )
    async def test_already_stopped_is_success(
        self, snapshot_backend: VirshSnapshotBackend, identity: VmIdentity, stderr: str
    ) -> None:
        with patch("vmi_harness.snapshot_backend.run_command", AsyncMock(return_value=failed(stderr))):
            await snapshot_backend.destroy(identity)

    async def test_destroy_failure(self, snapshot_backend: VirshSnapshotBackend, identity: VmIdentity) -> None:
        run = AsyncMock(return_value=failed("error: failed to connect to the hypervisor"))
        with patch("vmi_harness.snapshot_backend.run_command", run), pytest.raises(TeardownUnreachableError):
            await snapshot_backend.destroy(identity)

    async def test_destroy_timeout(self, snapshot_backend: VirshSnapshotBackend, identity: VmIdentity) -> None:
        run = AsyncMock(side_effect=TimeoutError())
        with (
            patch("vmi_harness.snapshot_backend.run_command", run),
            pytest.raises(TeardownTimeoutError, match="did not finish"),
        ):
            await snapshot_backend.destroy(identity)
