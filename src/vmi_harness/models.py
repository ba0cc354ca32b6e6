"""Data models for vmi-harness."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, ClassVar, Final

from pydantic import BaseModel, ConfigDict, Field


class VmIdentity(BaseModel):
    """The VM a session operates on. Immutable for the session's lifetime."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str = Field(min_length=1, description="VM instance name (libvirt domain / Xen domain)")
    vcpu_count: int = Field(ge=1, description="Configured virtual CPU count")


class BackendKind(str, Enum):
    """Hypervisor family, selecting the state-reset protocol."""

    SNAPSHOT_REVERT = "snapshot-revert"
    CHECKPOINT_RESTORE = "checkpoint-restore"


class SessionState(str, Enum):
    """Lifecycle state of a VmSession."""

    UNINITIALIZED = "uninitialized"
    READY = "ready"
    RUNNING = "running"
    TEARING_DOWN = "tearing_down"
    CLOSED = "closed"
    FAILED = "failed"


# Every path out of READY goes through TEARING_DOWN. READY -> TEARING_DOWN
# covers a failure to open the event channel before the body starts.
VALID_STATE_TRANSITIONS: Final[dict[SessionState, frozenset[SessionState]]] = {
    SessionState.UNINITIALIZED: frozenset({SessionState.READY, SessionState.FAILED}),
    SessionState.READY: frozenset({SessionState.RUNNING, SessionState.TEARING_DOWN}),
    SessionState.RUNNING: frozenset({SessionState.TEARING_DOWN}),
    SessionState.TEARING_DOWN: frozenset({SessionState.CLOSED, SessionState.FAILED}),
    SessionState.CLOSED: frozenset(),
    SessionState.FAILED: frozenset(),
}

TERMINAL_STATES: Final[frozenset[SessionState]] = frozenset({SessionState.CLOSED, SessionState.FAILED})


# =============================================================================
# Event Outcomes
# =============================================================================


@dataclass(frozen=True, slots=True)
class Received:
    """An introspection event arrived before the deadline."""

    event: Any


@dataclass(frozen=True, slots=True)
class TimedOut:
    """The deadline passed without an event. An expected, assertable outcome."""

    timeout_seconds: float


@dataclass(frozen=True, slots=True)
class ChannelClosed:
    """The channel closed for good. Fatal to the current test."""

    reason: str = ""


EventOutcome = Received | TimedOut | ChannelClosed


# =============================================================================
# Test Results
# =============================================================================


class TestStatus(str, Enum):
    """Outcome of one test run."""

    __test__ = False

    PASSED = "passed"
    FAILED = "failed"  # assertion failure in the test body
    ERROR = "error"  # any other exception in the test body, or channel init failure
    TIMED_OUT = "timed_out"
    SETUP_FAILED = "setup_failed"


class TestResult(BaseModel):
    """Result of running one test body inside a VM session.

    Infrastructure problems (setup_error, teardown_error) are reported apart
    from the body's own outcome (status, error) so a report can tell
    "the harness failed" from "the behaviour under test was wrong".
    """

    __test__: ClassVar[bool] = False

    model_config = ConfigDict(frozen=True)

    name: str = Field(description="Registered test name")
    status: TestStatus
    duration_ms: int = Field(ge=0, description="Wall time from setup start to teardown end")
    error: str | None = Field(default=None, description="Test body failure message")
    error_type: str | None = Field(default=None, description="Exception class of the test body failure")
    setup_error: str | None = Field(default=None, description="Setup failure message (status=setup_failed)")
    setup_attempts: int = Field(default=1, ge=1, description="Fresh sessions tried before setup succeeded/failed")
    teardown_error: str | None = Field(default=None, description="Teardown failure, attached in every outcome")
    session_state: SessionState = Field(description="Final state of the session")

    @property
    def passed(self) -> bool:
        """Whether the test body passed (teardown problems are annotations)."""
        return self.status == TestStatus.PASSED

    @property
    def clean(self) -> bool:
        """Whether the test passed and the VM was torn down cleanly."""
        return self.passed and self.teardown_error is None
