"""Exception hierarchy for vmi-harness.

All exceptions inherit from HarnessError.

Hierarchy:
    HarnessError (base)
    ├── InfrastructureError (harness failed, not the behaviour under test)
    │   ├── SetupError
    │   │   ├── BackendUnreachableError   ← control plane could not be reached
    │   │   └── StateMismatchError        ← VM not in the expected state after reset
    │   ├── TeardownError
    │   │   ├── TeardownUnreachableError  ← destroy command failed
    │   │   └── TeardownTimeoutError      ← destroy exceeded the teardown bound
    │   └── ChannelInitError              ← introspection channel could not be opened
    ├── SessionStateError                 ← invalid lifecycle transition
    ├── ChannelClosedError                ← introspection channel closed for good
    └── EventTimeoutError                 ← expected event missing (also an AssertionError)

An already stopped or already removed VM on destroy is not an error.
"""

from __future__ import annotations

from typing import Any


class HarnessError(Exception):
    """Base exception for all harness errors with structured context.

    Attributes:
        message: Human-readable error message
        context: Structured error context for logging/debugging
    """

    def __init__(self, message: str, context: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}


# =============================================================================
# Infrastructure Errors
# =============================================================================


class InfrastructureError(HarnessError):
    """Marker base for harness failures.

    A test report keeps these apart from assertion failures raised by a
    test body: they mean the harness or the hypervisor misbehaved, not the
    introspection behaviour being tested.
    """


class SetupError(InfrastructureError):
    """Bringing the VM to its known-good state failed.

    Fatal to the current test. A session that raised this never reached
    Ready, so no teardown is attempted for it.
    """


class BackendUnreachableError(SetupError):
    """Hypervisor control channel could not be reached.

    Raised when the control command cannot be started (binary missing,
    permission denied) or reports that it cannot connect to the daemon
    or toolstack.
    """


class StateMismatchError(SetupError):
    """VM is not in the expected state after a reset.

    Raised when the revert/restore command fails for a reason other than
    connectivity, or when the VM is not running once the command returns.
    """


class TeardownError(InfrastructureError):
    """Destroying the VM failed.

    Recorded on the test result. Never masks the outcome of the test body.
    """


class TeardownUnreachableError(TeardownError):
    """Destroy command could not be run or reported a failure."""


class TeardownTimeoutError(TeardownError):
    """Destroy command did not finish within the teardown bound.

    The command process is killed; the VM is left in an unknown state.
    """


class ChannelInitError(InfrastructureError):
    """The introspection event channel could not be opened after setup."""


# =============================================================================
# Lifecycle and Channel Errors
# =============================================================================


class SessionStateError(HarnessError):
    """Invalid session lifecycle transition.

    Sessions are single-use: a session cannot be reset twice, restarted
    after teardown, or torn down before it was set up.
    """


class ChannelClosedError(HarnessError):
    """The introspection event channel reported permanent closure.

    Raised by channel implementations. The bounded waiter turns it into a
    ChannelClosed outcome; SessionHandle.expect_event() re-raises it.
    """


class EventTimeoutError(HarnessError, AssertionError):
    """No introspection event arrived within the wait timeout.

    Subclasses AssertionError so that a test body using
    SessionHandle.expect_event() is reported as a failed test, not as a
    harness error.
    """
