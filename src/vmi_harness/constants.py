"""Constants for vmi-harness configuration and limits."""

from pathlib import Path
from typing import Final

# ============================================================================
# VM Identity Defaults
# ============================================================================

DEFAULT_VM_NAME: Final[str] = "winxp"
"""VM instance operated on when TEST_VM is not set."""

DEFAULT_VCPU_COUNT: Final[int] = 1
"""Configured vCPU count of the test VM."""

# ============================================================================
# Timeouts
# ============================================================================

DEFAULT_TEST_TIMEOUT_SECONDS: Final[float] = 20.0
"""Overall bound on a single test body."""

MAX_TEST_TIMEOUT_SECONDS: Final[float] = 3600.0
"""Upper limit accepted for the overall test timeout."""

DEFAULT_EVENT_TIMEOUT_MS: Final[int] = 5000
"""Default bound on a single event wait, in milliseconds."""

DEFAULT_TEARDOWN_TIMEOUT_SECONDS: Final[float] = 60.0
"""Bound on one destroy() call. A wedged hypervisor command is killed after this."""

DEFAULT_COMMAND_TIMEOUT_SECONDS: Final[float] = 120.0
"""Bound on a single reset command (snapshot revert or checkpoint restore)."""

RUNNING_STATE_TIMEOUT_SECONDS: Final[float] = 30.0
"""How long a reset waits for the VM to report the running state."""

RUNNING_STATE_POLL_INTERVAL_SECONDS: Final[float] = 0.2
"""Delay between VM state queries while waiting for the running state."""

STATE_QUERY_TIMEOUT_SECONDS: Final[float] = 10.0
"""Bound on a single VM state query command."""

# ============================================================================
# Process Cleanup
# ============================================================================

PROCESS_TERM_TIMEOUT_SECONDS: Final[float] = 3.0
"""Grace period after SIGTERM before a timed-out control command gets SIGKILL."""

PROCESS_KILL_TIMEOUT_SECONDS: Final[float] = 2.0
"""Wait after SIGKILL before giving up on reaping a control command."""

TEARDOWN_KILL_GRACE_SECONDS: Final[float] = PROCESS_TERM_TIMEOUT_SECONDS + PROCESS_KILL_TIMEOUT_SECONDS
"""Extra time the session allows a destroy past the adapter's own bound, so a hung command is killed first."""

# ============================================================================
# Setup Retry (Driver level, fresh session per attempt)
# ============================================================================

MAX_SETUP_RETRIES: Final[int] = 10
"""Upper limit for TEST_SETUP_RETRIES."""

SETUP_RETRY_MIN_SECONDS: Final[float] = 0.5
"""Minimum backoff between setup attempts."""

SETUP_RETRY_MAX_SECONDS: Final[float] = 5.0
"""Maximum backoff between setup attempts."""

# ============================================================================
# Backend Defaults
# ============================================================================

DEFAULT_VIRSH_URI: Final[str] = "qemu:///system"
"""libvirt connection URI for the snapshot/revert backend."""

DEFAULT_KVMI_SOCKET: Final[Path] = Path("/tmp/introspector")
"""KVMI introspection socket (handed to the event channel factory)."""

DEFAULT_XEN_CHECKPOINT: Final[Path] = Path("/tmp/xen-checkpoint")
"""Checkpoint file for the checkpoint/restore backend."""

VIRSH_BIN: Final[str] = "virsh"
XL_BIN: Final[str] = "xl"
