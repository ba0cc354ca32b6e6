"""VmSession - one test's exclusive ownership window over a VM.

Lifecycle:
    UNINITIALIZED ──reset ok──▶ READY ──body starts──▶ RUNNING
          │                       │                       │
      reset fails                 └──────────┬────────────┘
          ▼                                  ▼
        FAILED                          TEARING_DOWN ──destroy ok──▶ CLOSED
                                             └────destroy fails───▶ FAILED

Once READY has been entered, destroy() runs exactly once, whatever ends the
test: normal return, exception, overall timeout or cancellation. A session
that never reached READY performs no teardown.

Example:
    ```python
    async with VmSession(backend, identity, event_timeout=5.0) as session:
        handle = await session.start()
        outcome = await handle.await_event()
    # destroy() has run here; session.teardown_error holds any failure
    ```

Sessions are single-use and single-writer: callers must not drive one
session from several tasks. The runner serialises sessions per VM name.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any, Self

from vmi_harness import constants
from vmi_harness._logging import get_logger
from vmi_harness.event_channel import open_null_channel
from vmi_harness.exceptions import (
    BackendUnreachableError,
    ChannelClosedError,
    ChannelInitError,
    EventTimeoutError,
    SessionStateError,
    SetupError,
    TeardownError,
    TeardownTimeoutError,
    TeardownUnreachableError,
)
from vmi_harness.models import (
    VALID_STATE_TRANSITIONS,
    ChannelClosed,
    EventOutcome,
    Received,
    SessionState,
    TimedOut,
    VmIdentity,
)
from vmi_harness.waiter import BoundedWaiter

if TYPE_CHECKING:
    from vmi_harness.backend import BackendAdapter
    from vmi_harness.deadline import Deadline
    from vmi_harness.event_channel import ChannelFactory, EventChannel

logger = get_logger(__name__)


class SessionHandle:
    """What a test body gets: the VM identity and bounded event waits.

    Deliberately exposes no reset/destroy: the lifecycle belongs to the
    session, not to the test.
    """

    __slots__ = ("_deadline", "_identity", "_loop", "_waiter")

    def __init__(
        self,
        identity: VmIdentity,
        waiter: BoundedWaiter,
        loop: asyncio.AbstractEventLoop,
        deadline: Deadline | None = None,
    ) -> None:
        self._identity = identity
        self._waiter = waiter
        self._loop = loop
        self._deadline = deadline

    @property
    def identity(self) -> VmIdentity:
        """The VM under test (read-only)."""
        return self._identity

    @property
    def event_timeout(self) -> float:
        """Default event-wait timeout in seconds."""
        return self._waiter.default_timeout

    @property
    def remaining(self) -> float | None:
        """Seconds left before the overall test deadline (None if unbounded)."""
        return None if self._deadline is None else self._deadline.remaining()

    async def await_event(self, timeout: float | None = None) -> EventOutcome:
        """Wait for the next introspection event.

        Args:
            timeout: Seconds to wait. Defaults to the configured event timeout.

        Returns:
            Received(event), TimedOut or ChannelClosed.
        """
        effective = self._waiter.default_timeout if timeout is None else timeout
        remaining = self.remaining
        if remaining is not None and effective > remaining:
            # The overall deadline will end the test first
            logger.debug(
                "Event wait outlasts the overall test deadline",
                extra={"vm": self._identity.name, "timeout": effective, "remaining": remaining},
            )
        return await self._waiter.await_event(effective)

    async def expect_event(self, timeout: float | None = None) -> Any:
        """Wait for the next event and return its payload.

        Raises:
            EventTimeoutError: No event arrived in time (reported as a test failure)
            ChannelClosedError: The introspection channel died
        """
        outcome = await self.await_event(timeout)
        match outcome:
            case Received(event=event):
                return event
            case TimedOut(timeout_seconds=waited):
                raise EventTimeoutError(
                    f"No introspection event within {waited}s",
                    context={"vm": self._identity.name, "timeout_seconds": waited},
                )
            case ChannelClosed(reason=reason):
                raise ChannelClosedError(f"Introspection channel closed: {reason}", context={"vm": self._identity.name})

    def wait_event_blocking(self, timeout: float | None = None) -> EventOutcome:
        """await_event() for synchronous test bodies running in a worker thread.

        Raises:
            RuntimeError: Called from the event loop thread (would deadlock)
        """
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is self._loop:
            raise RuntimeError("wait_event_blocking() called from the event loop; use await_event()")
        return asyncio.run_coroutine_threadsafe(self.await_event(timeout), self._loop).result()


class VmSession:
    """Drives one backend adapter through acquire → test → guaranteed release.

    Attributes:
        identity: The VM this session owns.
        state: Current lifecycle state.
        teardown_error: Failure of destroy(), if any (never raised).
    """

    def __init__(
        self,
        backend: BackendAdapter,
        identity: VmIdentity,
        *,
        event_timeout: float = constants.DEFAULT_EVENT_TIMEOUT_MS / 1000,
        channel_factory: ChannelFactory | None = None,
        teardown_timeout: float = constants.DEFAULT_TEARDOWN_TIMEOUT_SECONDS,
        teardown_grace: float = constants.TEARDOWN_KILL_GRACE_SECONDS,
    ) -> None:
        self._backend = backend
        self._identity = identity
        self._event_timeout = event_timeout
        self._channel_factory = channel_factory or open_null_channel
        self._teardown_timeout = teardown_timeout
        self._teardown_grace = teardown_grace
        self._state = SessionState.UNINITIALIZED
        self._reached_ready = False
        self._channel: EventChannel | None = None
        self._teardown_task: asyncio.Task[None] | None = None
        self._teardown_error: TeardownError | None = None

    # -------------------------------------------------------------------------
    # Properties
    # -------------------------------------------------------------------------

    @property
    def identity(self) -> VmIdentity:
        return self._identity

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def teardown_error(self) -> TeardownError | None:
        return self._teardown_error

    # -------------------------------------------------------------------------
    # State machine
    # -------------------------------------------------------------------------

    def _transition(self, new_state: SessionState) -> None:
        """Move to new_state, rejecting transitions the lifecycle does not allow.

        Raises:
            SessionStateError: Transition not allowed from the current state
        """
        allowed = VALID_STATE_TRANSITIONS[self._state]
        if new_state not in allowed:
            raise SessionStateError(
                f"Invalid session transition: {self._state.value} -> {new_state.value}",
                context={
                    "vm": self._identity.name,
                    "current_state": self._state.value,
                    "target_state": new_state.value,
                    "allowed_transitions": sorted(s.value for s in allowed),
                },
            )
        old_state = self._state
        self._state = new_state
        logger.debug(
            "Session state transition",
            extra={"vm": self._identity.name, "old_state": old_state.value, "new_state": new_state.value},
        )

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def setup(self) -> None:
        """Reset the VM to its known-good state (UNINITIALIZED → READY).

        Raises:
            SessionStateError: Session already set up (sessions are single-use)
            SetupError: Reset failed; the session is FAILED and needs no teardown
                (an unexpected adapter exception arrives as BackendUnreachableError)
        """
        if self._state is not SessionState.UNINITIALIZED:
            raise SessionStateError(
                f"Session already used (state={self._state.value})",
                context={"vm": self._identity.name, "current_state": self._state.value},
            )
        try:
            await self._backend.reset(self._identity)
        except SetupError as e:
            logger.error(
                "VM setup failed",
                extra={"vm": self._identity.name, "error": e.message, "error_type": type(e).__name__},
            )
            self._transition(SessionState.FAILED)
            raise
        except Exception as e:
            error = BackendUnreachableError(
                f"reset() failed: {e}",
                context={"vm": self._identity.name, "error_type": type(e).__name__},
            )
            logger.error(
                "VM setup failed",
                extra={"vm": self._identity.name, "error": error.message, "error_type": type(e).__name__},
            )
            self._transition(SessionState.FAILED)
            raise error from e
        except BaseException:
            # Reset interrupted: VM state unknown, but READY was never reached
            self._transition(SessionState.FAILED)
            raise
        self._transition(SessionState.READY)
        self._reached_ready = True

    async def start(self, deadline: Deadline | None = None) -> SessionHandle:
        """Open the event channel and hand control to the test body (READY → RUNNING).

        Args:
            deadline: Overall test deadline, exposed to the body for clamping waits.

        Raises:
            SessionStateError: Session is not READY
            ChannelInitError: The channel factory failed; the session stays READY
                and still owes a teardown
        """
        if self._state is not SessionState.READY:
            raise SessionStateError(
                f"Session not ready (state={self._state.value})",
                context={"vm": self._identity.name, "current_state": self._state.value},
            )
        try:
            self._channel = await self._channel_factory(self._identity)
        except Exception as e:
            raise ChannelInitError(
                f"Failed to open introspection channel: {e}",
                context={"vm": self._identity.name, "error_type": type(e).__name__},
            ) from e

        waiter = BoundedWaiter(self._channel, self._event_timeout)
        self._transition(SessionState.RUNNING)
        return SessionHandle(self._identity, waiter, asyncio.get_running_loop(), deadline)

    async def teardown(self) -> TeardownError | None:
        """Destroy the VM if this session ever reached READY. Idempotent.

        Never raises a TeardownError: the failure is recorded on the session
        and returned. If the caller is cancelled, the in-flight destroy still
        runs to completion before the cancellation propagates.

        Returns:
            The teardown failure, or None.
        """
        if not self._reached_ready:
            return None
        if self._teardown_task is None:
            self._teardown_task = asyncio.create_task(
                self._run_teardown(),
                name=f"vmi-teardown-{self._identity.name}",
            )
        try:
            await asyncio.shield(self._teardown_task)
        except asyncio.CancelledError:
            await asyncio.wait({self._teardown_task})
            raise
        return self._teardown_error

    async def _run_teardown(self) -> None:
        self._transition(SessionState.TEARING_DOWN)
        await self._close_channel()

        error: TeardownError | None = None
        try:
            # Adapters bound their destroy command at teardown_timeout; the grace covers killing it
            async with asyncio.timeout(self._teardown_timeout + self._teardown_grace):
                await self._backend.destroy(self._identity)
        except TeardownError as e:
            error = e
        except TimeoutError as e:
            error = TeardownTimeoutError(
                f"destroy() did not finish within {self._teardown_timeout}s",
                context={"vm": self._identity.name},
            )
            error.__cause__ = e
        except Exception as e:
            error = TeardownUnreachableError(
                f"destroy() failed: {e}",
                context={"vm": self._identity.name, "error_type": type(e).__name__},
            )
            error.__cause__ = e

        if error is None:
            self._transition(SessionState.CLOSED)
            logger.info("VM torn down", extra={"vm": self._identity.name})
            return

        self._teardown_error = error
        self._transition(SessionState.FAILED)
        logger.error(
            "VM teardown failed, next session must reset from scratch",
            extra={"vm": self._identity.name, "error": error.message, "error_type": type(error).__name__},
        )

    async def _close_channel(self) -> None:
        if self._channel is None:
            return
        try:
            await self._channel.close()
        except Exception as e:  # noqa: BLE001
            logger.warning(
                "Error closing introspection channel",
                extra={"vm": self._identity.name, "error": str(e), "error_type": type(e).__name__},
            )

    # -------------------------------------------------------------------------
    # Context Manager
    # -------------------------------------------------------------------------

    async def __aenter__(self) -> Self:
        """Set up the VM unless already done by the caller."""
        if self._state is SessionState.UNINITIALIZED:
            await self.setup()
        return self

    async def __aexit__(
        self,
        _exc_type: type[BaseException] | None,
        _exc_val: BaseException | None,
        _exc_tb: object,
    ) -> None:
        """Guaranteed release: tear down on every exit path."""
        await self.teardown()
