"""Test execution driver.

HarnessRunner sequences one test:

    lock(vm name)
      └─ fresh VmSession ─setup()─▶ READY      (retried with a new session on SetupError)
           └─ start() ─▶ RUNNING ─ body races the overall deadline
           └─ teardown()                        (every exit path, exactly once)
    unlock

Outcome classification:
    body returns              → PASSED
    body raises AssertionError → FAILED
    body raises anything else → ERROR
    overall deadline passes   → TIMED_OUT (body cancelled and abandoned)
    setup fails               → SETUP_FAILED (no teardown)

A teardown failure never changes the status; it is attached to the result.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from typing import TYPE_CHECKING

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_random_exponential,
)

from vmi_harness import constants
from vmi_harness._logging import get_logger
from vmi_harness.backend import create_backend
from vmi_harness.config import HarnessConfig
from vmi_harness.deadline import Deadline
from vmi_harness.event_channel import open_null_channel
from vmi_harness.exceptions import ChannelInitError, SetupError
from vmi_harness.models import SessionState, TestResult, TestStatus
from vmi_harness.registry import default_registry
from vmi_harness.session import VmSession
from vmi_harness.subprocess_utils import log_task_exception

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable, Sequence

    from vmi_harness.backend import BackendAdapter
    from vmi_harness.event_channel import ChannelFactory
    from vmi_harness.models import BackendKind, VmIdentity
    from vmi_harness.registry import IntegrationTest, TestFunction, TestRegistry
    from vmi_harness.session import SessionHandle

logger = get_logger(__name__)


class HarnessRunner:
    """Runs test bodies against a VM with guaranteed reset and teardown.

    One runner owns one backend adapter: the backend kind is fixed for the
    whole run. Sessions on the same VM name run strictly one after another;
    sessions on different names may overlap (run_many).

    Example:
        ```python
        runner = HarnessRunner(HarnessConfig.from_env(), channel_factory=open_kvmi_channel)
        result = await runner.run(my_test)
        assert result.passed, result.error
        ```
    """

    def __init__(
        self,
        config: HarnessConfig | None = None,
        *,
        backend: BackendAdapter | None = None,
        channel_factory: ChannelFactory | None = None,
        registry: TestRegistry | None = None,
    ) -> None:
        self.config = config or HarnessConfig.from_env()
        self.backend = backend or create_backend(self.config)
        if self.backend.kind != self.config.backend:
            raise ValueError(
                f"Backend adapter kind {self.backend.kind.value} does not match configured {self.config.backend.value}"
            )
        self.registry = registry if registry is not None else default_registry
        self._channel_factory = channel_factory or open_null_channel
        self._locks: dict[str, asyncio.Lock] = {}
        self._dirty: set[str] = set()

    def is_dirty(self, vm_name: str) -> bool:
        """Whether the last teardown of vm_name failed (VM state unknown)."""
        return vm_name in self._dirty

    def _lock_for(self, vm_name: str) -> asyncio.Lock:
        lock = self._locks.get(vm_name)
        if lock is None:
            lock = self._locks[vm_name] = asyncio.Lock()
        return lock

    def _new_session(self, identity: VmIdentity, event_timeout: float) -> VmSession:
        return VmSession(
            self.backend,
            identity,
            event_timeout=event_timeout,
            channel_factory=self._channel_factory,
            teardown_timeout=self.config.teardown_timeout_seconds,
        )

    # -------------------------------------------------------------------------
    # Single test
    # -------------------------------------------------------------------------

    async def run(
        self,
        test_fn: TestFunction,
        identity: VmIdentity | None = None,
        backend_kind: BackendKind | None = None,
        overall_timeout: float | None = None,
        *,
        name: str | None = None,
        event_timeout: float | None = None,
    ) -> TestResult:
        """Run one test body inside a fresh VM session.

        Args:
            test_fn: Coroutine function or plain function taking a SessionHandle.
            identity: VM to use. Defaults to the configured one.
            backend_kind: Must match the runner's backend if given.
            overall_timeout: Bound on the test body in seconds. Defaults to configuration.
            name: Name reported in the result. Defaults to test_fn.__name__.
            event_timeout: Default event wait in seconds. Defaults to configuration.

        Returns:
            TestResult. Never raises for test or infrastructure failures.

        Raises:
            ValueError: backend_kind differs from the runner's backend
        """
        if backend_kind is not None and backend_kind != self.backend.kind:
            raise ValueError(f"Runner uses {self.backend.kind.value}, got {backend_kind.value}")
        identity = identity or self.config.identity()
        timeout = self.config.test_timeout_seconds if overall_timeout is None else overall_timeout
        wait = self.config.event_timeout_seconds if event_timeout is None else event_timeout
        test_name = name or getattr(test_fn, "__name__", "test")
        log_extra = {"test": test_name, "vm": identity.name}

        async with self._lock_for(identity.name):
            start = time.monotonic()
            if identity.name in self._dirty:
                logger.warning("Previous teardown failed, forcing a fresh reset", extra=log_extra)

            attempts = 0
            session: VmSession | None = None
            try:
                async for attempt in AsyncRetrying(
                    stop=stop_after_attempt(self.config.setup_retries + 1),
                    wait=wait_random_exponential(
                        min=constants.SETUP_RETRY_MIN_SECONDS,
                        max=constants.SETUP_RETRY_MAX_SECONDS,
                    ),
                    # A Ready session is never reset twice: each attempt builds a new one
                    retry=retry_if_exception_type(SetupError),
                    before_sleep=before_sleep_log(logger, logging.WARNING),
                    reraise=True,
                ):
                    with attempt:
                        attempts = attempt.retry_state.attempt_number
                        session = self._new_session(identity, wait)
                        await session.setup()
            except SetupError as e:
                return TestResult(
                    name=test_name,
                    status=TestStatus.SETUP_FAILED,
                    duration_ms=_elapsed_ms(start),
                    setup_error=e.message,
                    setup_attempts=attempts,
                    session_state=SessionState.FAILED,
                )

            if session is None:
                raise AssertionError("Unreachable: AsyncRetrying exhausted without exception")

            async with session:
                status, error = await self._execute(session, test_fn, timeout, log_extra)

            teardown_error = session.teardown_error
            if teardown_error is None:
                self._dirty.discard(identity.name)
            else:
                self._dirty.add(identity.name)

            result = TestResult(
                name=test_name,
                status=status,
                duration_ms=_elapsed_ms(start),
                error=_describe(error),
                error_type=type(error).__name__ if error is not None else None,
                setup_attempts=attempts,
                teardown_error=teardown_error.message if teardown_error is not None else None,
                session_state=session.state,
            )
        logger.info(
            "Test finished",
            extra=log_extra | {"status": result.status.value, "duration_ms": result.duration_ms},
        )
        return result

    async def _execute(
        self,
        session: VmSession,
        test_fn: TestFunction,
        timeout: float,
        log_extra: dict[str, str],
    ) -> tuple[TestStatus, BaseException | None]:
        """Start the session and race the body against the overall deadline."""
        deadline = Deadline.after(timeout)
        try:
            async with asyncio.timeout(deadline.remaining()):
                handle = await session.start(deadline)
        except ChannelInitError as e:
            logger.error("Introspection channel failed to open", extra=log_extra | {"error": e.message})
            return TestStatus.ERROR, e
        except TimeoutError:
            logger.warning("Overall timeout while opening the channel", extra=log_extra)
            return TestStatus.TIMED_OUT, None

        body = asyncio.create_task(self._invoke(test_fn, handle), name=f"vmi-test-{log_extra['test']}")
        try:
            done, _ = await asyncio.wait({body}, timeout=deadline.remaining())
        except asyncio.CancelledError:
            body.cancel()
            body.add_done_callback(log_task_exception)
            raise

        if body not in done:
            # Abandon: a cancelled worker thread keeps running but its result is ignored
            body.cancel()
            body.add_done_callback(log_task_exception)
            logger.warning("Test body exceeded overall timeout", extra=log_extra | {"timeout": timeout})
            return TestStatus.TIMED_OUT, None

        if body.cancelled():
            return TestStatus.ERROR, asyncio.CancelledError("test body was cancelled")
        exc = body.exception()
        if exc is None:
            return TestStatus.PASSED, None
        if isinstance(exc, AssertionError):
            logger.info("Test body assertion failed", extra=log_extra | {"error": _describe(exc)})
            return TestStatus.FAILED, exc
        logger.warning(
            "Test body raised",
            extra=log_extra | {"error": _describe(exc), "error_type": type(exc).__name__},
        )
        return TestStatus.ERROR, exc

    @staticmethod
    async def _invoke(test_fn: TestFunction, handle: SessionHandle) -> None:
        if inspect.iscoroutinefunction(test_fn):
            await test_fn(handle)
        else:
            await asyncio.to_thread(test_fn, handle)

    # -------------------------------------------------------------------------
    # Suites
    # -------------------------------------------------------------------------

    async def run_test(self, test: IntegrationTest, identity: VmIdentity | None = None) -> TestResult:
        """Run a registered test with its timeout override."""
        return await self.run(test.fn, identity, overall_timeout=test.timeout_seconds, name=test.name)

    async def run_suite(
        self,
        names: Iterable[str] | None = None,
        *,
        on_start: Callable[[IntegrationTest], None] | None = None,
        on_result: Callable[[TestResult], None] | None = None,
    ) -> list[TestResult]:
        """Run registered tests sequentially in registration order.

        A setup failure aborts only the affected test.

        Raises:
            KeyError: A requested name is not registered
        """
        results: list[TestResult] = []
        for test in self.registry.select(names):
            if on_start is not None:
                on_start(test)
            result = await self.run_test(test)
            results.append(result)
            if on_result is not None:
                on_result(result)
        return results

    async def run_many(self, jobs: Sequence[tuple[IntegrationTest, VmIdentity]]) -> list[TestResult]:
        """Run tests concurrently across VMs. Jobs on the same VM name still run in order.

        Returns:
            Results in job order.
        """
        async with asyncio.TaskGroup() as tg:
            tasks = [
                tg.create_task(self.run_test(test, identity), name=f"vmi-run-{test.name}-{identity.name}")
                for test, identity in jobs
            ]
        return [task.result() for task in tasks]


def _elapsed_ms(start: float) -> int:
    return max(0, round((time.monotonic() - start) * 1000))


def _describe(exc: BaseException | None) -> str | None:
    if exc is None:
        return None
    return str(exc) or type(exc).__name__
