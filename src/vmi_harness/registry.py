"""Integration test registry.

Tests register under a name with the integration_test decorator and run
in registration order:

    ```python
    from vmi_harness import SessionHandle, integration_test

    @integration_test(name="breakpoint_hit")
    async def breakpoint_hit(handle: SessionHandle) -> None:
        event = await handle.expect_event()
        assert event.kind == "breakpoint"
    ```

Bodies may be coroutine functions or plain functions. Plain functions run
in a worker thread and wait with handle.wait_event_blocking().
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Iterable, Iterator
from dataclasses import dataclass
from typing import TYPE_CHECKING, overload

if TYPE_CHECKING:
    from vmi_harness.session import SessionHandle

TestFunction = Callable[["SessionHandle"], Awaitable[None]] | Callable[["SessionHandle"], None]


@dataclass(frozen=True, slots=True)
class IntegrationTest:
    """A named test body.

    Attributes:
        name: Unique name, used for filtering and reporting.
        fn: The test body; receives a SessionHandle.
        timeout_seconds: Overall timeout override (None = configured default).
    """

    __test__ = False

    name: str
    fn: TestFunction
    timeout_seconds: float | None = None


class TestRegistry:
    """Ordered collection of IntegrationTest records, unique by name."""

    __test__ = False

    def __init__(self) -> None:
        self._tests: dict[str, IntegrationTest] = {}

    def register(self, test: IntegrationTest) -> IntegrationTest:
        """Add a test.

        Raises:
            ValueError: A test with the same name is already registered
        """
        if test.name in self._tests:
            raise ValueError(f"Integration test already registered: {test.name!r}")
        self._tests[test.name] = test
        return test

    @overload
    def integration_test(self, fn: TestFunction, /) -> TestFunction: ...

    @overload
    def integration_test(
        self,
        fn: None = None,
        /,
        *,
        name: str | None = None,
        timeout_seconds: float | None = None,
    ) -> Callable[[TestFunction], TestFunction]: ...

    def integration_test(
        self,
        fn: TestFunction | None = None,
        /,
        *,
        name: str | None = None,
        timeout_seconds: float | None = None,
    ) -> TestFunction | Callable[[TestFunction], TestFunction]:
        """Decorator registering a test body. Usable bare or with arguments.

        The function is returned unchanged so it stays callable directly.
        """

        def decorator(func: TestFunction) -> TestFunction:
            self.register(IntegrationTest(name=name or func.__name__, fn=func, timeout_seconds=timeout_seconds))
            return func

        if fn is not None:
            return decorator(fn)
        return decorator

    def get(self, name: str) -> IntegrationTest:
        """Look up a test by name.

        Raises:
            KeyError: No test with that name
        """
        return self._tests[name]

    def names(self) -> list[str]:
        return list(self._tests)

    def select(self, names: Iterable[str] | None = None) -> list[IntegrationTest]:
        """Tests to run: all in registration order, or the named ones in the given order.

        Raises:
            KeyError: A name is not registered
        """
        if names is None:
            return list(self._tests.values())
        wanted = list(names)
        if not wanted:
            return list(self._tests.values())
        unknown = [n for n in wanted if n not in self._tests]
        if unknown:
            raise KeyError(f"Unknown integration test(s): {', '.join(unknown)}")
        return [self._tests[n] for n in wanted]

    def __iter__(self) -> Iterator[IntegrationTest]:
        return iter(list(self._tests.values()))

    def __len__(self) -> int:
        return len(self._tests)

    def __contains__(self, name: object) -> bool:
        return name in self._tests


default_registry = TestRegistry()
"""Registry used by the integration_test decorator and the CLI."""

integration_test = default_registry.integration_test
