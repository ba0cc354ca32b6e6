"""Deadline: an immutable point on the monotonic clock."""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass, field


@dataclass(frozen=True, slots=True)
class Deadline:
    """A point in time computed from a duration.

    Uses time.monotonic() (the clock behind the default asyncio loop), so
    wall-clock adjustments never stretch or shrink a wait.

    Attributes:
        expires_at: Monotonic timestamp at which the deadline passes.
        duration: The duration the deadline was created from, in seconds.
    """

    expires_at: float
    duration: float
    clock: Callable[[], float] = field(default=time.monotonic, repr=False, compare=False)

    @classmethod
    def after(cls, seconds: float, *, clock: Callable[[], float] = time.monotonic) -> Deadline:
        """Create a deadline `seconds` from now.

        Raises:
            ValueError: seconds is negative
        """
        if seconds < 0:
            raise ValueError(f"Deadline duration must be >= 0, got {seconds}")
        return cls(expires_at=clock() + seconds, duration=seconds, clock=clock)

    def remaining(self) -> float:
        """Seconds left before the deadline (0.0 once it has passed)."""
        return max(0.0, self.expires_at - self.clock())

    def expired(self) -> bool:
        """Whether the deadline has passed."""
        return self.clock() >= self.expires_at
