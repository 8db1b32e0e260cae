"""Single wall-clock budget shared by the connect and query phases.

A `Deadline` is computed once, when the invocation starts. Each phase asks
it for the time remaining instead of arming a timer of its own, so time
spent connecting is no longer available to the RPC.
"""

import time
from typing import Callable

from pydantic import Field

from gprobe.core.types.base import CanonicalRecord

Clock = Callable[[], float]


class Deadline(CanonicalRecord):
    """Absolute point in time on the monotonic clock.

    Attributes:
        expires_at: Monotonic timestamp after which the budget is spent.
        budget: Duration the deadline was created with, in seconds.

    Example:
        >>> deadline = Deadline.after(1.0)
        >>> 0.0 < deadline.remaining() <= 1.0
        True
    """
    expires_at: float
    budget: float = Field(gt=0)

    @classmethod
    def after(cls, seconds: float, clock: Clock = time.monotonic) -> "Deadline":
        """Create a deadline ``seconds`` from now."""
        return cls(expires_at=clock() + seconds, budget=seconds)

    @classmethod
    def since(cls, started: float, seconds: float) -> "Deadline":
        """Create a deadline ``seconds`` after the monotonic timestamp ``started``."""
        return cls(expires_at=started + seconds, budget=seconds)

    def remaining(self, clock: Clock = time.monotonic) -> float:
        """Seconds left before expiry, never negative."""
        return max(0.0, self.expires_at - clock())

    def expired(self, clock: Clock = time.monotonic) -> bool:
        return self.remaining(clock) <= 0.0
