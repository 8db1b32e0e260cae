"""Outcome of a single probe invocation and the exit-code decision policy."""

from enum import Enum
from typing import Optional

from pydantic import ConfigDict, model_validator

from gprobe.core.errors import ExitCode, NegativeHealthResult, ProbeError
from gprobe.core.types.base import CanonicalRecord
from gprobe.core.types.health import HealthStatus


class Disposition(str, Enum):
    """How the invocation ends, independent of how it is rendered."""
    HEALTHY = "healthy"
    NEGATIVE = "negative"
    ERROR = "error"


class ProbeOutcome(CanonicalRecord):
    """Terminal result of one invocation.

    Holds either an obtained ``status`` (healthy or negative disposition) or a
    classified ``error`` (error disposition), never both.

    Attributes:
        disposition: Decision reached by `decide`.
        status: Status reported by the peer, when one was obtained.
        error: Classified failure; set for error and negative dispositions.
    """
    model_config = ConfigDict(arbitrary_types_allowed=True)

    disposition: Disposition
    status: Optional[HealthStatus] = None
    error: Optional[ProbeError] = None

    @model_validator(mode='after')
    def validate_shape(self) -> 'ProbeOutcome':
        if self.disposition is Disposition.ERROR:
            if self.error is None or self.status is not None:
                raise ValueError("error outcome requires an error and no status")
        elif self.status is None:
            raise ValueError(f"{self.disposition.value} outcome requires a status")
        return self

    @property
    def exit_code(self) -> ExitCode:
        if self.disposition is Disposition.HEALTHY:
            return ExitCode.HEALTHY
        return self.error.exit_code

    @property
    def message(self) -> Optional[str]:
        return self.error.message if self.error is not None else None


def decide(
    status: Optional[HealthStatus] = None,
    error: Optional[ProbeError] = None,
    no_fail: bool = False,
) -> ProbeOutcome:
    """Turn a query result into an outcome; first matching rule wins.

    1. Any connect/query error is an error outcome; ``no_fail`` never masks it.
    2. ``SERVING`` is healthy.
    3. Any other status is healthy when ``no_fail`` is set.
    4. Otherwise the outcome is negative.

    Args:
        status: Status obtained from the peer, if any.
        error: Classified failure, if any.
        no_fail: Caller's request not to fail on a non-SERVING status.

    Returns:
        ProbeOutcome: The decided outcome.

    Raises:
        ValueError: If neither a status nor an error is given.
    """
    if error is not None:
        return ProbeOutcome(disposition=Disposition.ERROR, error=error)
    if status is None:
        raise ValueError("decide() needs a status or an error")
    if status.is_serving or no_fail:
        return ProbeOutcome(disposition=Disposition.HEALTHY, status=status)
    return ProbeOutcome(
        disposition=Disposition.NEGATIVE,
        status=status,
        error=NegativeHealthResult(status),
    )
