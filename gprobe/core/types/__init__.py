# gprobe/core/types/__init__.py
"""
Public API for gprobe's value types.
"""

from .base import (
    CanonicalRecord,
    DEFAULT_PORT,
    SecurityMode,
    Target,
    TransportSecurity,
)
from .health import HealthStatus
from .outcome import Disposition, ProbeOutcome, decide

__all__ = [
    "CanonicalRecord",
    "DEFAULT_PORT",
    "SecurityMode",
    "Target",
    "TransportSecurity",
    "HealthStatus",
    "Disposition",
    "ProbeOutcome",
    "decide",
]
