"""Probe configuration management via pydantic-settings.

Two layers are defined here:

    - `Settings`: ambient configuration read from ``GPROBE_*`` environment
      variables (CA fallbacks for the TLS flags, logging level and format).
    - `ProbeConfig`: the validated, immutable configuration of one
      invocation, built by `create_config` from command-line input and
      `Settings`.

Both are built fresh for every invocation; nothing is cached between runs.
"""

import re
from typing import Literal, Optional, Sequence

from pydantic import ConfigDict, Field, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from gprobe.core.errors import UsageError
from gprobe.core.types.base import CanonicalRecord, SecurityMode, Target, TransportSecurity

DEFAULT_TIMEOUT = 1.0


class Settings(BaseSettings):
    """Environment-driven settings.

    Attributes:
        CAFILE: CA certificate file; fallback for ``--tls-cafile``.
        CAPATH: CA certificate directory; fallback for ``--tls-capath``.
        LOG_LEVEL: Minimum logging verbosity level.
        LOG_FORMAT: Log renderer, human console or JSON lines.
        LOGGING_NOISY_MODULES: Third-party loggers capped at WARNING.
    """

    model_config = SettingsConfigDict(
        env_prefix="GPROBE_",
        case_sensitive=True,
        extra="ignore",
    )

    # ==========================================================================
    # TLS FALLBACKS
    # ==========================================================================
    CAFILE: Optional[str] = None
    CAPATH: Optional[str] = None

    # ==========================================================================
    # LOGGING
    # ==========================================================================
    LOG_LEVEL: Literal["debug", "info", "warning", "error", "critical"] = "warning"
    LOG_FORMAT: Literal["console", "json"] = "console"
    LOGGING_NOISY_MODULES: list[str] = [
        "grpc",
        "asyncio",
    ]


class ProbeConfig(CanonicalRecord):
    """Validated configuration of a single probe invocation.

    Attributes:
        target: Address of the process being probed.
        service: Service name; empty means the whole process.
        timeout: Operation deadline in seconds covering connect and query.
        no_fail: Report non-SERVING statuses without failing.
        security: Active transport security mode.
    """
    # service names are matched verbatim by the server
    model_config = ConfigDict(str_strip_whitespace=False)

    target: Target
    service: str = ""
    timeout: float = Field(default=DEFAULT_TIMEOUT, gt=0)
    no_fail: bool = False
    security: TransportSecurity = TransportSecurity()


# =============================================================================
# DURATION PARSING
# =============================================================================

_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "μs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}
_COMPONENT = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|μs|ms|s|m|h)")


def parse_duration(text: str) -> float:
    """Parse a Go-style duration string into seconds.

    Accepts one or more ``<number><unit>`` components (``1s``, ``250ms``,
    ``1m30s``, ``1.5h``) and the bare literal ``0``.

    Raises:
        ValueError: If the text is not a valid duration.
    """
    text = text.strip()
    if text == "0":
        return 0.0
    position = 0
    total = 0.0
    while position < len(text):
        match = _COMPONENT.match(text, position)
        if match is None:
            raise ValueError(f"invalid duration '{text}'")
        total += float(match.group(1)) * _UNITS[match.group(2)]
        position = match.end()
    if position == 0:
        raise ValueError(f"invalid duration '{text}'")
    return total


# =============================================================================
# COMMAND-LINE TO CONFIG
# =============================================================================


def resolve_security(
    tls: bool = False,
    tls_insecure: bool = False,
    tls_cafile: Optional[str] = None,
    tls_capath: Optional[str] = None,
) -> TransportSecurity:
    """Select the single transport security mode.

    Each argument is one source; an explicit flag and its environment
    fallback must already be merged into one value by the caller.

    Raises:
        UsageError: If more than one mode is selected.
    """
    selected = [
        (SecurityMode.TLS_SYSTEM_ROOTS, None) if tls else None,
        (SecurityMode.TLS_INSECURE, None) if tls_insecure else None,
        (SecurityMode.TLS_CA_FILE, tls_cafile) if tls_cafile else None,
        (SecurityMode.TLS_CA_PATH, tls_capath) if tls_capath else None,
    ]
    selected = [choice for choice in selected if choice is not None]

    if not selected:
        return TransportSecurity()
    if len(selected) > 1:
        raise UsageError(
            "can't parse TLS configuration: at most one of --tls, --tls-insecure, "
            "--tls-cafile and --tls-capath is allowed"
        )
    mode, location = selected[0]
    return TransportSecurity(mode=mode, ca_location=location)


def create_config(
    args: Sequence[str],
    *,
    settings: Settings,
    timeout: float = DEFAULT_TIMEOUT,
    no_fail: bool = False,
    tls: bool = False,
    tls_insecure: bool = False,
    tls_cafile: Optional[str] = None,
    tls_capath: Optional[str] = None,
) -> ProbeConfig:
    """Build a `ProbeConfig` from positional arguments and flag values.

    ``GPROBE_CAFILE`` / ``GPROBE_CAPATH`` fill in ``tls_cafile`` /
    ``tls_capath`` when the flag itself is absent; a flag and its own
    variable count as a single source.

    Args:
        args: Positional arguments, ``target_address [service_name]``.
        settings: Environment settings providing CA fallbacks.
        timeout: Operation deadline in seconds.
        no_fail: Do not fail on non-SERVING statuses.
        tls: Verify the server with the default root certificates.
        tls_insecure: Use TLS without verifying the server.
        tls_cafile: CA certificate file.
        tls_capath: CA certificate directory.

    Returns:
        ProbeConfig: The validated configuration.

    Raises:
        UsageError: On a wrong number of arguments, conflicting TLS sources
            or otherwise invalid values.
    """
    if len(args) not in (1, 2):
        raise UsageError("exactly 1 to 2 arguments are required")

    security = resolve_security(
        tls=tls,
        tls_insecure=tls_insecure,
        tls_cafile=tls_cafile or settings.CAFILE,
        tls_capath=tls_capath or settings.CAPATH,
    )

    try:
        return ProbeConfig(
            target=Target(address=args[0]),
            service=args[1] if len(args) == 2 else "",
            timeout=timeout,
            no_fail=no_fail,
            security=security,
        )
    except ValidationError as e:
        raise UsageError(_first_error(e)) from e


def _first_error(error: ValidationError) -> str:
    details = error.errors()
    if not details:
        return str(error)
    first = details[0]
    location = ".".join(str(part) for part in first.get("loc", ()))
    message = first.get("msg", "invalid value")
    return f"{location}: {message}" if location else message
