"""Closed error taxonomy for a probe invocation.

Every way a probe can end without a healthy status is one of the classes
below. Each carries the human-readable ``message`` shown on stderr and the
``exit_code`` the process terminates with, so callers dispatch on the type
instead of on message text.

    - `UsageError`: malformed command line; never touches the network.
    - `ConfigurationError`: well-formed but unusable settings (CA material).
    - `ConnectionFailure`: the transport could not be established in time.
    - `ProtocolUnimplementedError`: the peer does not speak grpc.health.v1.
    - `ServiceNotFoundError`: the peer does not know the named service.
    - `GenericProtocolError`: any other RPC failure.
    - `NegativeHealthResult`: the check succeeded but the status is not healthy.

`classify_rpc_error` is the only place raw gRPC failures are turned into
members of this taxonomy.
"""

from enum import IntEnum
from typing import Optional

import grpc

from gprobe.core.logging_config import get_logger

logger = get_logger(__name__)


class ExitCode(IntEnum):
    """Process exit codes consumed by orchestrators."""
    HEALTHY = 0
    USAGE = 1
    HEALTH_CHECK_NEGATIVE = 2
    UNEXPECTED = 127


# =============================================================================
# TAXONOMY
# =============================================================================


class ProbeError(Exception):
    """Base class for every classified probe failure."""

    exit_code: ExitCode = ExitCode.UNEXPECTED

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class UsageError(ProbeError):
    exit_code = ExitCode.USAGE


class ConfigurationError(ProbeError):
    pass


class ConnectionFailure(ProbeError):
    """Transport could not be established: refused, unreachable, handshake
    failure or deadline expiry while connecting. Always the same message."""

    MESSAGE = "connection refused: application isn't listening or TLS handshake failed"

    def __init__(self, reason: str = "unavailable"):
        super().__init__(self.MESSAGE)
        self.reason = reason


class ProtocolUnimplementedError(ProbeError):
    MESSAGE = "rpc error: server doesn't implement gRPC health-checking protocol"

    def __init__(self):
        super().__init__(self.MESSAGE)


class ServiceNotFoundError(ProbeError):
    def __init__(self, service: str):
        super().__init__(f"rpc error: service not found: {service}")
        self.service = service


class GenericProtocolError(ProbeError):
    """Any other RPC failure. The message keeps the peer's description and
    drops the numeric status code."""

    UNEXPECTED_DETAIL = "unexpected failure during health check"

    def __init__(self, detail: str, code: Optional[grpc.StatusCode] = None):
        super().__init__(f"rpc error: {detail}")
        self.detail = detail
        self.code = code


class NegativeHealthResult(ProbeError):
    exit_code = ExitCode.HEALTH_CHECK_NEGATIVE
    MESSAGE = "health-check failed"

    def __init__(self, status):
        super().__init__(self.MESSAGE)
        self.status = status


# =============================================================================
# CLASSIFICATION
# =============================================================================


def classify_rpc_error(error: BaseException, service: str = "") -> ProbeError:
    """Normalize a failure raised by the health ``Check`` call.

    Args:
        error: The exception raised by the stub call.
        service: Service name carried by the request, used in the not-found
            message.

    Returns:
        ProbeError: Exactly one member of the taxonomy. Exceptions that are
            not gRPC status errors map to a `GenericProtocolError` with a fixed
            detail; their text is only logged.
    """
    if not isinstance(error, grpc.RpcError) or not hasattr(error, "code"):
        logger.debug("unclassified health check failure", error=repr(error))
        return GenericProtocolError(GenericProtocolError.UNEXPECTED_DETAIL)

    code = error.code()
    logger.debug("health check rpc failed", code=getattr(code, "name", code))

    if code == grpc.StatusCode.UNAVAILABLE:
        return ConnectionFailure(reason="unavailable")
    if code == grpc.StatusCode.UNIMPLEMENTED:
        return ProtocolUnimplementedError()
    if code == grpc.StatusCode.NOT_FOUND:
        return ServiceNotFoundError(service)

    details = error.details() if hasattr(error, "details") else None
    return GenericProtocolError(details or _describe(code), code=code)


def _describe(code) -> str:
    # StatusCode values are (int, "description") pairs
    value = getattr(code, "value", None)
    if isinstance(value, tuple) and len(value) == 2:
        return value[1]
    return str(code)
