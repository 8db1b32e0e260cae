"""Health query engine for the gRPC health-checking protocol.

Perform exactly one ``grpc.health.v1.Health/Check`` exchange over an
established `Connection` and normalize the result into a `HealthStatus`
or a classified `ProbeError`.

Usage:
    from gprobe.probe import check

    outcome = check(config)
    print(outcome.status, outcome.exit_code)
"""

from typing import Optional

from grpc_health.v1 import health_pb2, health_pb2_grpc

from gprobe.config import ProbeConfig
from gprobe.core.deadline import Deadline
from gprobe.core.errors import ProbeError, classify_rpc_error
from gprobe.core.logging_config import get_logger
from gprobe.core.types.health import HealthStatus
from gprobe.core.types.outcome import ProbeOutcome, decide
from gprobe.transport import Connection, connect

logger = get_logger(__name__)


class HealthProbe:
    """Health-checking session bound to one connection.

    The session holds no state beyond the connection it was given; it is
    created per invocation and discarded with the connection.

    Args:
        connection: Established connection owned by the caller.
    """

    def __init__(self, connection: Connection):
        self.connection = connection
        self._stub = health_pb2_grpc.HealthStub(connection.channel)

    def check_server(self, deadline: Deadline) -> HealthStatus:
        """Check the health of the server as a whole."""
        return self._check("", deadline)

    def check_service(self, service: str, deadline: Deadline) -> HealthStatus:
        """Check the health of a named service.

        An empty name is equivalent to `check_server`.
        """
        return self._check(service, deadline)

    def _check(self, service: str, deadline: Deadline) -> HealthStatus:
        request = health_pb2.HealthCheckRequest(service=service)
        try:
            response = self._stub.Check(request, timeout=deadline.remaining())
        except Exception as e:
            raise classify_rpc_error(e, service) from e

        status = HealthStatus.from_wire(response.status)
        logger.info("health status received", status=status.value)
        return status


def check(config: ProbeConfig, deadline: Optional[Deadline] = None) -> ProbeOutcome:
    """Run one complete probe: connect, query once, decide.

    One deadline is shared by both phases. The connection is released
    before this function returns on every path.

    Args:
        config: Validated invocation configuration.
        deadline: Invocation deadline; when omitted it starts now with
            ``config.timeout``.

    Returns:
        ProbeOutcome: The decided outcome; classified failures are returned,
            not raised.
    """
    if deadline is None:
        deadline = Deadline.after(config.timeout)
    try:
        with connect(config.target, config.security, deadline) as connection:
            status = HealthProbe(connection).check_service(config.service, deadline)
    except ProbeError as e:
        logger.info("probe failed", error_type=type(e).__name__, reason=e.message)
        return decide(error=e)

    return decide(status=status, no_fail=config.no_fail)
