"""Serving status reported by the health-checking protocol."""

from enum import Enum

from grpc_health.v1 import health_pb2


class HealthStatus(str, Enum):
    """Serving status of a process or of a named service within it.

    ``SERVICE_UNKNOWN`` means the named service has no registered health
    status. It is different from a service the server has never heard of,
    which is reported as an error (``ServiceNotFoundError``).
    """
    UNKNOWN = "UNKNOWN"
    SERVING = "SERVING"
    NOT_SERVING = "NOT_SERVING"
    SERVICE_UNKNOWN = "SERVICE_UNKNOWN"

    @classmethod
    def from_wire(cls, value: int) -> "HealthStatus":
        """Convert a ``HealthCheckResponse.ServingStatus`` number.

        Values outside the known enum collapse to ``UNKNOWN``.
        """
        try:
            name = health_pb2.HealthCheckResponse.ServingStatus.Name(value)
        except ValueError:
            return cls.UNKNOWN
        return cls.__members__.get(name, cls.UNKNOWN)

    @property
    def is_serving(self) -> bool:
        return self is HealthStatus.SERVING

    def __str__(self) -> str:
        return self.value
