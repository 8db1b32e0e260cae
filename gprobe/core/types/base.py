"""Foundational primitives shared by every gprobe data structure.

Provide the frozen base model and the small value types (target addresses,
transport security selection) that the connector and the query engine pass
between each other.
"""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


# ═══════════════════════════════════════════════════════════════════════════
# BASE CONFIGURATION
# ═══════════════════════════════════════════════════════════════════════════

class CanonicalRecord(BaseModel):
    """Base model providing shared configuration for all gprobe records.

    Configuration:
        frozen: Prevents modification after creation.
        extra: Rejects unknown fields.
        str_strip_whitespace: Normalizes string inputs automatically.
    """
    model_config = ConfigDict(
        frozen=True,
        extra='forbid',
        str_strip_whitespace=True,
    )


# ═══════════════════════════════════════════════════════════════════════════
# TARGET ADDRESS
# ═══════════════════════════════════════════════════════════════════════════

DEFAULT_PORT = 443


class Target(CanonicalRecord):
    """Network address of the process being probed.

    The address is passed to gRPC verbatim. ``host`` and ``port`` are derived
    for the code paths that need a raw socket (certificate retrieval in
    insecure TLS mode). Bracketed IPv6 literals are supported.

    Attributes:
        address: The ``host:port`` string given on the command line.

    Example:
        >>> Target(address="[::1]:50051").host
        '::1'
    """
    address: str = Field(min_length=1)

    def _split(self) -> tuple[str, Optional[str]]:
        address = self.address
        if address.startswith("["):
            host, _, rest = address[1:].partition("]")
            return host, rest[1:] if rest.startswith(":") else None
        if address.count(":") == 1:
            host, _, port = address.partition(":")
            return host, port
        return address, None

    @model_validator(mode='after')
    def validate_port(self) -> 'Target':
        """Reject addresses whose port component is not a valid TCP port."""
        _, port = self._split()
        if port is not None and not (port.isdigit() and 0 < int(port) < 65536):
            raise ValueError(f"invalid port in target address '{self.address}'")
        return self

    @property
    def host(self) -> str:
        return self._split()[0]

    @property
    def port(self) -> int:
        port = self._split()[1]
        return int(port) if port else DEFAULT_PORT

    def __str__(self) -> str:
        return self.address


# ═══════════════════════════════════════════════════════════════════════════
# TRANSPORT SECURITY
# ═══════════════════════════════════════════════════════════════════════════

class SecurityMode(str, Enum):
    """Mutually exclusive transport security modes."""
    PLAINTEXT = "plaintext"
    TLS_SYSTEM_ROOTS = "tls"
    TLS_CA_FILE = "tls-cafile"
    TLS_CA_PATH = "tls-capath"
    TLS_INSECURE = "tls-insecure"


class TransportSecurity(CanonicalRecord):
    """The single transport security mode active for one invocation.

    Attributes:
        mode: Selected security mode.
        ca_location: CA file or directory; required by the CA modes and
            forbidden by the others.
    """
    mode: SecurityMode = SecurityMode.PLAINTEXT
    ca_location: Optional[str] = None

    @model_validator(mode='after')
    def validate_ca_location(self) -> 'TransportSecurity':
        needs_location = self.mode in (SecurityMode.TLS_CA_FILE, SecurityMode.TLS_CA_PATH)
        if needs_location and not self.ca_location:
            raise ValueError(f"security mode '{self.mode.value}' requires a CA location")
        if not needs_location and self.ca_location:
            raise ValueError(f"security mode '{self.mode.value}' does not take a CA location")
        return self

    @property
    def uses_tls(self) -> bool:
        return self.mode is not SecurityMode.PLAINTEXT
