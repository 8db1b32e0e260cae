"""Test configuration and shared fixtures.

Provide isolated probe settings, real in-process gRPC servers (plain, TLS and
one without a health service) and generated TLS material. All fixtures run
without external dependencies on environment variables or network services.
"""
import datetime
import ipaddress
import logging.config
import os
import socket
from concurrent import futures
from dataclasses import dataclass
from typing import Generator, Optional

import grpc
import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID
from grpc_health.v1 import health, health_pb2_grpc

from gprobe.config import Settings
from gprobe.core.logging_config import configure_structlog_wrapper, get_logging_config

# ==============================================================================
# CONFIGURATION FIXTURES
# ==============================================================================

@pytest.fixture(autouse=True)
def isolated_environment(monkeypatch) -> None:
    """Remove every GPROBE_* variable so host configuration can't leak in."""
    for name in list(os.environ):
        if name.startswith("GPROBE_"):
            monkeypatch.delenv(name, raising=False)


@pytest.fixture(scope="session", autouse=True)
def configured_logging() -> None:
    """Route library logs through the stdlib handlers on stderr."""
    settings = Settings()
    logging.config.dictConfig(get_logging_config(settings))
    configure_structlog_wrapper(settings)


@pytest.fixture
def settings() -> Settings:
    """Provide default settings built from an empty environment."""
    return Settings()


@pytest.fixture
def free_port() -> int:
    """Provide a local port with nothing listening on it."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]

# ==============================================================================
# TLS MATERIAL
# ==============================================================================

@dataclass(frozen=True)
class TLSMaterial:
    cert_pem: bytes
    key_pem: bytes
    cert_file: str
    ca_dir: str


def _self_signed(base, not_before: datetime.datetime, not_after: datetime.datetime) -> TLSMaterial:
    key = ec.generate_private_key(ec.SECP256R1())
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "localhost")])
    certificate = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_before)
        .not_valid_after(not_after)
        .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
        .add_extension(
            x509.SubjectAlternativeName([
                x509.DNSName("localhost"),
                x509.IPAddress(ipaddress.ip_address("127.0.0.1")),
            ]),
            critical=False,
        )
        .sign(key, hashes.SHA256())
    )
    cert_pem = certificate.public_bytes(serialization.Encoding.PEM)
    key_pem = key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    )

    cert_file = base / "server.pem"
    cert_file.write_bytes(cert_pem)
    ca_dir = base / "ca"
    ca_dir.mkdir()
    (ca_dir / "server.pem").write_bytes(cert_pem)

    return TLSMaterial(cert_pem=cert_pem, key_pem=key_pem, cert_file=str(cert_file), ca_dir=str(ca_dir))


@pytest.fixture(scope="session")
def tls_material(tmp_path_factory) -> TLSMaterial:
    """Generate a self-signed certificate valid for localhost and 127.0.0.1.

    Returns:
        TLSMaterial: PEM bytes plus the certificate written to a file and to
            a CA directory.
    """
    now = datetime.datetime.now(datetime.timezone.utc)
    return _self_signed(
        tmp_path_factory.mktemp("tls"),
        not_before=now - datetime.timedelta(days=1),
        not_after=now + datetime.timedelta(days=1),
    )


@pytest.fixture(scope="session")
def expired_tls_material(tmp_path_factory) -> TLSMaterial:
    """Generate a self-signed certificate that expired yesterday."""
    now = datetime.datetime.now(datetime.timezone.utc)
    return _self_signed(
        tmp_path_factory.mktemp("expired-tls"),
        not_before=now - datetime.timedelta(days=30),
        not_after=now - datetime.timedelta(days=1),
    )

# ==============================================================================
# STUB SERVERS
# ==============================================================================

@dataclass
class StubServer:
    server: grpc.Server
    port: int
    servicer: Optional[health.HealthServicer]

    @property
    def address(self) -> str:
        return f"localhost:{self.port}"


def _start(credentials: Optional[grpc.ServerCredentials] = None, with_health: bool = True) -> StubServer:
    server = grpc.server(futures.ThreadPoolExecutor(max_workers=4))
    servicer = None
    if with_health:
        servicer = health.HealthServicer()
        health_pb2_grpc.add_HealthServicer_to_server(servicer, server)
    if credentials is None:
        port = server.add_insecure_port("localhost:0")
    else:
        port = server.add_secure_port("localhost:0", credentials)
    server.start()
    return StubServer(server=server, port=port, servicer=servicer)


@pytest.fixture
def health_server() -> Generator[StubServer, None, None]:
    """Provide a plaintext server exposing the standard health service.

    The overall server status is SERVING; services are registered per test
    through ``servicer.set``.
    """
    stub = _start()
    yield stub
    stub.server.stop(None)


@pytest.fixture
def tls_health_server(tls_material: TLSMaterial) -> Generator[StubServer, None, None]:
    """Provide a TLS server exposing the standard health service."""
    credentials = grpc.ssl_server_credentials([(tls_material.key_pem, tls_material.cert_pem)])
    stub = _start(credentials)
    yield stub
    stub.server.stop(None)


@pytest.fixture
def empty_server() -> Generator[StubServer, None, None]:
    """Provide a plaintext server with no services registered."""
    stub = _start(with_health=False)
    yield stub
    stub.server.stop(None)


@pytest.fixture
def expired_tls_health_server(expired_tls_material: TLSMaterial) -> Generator[StubServer, None, None]:
    """Provide a TLS health server presenting an expired certificate."""
    credentials = grpc.ssl_server_credentials([(expired_tls_material.key_pem, expired_tls_material.cert_pem)])
    stub = _start(credentials)
    yield stub
    stub.server.stop(None)


@pytest.fixture
def silent_listener() -> Generator[str, None, None]:
    """Provide the address of a TCP listener that never speaks HTTP/2.

    Connections complete the TCP handshake in the kernel backlog and then
    see no bytes at all.
    """
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        sock.listen(8)
        yield f"127.0.0.1:{sock.getsockname()[1]}"
