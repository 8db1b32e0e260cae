"""Transport connector: one gRPC channel per invocation, bounded by a deadline.

The connector resolves the transport security mode into channel
credentials (loading CA material before any network I/O), dials the
target and waits for the channel to become usable without ever blocking
past the invocation `Deadline`. The channel is owned by the `connect`
context manager and is closed on every exit path.

gRPC has no switch to skip certificate verification, so ``--tls-insecure``
is served by an `InsecureTLSRelay`: the channel speaks plaintext HTTP/2 to
a loopback listener owned by the invocation, and the relay carries the
bytes to the target over TLS with verification disabled.
"""

import os
import select
import selectors
import socket
import ssl
import threading
from contextlib import contextmanager
from typing import Iterator, Optional

import grpc
from cryptography import x509

from gprobe.core.deadline import Deadline
from gprobe.core.errors import ConfigurationError, ConnectionFailure
from gprobe.core.logging_config import get_logger
from gprobe.core.types.base import SecurityMode, Target, TransportSecurity

logger = get_logger(__name__)

_TERMINAL_STATES = (
    grpc.ChannelConnectivity.READY,
    grpc.ChannelConnectivity.TRANSIENT_FAILURE,
    grpc.ChannelConnectivity.SHUTDOWN,
)


class Connection:
    """A live channel to the target, exclusively owned by one invocation.

    Attributes:
        target: Address the channel was dialed to.
        channel: Underlying gRPC channel.
        relay: Insecure TLS relay the channel is dialed through, if any.
    """

    def __init__(self, target: Target, channel: grpc.Channel,
                 relay: Optional["InsecureTLSRelay"] = None):
        self.target = target
        self.channel = channel
        self.relay = relay
        self.closed = False

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        try:
            self.channel.close()
        finally:
            if self.relay is not None:
                self.relay.close()
        logger.debug("channel closed", target=str(self.target))


# =============================================================================
# CREDENTIALS
# =============================================================================


def _tls_error(detail: str) -> ConfigurationError:
    return ConfigurationError(f"can't load TLS configuration: {detail}")


def load_ca_file(path: str) -> bytes:
    """Read a PEM bundle and check it holds at least one certificate.

    Raises:
        ConfigurationError: If the file is unreadable or has no certificate.
    """
    try:
        with open(path, "rb") as f:
            data = f.read()
    except OSError as e:
        raise _tls_error(f"can't read CA file '{path}': {e.strerror or e}") from e

    try:
        certificates = x509.load_pem_x509_certificates(data)
    except ValueError as e:
        raise _tls_error(f"no valid PEM certificate in '{path}'") from e
    logger.debug("loaded CA file", path=path, certificates=len(certificates))
    return data


def load_ca_path(path: str) -> bytes:
    """Concatenate every CA file found under a directory.

    The directory is walked recursively in sorted order; every regular file
    must contain at least one PEM certificate.

    Raises:
        ConfigurationError: If the directory is missing, empty, or contains
            a file that is not a PEM certificate bundle.
    """
    if not os.path.isdir(path):
        raise _tls_error(f"CA path '{path}' is not a directory")

    bundle = []
    for root, dirs, files in os.walk(path):
        dirs.sort()
        for name in sorted(files):
            bundle.append(load_ca_file(os.path.join(root, name)))

    if not bundle:
        raise _tls_error(f"no CA certificates found under '{path}'")
    return b"\n".join(bundle)


def resolve_credentials(security: TransportSecurity) -> Optional[grpc.ChannelCredentials]:
    """Translate the security mode into channel credentials.

    Performs no network I/O. ``TLS_INSECURE`` has no channel credentials:
    the channel is plaintext to an `InsecureTLSRelay` built by `connect`.

    Returns:
        Channel credentials, or None for plaintext and insecure TLS.

    Raises:
        ConfigurationError: If CA material can't be loaded.
    """
    mode = security.mode
    if mode in (SecurityMode.PLAINTEXT, SecurityMode.TLS_INSECURE):
        return None
    if mode is SecurityMode.TLS_SYSTEM_ROOTS:
        return grpc.ssl_channel_credentials()
    if mode is SecurityMode.TLS_CA_FILE:
        return grpc.ssl_channel_credentials(root_certificates=load_ca_file(security.ca_location))
    if mode is SecurityMode.TLS_CA_PATH:
        return grpc.ssl_channel_credentials(root_certificates=load_ca_path(security.ca_location))
    raise _tls_error(f"unsupported security mode '{mode}'")


# =============================================================================
# INSECURE TLS
# =============================================================================

_POLL_INTERVAL = 0.05
_CHUNK = 65536
_WOULD_BLOCK = (BlockingIOError, ssl.SSLWantReadError, ssl.SSLWantWriteError)


def _unverified_context() -> ssl.SSLContext:
    context = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
    context.check_hostname = False
    context.verify_mode = ssl.CERT_NONE
    context.set_alpn_protocols(["h2"])
    return context


def _send_all(sock: socket.socket, data: bytes) -> None:
    view = memoryview(data)
    while view:
        try:
            sent = sock.send(view)
        except _WOULD_BLOCK:
            select.select([], [sock], [], _POLL_INTERVAL)
            continue
        view = view[sent:]


class InsecureTLSRelay:
    """Loopback relay forwarding plaintext HTTP/2 to the target over
    unverified TLS.

    Each accepted connection opens its own TLS session to the target (ALPN
    ``h2``, any certificate accepted) and is pumped by a single thread, so
    an ``SSLSocket`` is never used from two threads at once. A failed
    upstream handshake closes the accepted connection, which the channel
    observes as a transport failure.

    Args:
        target: Address to relay to.
        deadline: Invocation deadline bounding each upstream handshake.
    """

    def __init__(self, target: Target, deadline: Deadline):
        self.target = target
        self.deadline = deadline
        self._closed = threading.Event()
        self._threads: list[threading.Thread] = []
        self._listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self._listener.bind(("127.0.0.1", 0))
        self._listener.listen(4)
        self._listener.settimeout(_POLL_INTERVAL)
        host, port = self._listener.getsockname()[:2]
        self.address = f"{host}:{port}"
        self._spawn(self._accept_loop)
        logger.debug("insecure TLS relay listening", target=str(target), relay=self.address)

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def close(self) -> None:
        if self._closed.is_set():
            return
        self._closed.set()
        self._listener.close()
        for thread in list(self._threads):
            thread.join(timeout=1.0)
        logger.debug("insecure TLS relay closed", target=str(self.target))

    def _spawn(self, func, *args) -> None:
        thread = threading.Thread(target=func, args=args, daemon=True)
        self._threads.append(thread)
        thread.start()

    def _accept_loop(self) -> None:
        while not self._closed.is_set():
            try:
                client, _ = self._listener.accept()
            except socket.timeout:
                continue
            except OSError:
                return
            self._spawn(self._bridge, client)

    def _open_upstream(self) -> ssl.SSLSocket:
        raw = socket.create_connection(
            (self.target.host, self.target.port),
            timeout=max(self.deadline.remaining(), _POLL_INTERVAL),
        )
        try:
            return _unverified_context().wrap_socket(raw, server_hostname=self.target.host)
        except BaseException:
            raw.close()
            raise

    def _bridge(self, client: socket.socket) -> None:
        with client:
            try:
                upstream = self._open_upstream()
            except (OSError, ValueError) as e:
                logger.debug("upstream TLS handshake failed", target=str(self.target), error=str(e))
                return
            with upstream:
                self._pump(client, upstream)

    def _pump(self, client: socket.socket, upstream: ssl.SSLSocket) -> None:
        client.setblocking(False)
        upstream.setblocking(False)
        peers = {client: upstream, upstream: client}
        with selectors.DefaultSelector() as selector:
            selector.register(client, selectors.EVENT_READ)
            selector.register(upstream, selectors.EVENT_READ)
            while not self._closed.is_set():
                for key, _ in selector.select(_POLL_INTERVAL):
                    source = key.fileobj
                    if not self._forward(source, peers[source]):
                        return

    def _forward(self, source: socket.socket, sink: socket.socket) -> bool:
        """Move readable bytes from ``source`` to ``sink``; False on EOF or error."""
        try:
            while True:
                try:
                    data = source.recv(_CHUNK)
                except _WOULD_BLOCK:
                    return True
                if not data:
                    return False
                _send_all(sink, data)
                if not isinstance(source, ssl.SSLSocket) or not source.pending():
                    return True
        except OSError as e:
            logger.debug("relay stream ended", target=str(self.target), error=str(e))
            return False


# =============================================================================
# CONNECT
# =============================================================================


def _await_ready(channel: grpc.Channel, deadline: Deadline) -> grpc.ChannelConnectivity:
    """Block until the channel settles or the deadline expires.

    Returns the last observed connectivity state. IDLE or CONNECTING means
    the deadline expired first.
    """
    settled = threading.Event()
    observed = {"state": grpc.ChannelConnectivity.IDLE}

    def on_change(state: grpc.ChannelConnectivity) -> None:
        observed["state"] = state
        if state in _TERMINAL_STATES:
            settled.set()

    channel.subscribe(on_change, try_to_connect=True)
    try:
        settled.wait(deadline.remaining())
    finally:
        channel.unsubscribe(on_change)
    return observed["state"]


def _open_channel(target: Target, security: TransportSecurity,
                  credentials: Optional[grpc.ChannelCredentials],
                  relay: Optional[InsecureTLSRelay]) -> grpc.Channel:
    if relay is not None:
        return grpc.insecure_channel(relay.address, options=[
            ("grpc.default_authority", target.address),
            ("grpc.enable_http_proxy", 0),
        ])
    if security.uses_tls:
        return grpc.secure_channel(target.address, credentials)
    return grpc.insecure_channel(target.address)


@contextmanager
def connect(target: Target, security: TransportSecurity, deadline: Deadline) -> Iterator[Connection]:
    """Open a connection to ``target`` and close it when the block exits.

    CA material is loaded before dialing, so configuration errors never
    cause network activity. The wait for the channel is bounded by
    ``deadline``.

    Args:
        target: Address to dial.
        security: Active transport security mode.
        deadline: Invocation deadline shared with the query phase.

    Yields:
        Connection: A channel in the READY state.

    Raises:
        ConfigurationError: If CA material can't be loaded.
        ConnectionFailure: If the channel fails or doesn't become ready
            before the deadline.
    """
    credentials = resolve_credentials(security)
    if deadline.expired():
        raise ConnectionFailure(reason="timeout")

    relay = None
    if security.mode is SecurityMode.TLS_INSECURE:
        relay = InsecureTLSRelay(target, deadline)

    connection = None
    try:
        logger.debug("dialing", target=str(target), security=security.mode.value)
        channel = _open_channel(target, security, credentials, relay)
        connection = Connection(target, channel, relay)

        state = _await_ready(channel, deadline)
        if state is not grpc.ChannelConnectivity.READY:
            reason = "timeout" if state in (
                grpc.ChannelConnectivity.IDLE, grpc.ChannelConnectivity.CONNECTING
            ) else "unavailable"
            logger.debug("connection failed", target=str(target), state=state.name, reason=reason)
            raise ConnectionFailure(reason=reason)

        logger.debug("connected", target=str(target), remaining=round(deadline.remaining(), 3))
        yield connection
    finally:
        if connection is not None:
            connection.close()
        elif relay is not None:
            relay.close()
