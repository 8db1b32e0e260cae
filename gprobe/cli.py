"""Command-line entry point for gprobe.

Parse the command line, build the invocation configuration, run one probe
and map its outcome to stdout, stderr and the process exit code:

Exit Codes:
    0: Status retrieved and considered healthy.
    1: Usage error (bad arguments or flags).
    2: Status retrieved but not SERVING, without --no-fail.
    127: Any other failure (connection, protocol, TLS configuration).

Environment Variables:
    GPROBE_CAFILE: Fallback for --tls-cafile.
    GPROBE_CAPATH: Fallback for --tls-capath.
    GPROBE_LOG_LEVEL: Diagnostic log level on stderr (default: warning).
    GPROBE_LOG_FORMAT: ``console`` or ``json`` (default: console).
"""

import argparse
import logging.config
import sys
import time
from typing import Optional, Sequence, TextIO

from pydantic import ValidationError

from gprobe import __version__
from gprobe.config import DEFAULT_TIMEOUT, Settings, create_config, parse_duration
from gprobe.core.deadline import Deadline
from gprobe.core.errors import ConfigurationError, ExitCode, UsageError
from gprobe.core.logging_config import (
    bind_contextvars,
    clear_contextvars,
    configure_structlog_wrapper,
    get_logger,
    get_logging_config,
)
from gprobe.probe import check

PROG = "gprobe"
DESCRIPTION = (
    "universal gRPC health-checker. "
    "See https://github.com/grpc/grpc/blob/master/doc/health-checking.md"
)


class ProbeArgumentParser(argparse.ArgumentParser):
    """Argument parser that reports problems as `UsageError` instead of exiting."""

    def error(self, message: str):
        raise UsageError(message)


def duration(text: str) -> float:
    return parse_duration(text)


def create_parser() -> ProbeArgumentParser:
    parser = ProbeArgumentParser(
        prog=PROG,
        usage=f"{PROG} [options] server_address [service_name]",
        description=DESCRIPTION,
        add_help=False,
    )
    parser.add_argument("args", nargs="*", metavar="server_address [service_name]",
                        help=argparse.SUPPRESS)
    parser.add_argument("-t", "--timeout", type=duration, default=DEFAULT_TIMEOUT,
                        metavar="DURATION", help="Operation timeout (default: 1s)")
    parser.add_argument("-n", "--no-fail", action="store_true",
                        help="Do not fail if service status is other than SERVING")
    parser.add_argument("--tls", action="store_true",
                        help="Use TLS, verify server with CA certificates installed on this system")
    parser.add_argument("--tls-insecure", action="store_true",
                        help="Use TLS, do NOT verify server (accept any certificate)")
    parser.add_argument("--tls-cafile", metavar="PATH",
                        help="Use TLS, verify server with CA certificate stored in specified file "
                             "[$GPROBE_CAFILE]")
    parser.add_argument("--tls-capath", metavar="PATH",
                        help="Use TLS, verify server with CA certificates located under specified path "
                             "[$GPROBE_CAPATH]")
    parser.add_argument("-h", "--help", action="store_true", help="Show this help and exit")
    parser.add_argument("-v", "--version", action="store_true", help="Print the version and exit")
    return parser


def configure_logging(settings: Settings) -> None:
    logging.config.dictConfig(get_logging_config(settings))
    configure_structlog_wrapper(settings)


def run(
    argv: Optional[Sequence[str]] = None,
    stdout: Optional[TextIO] = None,
    stderr: Optional[TextIO] = None,
) -> int:
    """Run one probe invocation and return its exit code.

    Args:
        argv: Command-line arguments without the program name; defaults to
            ``sys.argv[1:]``.
        stdout: Stream for the status line and help/version output.
        stderr: Stream for error messages.

    Returns:
        int: Process exit code.
    """
    started = time.monotonic()
    argv = sys.argv[1:] if argv is None else list(argv)
    stdout = stdout or sys.stdout
    stderr = stderr or sys.stderr
    parser = create_parser()

    try:
        settings = Settings()
    except ValidationError as e:
        print(f"invalid GPROBE_* environment: {e.errors()[0]['msg']}", file=stderr)
        return int(ConfigurationError.exit_code)
    configure_logging(settings)
    logger = get_logger(__name__)

    try:
        options = parser.parse_intermixed_args(argv)
        if options.help:
            print(parser.format_help(), end="", file=stdout)
            return int(ExitCode.HEALTHY)
        if options.version:
            print(__version__, file=stdout)
            return int(ExitCode.HEALTHY)
        config = create_config(
            options.args,
            settings=settings,
            timeout=options.timeout,
            no_fail=options.no_fail,
            tls=options.tls,
            tls_insecure=options.tls_insecure,
            tls_cafile=options.tls_cafile,
            tls_capath=options.tls_capath,
        )
    except UsageError as e:
        print(parser.format_help(), end="", file=stderr)
        print(e.message, file=stderr)
        return int(e.exit_code)

    bind_contextvars(target=config.target.address, service=config.service)
    try:
        logger.debug("probe started", timeout=config.timeout, security=config.security.mode.value)
        outcome = check(config, Deadline.since(started, config.timeout))
    finally:
        clear_contextvars()

    if outcome.status is not None:
        print(outcome.status.value, file=stdout)
    if outcome.exit_code != ExitCode.HEALTHY:
        print(outcome.message, file=stderr)
    return int(outcome.exit_code)


def main() -> None:
    sys.exit(run())


if __name__ == "__main__":
    main()
