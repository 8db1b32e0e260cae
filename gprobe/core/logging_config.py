"""Logging configuration for gprobe.

Implement a declarative configuration pattern that strictly separates
configuration generation from execution. This module provides:

    - `get_logging_config`: Generate a standard Python logging configuration
      dictionary based on probe settings.
    - `configure_structlog_wrapper`: Configure structlog's logger factory and
      processor chain.
    - Context management utilities via `structlog.contextvars` for binding the
      probed target and service to every log entry of an invocation.

All log output goes to stderr; stdout carries only the status line.
"""

from typing import TYPE_CHECKING, Any

import structlog
from structlog.types import Processor

if TYPE_CHECKING:
    from gprobe.config import Settings


# =============================================================================
# CONFIGURATION GENERATORS
# =============================================================================


def get_common_processors() -> list[Processor]:
    """Return the processor chain common to both JSON and console outputs.

    Returns:
        list[Processor]: Ordered list of structlog processors.
    """
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]


def get_logging_config(settings: "Settings") -> dict[str, Any]:
    """Generate a logging configuration dictionary for `logging.config.dictConfig`.

    Use JSON output when ``LOG_FORMAT`` is ``json`` (probes run under log
    collectors in orchestrated environments) and plain console output
    otherwise.

    Note:
        This is a pure function that does not modify global state.

    Args:
        settings: Probe settings containing LOG_LEVEL and LOG_FORMAT.

    Returns:
        dict[str, Any]: Configuration dictionary compatible with dictConfig.
    """
    log_level = settings.LOG_LEVEL.upper()

    if settings.LOG_FORMAT == "json":
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=False)

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "default": {
                "()": "structlog.stdlib.ProcessorFormatter",
                "processor": renderer,
                "foreign_pre_chain": get_common_processors(),
            },
        },
        "handlers": {
            "console": {
                "level": log_level,
                "class": "logging.StreamHandler",
                "formatter": "default",
                "stream": "ext://sys.stderr",
            },
        },
        "loggers": {
            "gprobe": {
                "handlers": ["console"],
                "level": log_level,
                "propagate": False,
            },
            **{
                lib: {"handlers": ["console"], "level": "WARNING", "propagate": False}
                for lib in settings.LOGGING_NOISY_MODULES
            },
        },
    }


def configure_structlog_wrapper(settings: "Settings") -> None:
    """Configure the structlog wrapper and processor chain.

    Args:
        settings: Probe settings (reserved for future configuration).
    """
    structlog_processors = [
        structlog.stdlib.filter_by_level,
        *get_common_processors(),
        structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
    ]

    structlog.configure(
        processors=structlog_processors,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        # loggers must follow reconfiguration between invocations
        cache_logger_on_first_use=False,
    )


# =============================================================================
# LOGGER RETRIEVAL
# =============================================================================


def get_logger(name: str | None = None) -> Any:
    """Retrieve a configured structlog logger instance.

    Args:
        name: Optional logger name. If omitted, return the root logger.

    Returns:
        A bound structlog logger instance.
    """
    if name:
        return structlog.get_logger(name)
    return structlog.get_logger()


# =============================================================================
# CONTEXT VARIABLE EXPORTS
# =============================================================================

bind_contextvars = structlog.contextvars.bind_contextvars
unbind_contextvars = structlog.contextvars.unbind_contextvars
clear_contextvars = structlog.contextvars.clear_contextvars
