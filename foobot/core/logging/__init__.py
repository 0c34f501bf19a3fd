"""
foobot Logging Infrastructure

Exports the queue-backed logging pipeline, the chat `LogContext` and the
setup/teardown entry points used by the supervisor.
"""

from foobot.core.logging.logger import (
    LogContext,
    LoggingOptions,
    get_logger,
    logging_stats,
    setup_logging,
    shutdown_logging,
)

__all__ = [
    "setup_logging",
    "shutdown_logging",
    "get_logger",
    "logging_stats",
    "LogContext",
    "LoggingOptions",
]
