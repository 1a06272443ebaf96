"""Logging utilities with custom trace level."""

import logging
from typing import Any

# Define custom TRACE level (lower than DEBUG)
TRACE_LEVEL = 5

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def add_trace_level() -> None:
    """Add a custom TRACE logging level."""
    logging.addLevelName(TRACE_LEVEL, "TRACE")

    def trace(self: logging.Logger, message: str, *args: Any, **kwargs: Any) -> None:
        """Log a message with severity 'TRACE'."""
        if self.isEnabledFor(TRACE_LEVEL):
            self._log(TRACE_LEVEL, message, args, **kwargs)

    logging.Logger.trace = trace  # type: ignore[attr-defined]


def get_logger(name: str) -> logging.Logger:
    """Get a logger with trace support."""
    if not hasattr(logging.Logger, "trace"):
        add_trace_level()

    return logging.getLogger(name)


def resolve_log_level(verbose: bool = False, trace: bool = False) -> int:
    """
    Map CLI verbosity flags onto a logging level.

    Args:
        verbose: Enable debug output
        trace: Enable trace output (takes precedence over verbose)

    Returns:
        Logging level number
    """
    if trace:
        return TRACE_LEVEL
    if verbose:
        return logging.DEBUG
    return logging.INFO


def configure_logging(verbose: bool = False, trace: bool = False) -> int:
    """
    Configure root logging for the command line front end.

    Args:
        verbose: Enable debug output
        trace: Enable trace output

    Returns:
        The level that was applied
    """
    if not hasattr(logging.Logger, "trace"):
        add_trace_level()

    level = resolve_log_level(verbose, trace)
    logging.basicConfig(level=level, format=LOG_FORMAT, force=True)
    return level
