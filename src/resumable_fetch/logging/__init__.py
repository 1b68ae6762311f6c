"""
Structured logging module.

Provides JSON and console logging with context propagation.
"""

from resumable_fetch.logging.context import (
    clear_log_context,
    get_log_context,
    set_log_context,
)
from resumable_fetch.logging.formatters import ConsoleFormatter, JSONFormatter
from resumable_fetch.logging.setup import get_logger, setup_logging
from resumable_fetch.logging.utilities import log_exception, log_with_context

__all__ = [
    "clear_log_context",
    "get_log_context",
    "set_log_context",
    "ConsoleFormatter",
    "JSONFormatter",
    "get_logger",
    "setup_logging",
    "log_exception",
    "log_with_context",
]
