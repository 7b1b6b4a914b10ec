"""System logger for operational events.

This module provides a singleton system logger for everything the
authentication subsystem wants to report that is not regular CLI output
(refresh failures, fallback source usage, listener lifecycle).

Logging strategy:
- Console (stderr): WARNING and above by default, lowered by --verbose/--debug
- File (optional JSONL): DEBUG and above, configured via configure_system_logger_file()

Messages are dicts with an "event" key and usually a "message" key.
Secrets (tokens, codes, verifiers) are never logged.
"""

from __future__ import annotations

__all__ = [
    "ConsoleFormatter",
    "configure_system_logger_file",
    "get_system_logger",
    "set_console_level",
]

import logging
import sys
from pathlib import Path

from pistudio.constants import APP_NAME
from pistudio.utils.file_helpers import ensure_secure_directory, set_secure_permissions
from pistudio.utils.logging.iso_formatter import ISO8601Formatter


class ConsoleFormatter(logging.Formatter):
    """Human-readable formatter for console output.

    Extracts 'message' or 'event' field from dict messages for cleaner stderr output.
    """

    def format(self, record: logging.LogRecord) -> str:
        """Format log record for human-readable console output.

        Args:
            record: The log record to format.

        Returns:
            str: Formatted log message with lowercase level prefix.
        """
        if isinstance(record.msg, dict):
            msg = record.msg.get("message") or record.msg.get("event", "")
        else:
            msg = record.getMessage()
        return f"{record.levelname.lower()}: {msg}"


# Module-level singleton logger
_system_logger: logging.Logger | None = None
_console_handler: logging.Handler | None = None
_file_handler_configured: bool = False


def get_system_logger() -> logging.Logger:
    """Get the singleton system logger instance.

    Creates the logger on first call with a stderr handler only.
    File handler is added later via configure_system_logger_file().

    Returns:
        logging.Logger: Configured system logger instance.

    Example:
        >>> logger = get_system_logger()
        >>> logger.warning({"event": "refresh_failed", "message": "..."})
    """
    global _system_logger, _console_handler

    if _system_logger is not None:
        return _system_logger

    _system_logger = logging.getLogger(f"{APP_NAME}.system")
    _system_logger.setLevel(logging.DEBUG)
    _system_logger.propagate = False

    for handler in _system_logger.handlers:
        handler.close()
    _system_logger.handlers.clear()

    _console_handler = logging.StreamHandler(sys.stderr)
    _console_handler.setLevel(logging.WARNING)
    _console_handler.setFormatter(ConsoleFormatter())
    _system_logger.addHandler(_console_handler)

    return _system_logger


def set_console_level(level: int) -> None:
    """Change the stderr handler's level.

    Args:
        level: logging level (e.g. logging.INFO for --verbose).
    """
    get_system_logger()
    if _console_handler is not None:
        _console_handler.setLevel(level)


def configure_system_logger_file(log_path: Path) -> None:
    """Add a JSONL file handler to the system logger.

    Only the first call has an effect. The log directory is created with
    owner-only permissions.

    Args:
        log_path: Path to the JSONL log file.

    Raises:
        OSError: If the log directory or file cannot be created.
    """
    global _file_handler_configured

    if _file_handler_configured:
        return

    logger = get_system_logger()

    ensure_secure_directory(log_path.parent)

    file_handler = logging.FileHandler(log_path, mode="a", encoding="utf-8")
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(ISO8601Formatter())
    logger.addHandler(file_handler)
    set_secure_permissions(log_path)

    _file_handler_configured = True
