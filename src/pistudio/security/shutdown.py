"""Process exit cleanup for pistudio.

Ephemeral authentication state (the session cache, the PKCE listener and
its code handoff file) must be released on every exit path: normal exit,
error exit, and termination by signal. Callbacks registered here run:

- at interpreter exit (atexit)
- on SIGTERM / SIGHUP, before chaining to whatever handler the host
  process had installed (or exiting with 128 + signum if it had none)

SIGINT is left alone: Python turns it into KeyboardInterrupt, which
unwinds `finally` blocks and then runs atexit.

Callbacks must be idempotent; a timeout path and a signal path may both
fire them.
"""

from __future__ import annotations

__all__ = [
    "register_exit_cleanup",
    "run_exit_cleanups",
    "unregister_exit_cleanup",
]

import atexit
import signal
import sys
import threading
from collections.abc import Callable
from types import FrameType
from typing import Any

from pistudio.telemetry.system_logger import get_system_logger

_logger = get_system_logger()

_CHAINED_SIGNALS: tuple[str, ...] = ("SIGTERM", "SIGHUP")

_cleanups: list[Callable[[], None]] = []
_previous_handlers: dict[int, Any] = {}
# Reentrant: the signal handler runs cleanups on the main thread, which may hold it
_lock = threading.RLock()
_installed = False


def _install() -> None:
    """Install atexit hook and chained signal handlers once."""
    global _installed
    if _installed:
        return
    _installed = True

    atexit.register(run_exit_cleanups)

    # signal.signal only works from the main thread of the main interpreter
    if threading.current_thread() is not threading.main_thread():
        _logger.debug({"event": "signal_handlers_skipped", "reason": "not_main_thread"})
        return

    for name in _CHAINED_SIGNALS:
        signum = getattr(signal, name, None)
        if signum is None:  # SIGHUP does not exist on Windows
            continue
        try:
            _previous_handlers[signum] = signal.getsignal(signum)
            signal.signal(signum, _handle_signal)
        except (OSError, ValueError) as e:
            _logger.debug({"event": "signal_handler_failed", "signal": name, "error": str(e)})


def _handle_signal(signum: int, frame: FrameType | None) -> None:
    """Run cleanups, then defer to the previously installed handler."""
    run_exit_cleanups()

    previous = _previous_handlers.get(signum, signal.SIG_DFL)
    if callable(previous):
        previous(signum, frame)
        return
    if previous == signal.SIG_IGN:
        return
    # SIG_DFL (or None for handlers not installed from Python)
    sys.exit(128 + signum)


def register_exit_cleanup(callback: Callable[[], None]) -> None:
    """Register an idempotent cleanup callback for all exit paths."""
    with _lock:
        _install()
        if callback not in _cleanups:
            _cleanups.append(callback)


def unregister_exit_cleanup(callback: Callable[[], None]) -> None:
    """Remove a callback once its resource has been released normally."""
    with _lock:
        try:
            _cleanups.remove(callback)
        except ValueError:
            pass


def run_exit_cleanups() -> None:
    """Run every registered callback, most recent first.

    A failing callback is logged and does not stop the others.
    """
    with _lock:
        callbacks = list(reversed(_cleanups))

    for callback in callbacks:
        try:
            callback()
        except Exception as e:
            # Cleanup during exit must not raise
            _logger.debug(
                {
                    "event": "exit_cleanup_failed",
                    "callback": getattr(callback, "__qualname__", repr(callback)),
                    "error": str(e),
                    "error_type": type(e).__name__,
                }
            )
