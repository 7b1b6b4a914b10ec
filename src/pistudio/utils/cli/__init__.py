"""CLI utility functions.

Re-exports helpers for convenient importing.
"""

from .helpers import (
    CliState,
    create_broker,
    load_app_config_or_exit,
    resolve_profile_or_exit,
    to_click_exception,
)

__all__ = [
    "CliState",
    "create_broker",
    "load_app_config_or_exit",
    "resolve_profile_or_exit",
    "to_click_exception",
]
