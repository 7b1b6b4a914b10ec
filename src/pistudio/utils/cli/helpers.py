"""Shared helpers for CLI commands."""

from __future__ import annotations

__all__ = [
    "CliState",
    "create_broker",
    "load_app_config_or_exit",
    "resolve_profile_or_exit",
    "to_click_exception",
]

from dataclasses import dataclass
from pathlib import Path

import click

from pistudio.config import (
    AppConfig,
    AuthConfig,
    load_app_config,
    resolve_active_profile,
    resolve_config_path,
)
from pistudio.exceptions import PistudioError
from pistudio.security.auth.broker import AccessTokenBroker


@dataclass
class CliState:
    """Global options shared by every command (click context object).

    Attributes:
        config_path: Value of --config, if given.
    """

    config_path: Path | None = None


def to_click_exception(error: PistudioError) -> click.ClickException:
    """Convert a pistudio error into a ClickException with the same exit code."""
    exc = click.ClickException(str(error))
    exc.exit_code = error.exit_code
    return exc


def load_app_config_or_exit(state: CliState) -> AppConfig:
    """Load the profile config file, exiting on failure.

    A missing file is fine and yields an empty config.

    Raises:
        click.ClickException: If the file exists but is invalid (exit code 2).
    """
    try:
        return load_app_config(resolve_config_path(state.config_path))
    except PistudioError as e:
        raise to_click_exception(e) from e


def resolve_profile_or_exit(cli_profile: str | None, app_config: AppConfig) -> str:
    """Resolve the active profile name, exiting if it is not usable.

    Raises:
        click.ClickException: If the name is not a safe file name (exit code 2).
    """
    try:
        return resolve_active_profile(cli_profile, app_config)
    except PistudioError as e:
        raise to_click_exception(e) from e


def create_broker(
    app_config: AppConfig,
    profile: str,
    *,
    open_browser: bool = True,
) -> AccessTokenBroker:
    """Build a broker for a profile from environment and profile config.

    Args:
        app_config: Loaded profile config.
        profile: Active profile (its clientId overrides the default).
        open_browser: False to print the sign-in URL instead of opening it.
    """
    auth_config = app_config.auth_config_for(AuthConfig.from_env(), profile)
    if open_browser:
        return AccessTokenBroker(auth_config)
    return AccessTokenBroker(auth_config, open_browser=None)
