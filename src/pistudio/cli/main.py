"""Main CLI entry point for pistudio.

Defines the CLI group and registers all subcommands.

Commands:
    login   - Sign in (browser with PKCE, or --device-code)
    logout  - Forget stored credentials for a profile
    status  - Show login status for a profile
    token   - Print an access token for a resource
    whoami  - Show the active user and tenant

Subcommand help:
    pistudio COMMAND -h         Show help for a specific command
"""

from __future__ import annotations

__all__ = ["cli"]

import logging
import os
import sys
from pathlib import Path

import click

from pistudio import __version__
from pistudio.telemetry.system_logger import configure_system_logger_file, set_console_level
from pistudio.utils.cli import CliState

from .commands.auth import login, logout, status, token, whoami


class ReorderedGroup(click.Group):
    """Custom group that shows commands before custom help text."""

    def format_epilog(self, ctx: click.Context, formatter: click.HelpFormatter) -> None:
        """Add extra help after commands section."""
        formatter.write(
            """
Quick Start:
  pistudio login -p dev               Sign in with your browser
  pistudio login -p dev --device-code Sign in from a machine without a browser
  pistudio status -p dev              Show who is signed in
  pistudio token --resource URL       Print a bearer token for URL
  pistudio whoami -p dev              Show the active user and tenant

Profiles are read from ./config/copilot-export.json (override with
--config or PISTUDIO_CONFIG_FILE). The active profile is --profile, then
PISTUDIO_PROFILE, then the file's defaultProfile, then "default".
"""
        )


@click.group(
    cls=ReorderedGroup,
    invoke_without_command=True,
    context_settings={"help_option_names": ["-h", "--help"]},
)
@click.option("--version", "-v", is_flag=True, help="Show version")
@click.option("--verbose", is_flag=True, help="Show informational log messages")
@click.option("--debug", is_flag=True, help="Show debug log messages")
@click.option(
    "--log-file",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Also write a JSONL debug log to this file (or set PISTUDIO_LOG_FILE)",
)
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Profile config file (default: ./config/copilot-export.json)",
)
@click.pass_context
def cli(
    ctx: click.Context,
    version: bool,
    verbose: bool,
    debug: bool,
    log_file: Path | None,
    config_path: Path | None,
) -> None:
    """pistudio: Azure AD sign-in and access tokens for Power Platform tooling."""
    if version:
        click.echo(f"pistudio {__version__}")
        sys.exit(0)

    if debug:
        set_console_level(logging.DEBUG)
    elif verbose:
        set_console_level(logging.INFO)

    log_path = log_file
    if log_path is None and os.environ.get("PISTUDIO_LOG_FILE"):
        log_path = Path(os.environ["PISTUDIO_LOG_FILE"])
    if log_path is not None:
        try:
            configure_system_logger_file(log_path.expanduser())
        except OSError as e:
            raise click.ClickException(f"Cannot open log file {log_path}: {e}") from e

    ctx.obj = CliState(config_path=config_path)

    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


# Register commands
cli.add_command(login)
cli.add_command(logout)
cli.add_command(status)
cli.add_command(token)
cli.add_command(whoami)


def main() -> None:
    """CLI entry point."""
    cli()
