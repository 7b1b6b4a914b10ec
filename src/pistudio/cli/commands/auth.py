"""Authentication commands for pistudio CLI.

Commands:
    login   - Sign in via browser (PKCE) or device code
    logout  - Clear stored credentials
    status  - Show authentication status
    token   - Print an access token for a resource
    whoami  - Show the active user and tenant, including other signed-in tools
"""

from __future__ import annotations

__all__ = ["login", "logout", "status", "token", "whoami"]

import json as json_module

import click

from pistudio.constants import DEFAULT_TENANT
from pistudio.exceptions import PistudioError
from pistudio.security.auth.broker import LoginCallbacks
from pistudio.utils.cli import (
    CliState,
    create_broker,
    load_app_config_or_exit,
    resolve_profile_or_exit,
    to_click_exception,
)

from ..styling import style_dim, style_label, style_success, style_warning

_profile_option = click.option(
    "--profile",
    "-p",
    default=None,
    help="Profile name (default: PISTUDIO_PROFILE, config defaultProfile, or 'default')",
)


@click.command()
@_profile_option
@click.option("--tenant", default=None, help="Tenant id or domain (default: profile tenantId, else 'common')")
@click.option("--device-code", is_flag=True, help="Use the device code flow instead of the browser")
@click.option("--login-hint", default=None, help="Pre-fill the account name on the sign-in page")
@click.option("--no-browser", is_flag=True, help="Don't open a browser; print the sign-in URL instead")
@click.pass_obj
def login(
    state: CliState,
    profile: str | None,
    tenant: str | None,
    device_code: bool,
    login_hint: str | None,
    no_browser: bool,
) -> None:
    """Sign in and store a refresh token for the profile.

    Opens your browser for an Authorization Code + PKCE sign-in. If no
    local callback port can be opened, falls back to the device code flow.
    Use --device-code on machines without a browser (SSH, containers).
    """
    app_config = load_app_config_or_exit(state)
    profile_name = resolve_profile_or_exit(profile, app_config)
    tenant = tenant or app_config.get_profile(profile_name).tenant_id or DEFAULT_TENANT

    polling = False

    def show_browser_url(url: str, opened: bool) -> None:
        if opened:
            click.echo("Opening browser for sign-in...")
            click.echo(style_dim(f"If it did not open, visit: {url}"))
        else:
            click.echo("Open this URL in your browser to sign in:")
            click.echo(f"  {click.style(url, fg='blue', underline=True)}")
        click.echo()
        click.echo("Waiting for the browser sign-in to complete...")

    def show_device_code(message: str) -> None:
        click.echo(click.style("Authentication Required", fg="cyan", bold=True))
        click.echo()
        click.echo(f"  {message}")
        click.echo()
        click.echo("Waiting for authentication", nl=False)

    def on_poll() -> None:
        nonlocal polling
        polling = True
        click.echo(".", nl=False)

    def warn(message: str) -> None:
        click.echo(style_warning(message), err=True)

    callbacks = LoginCallbacks(
        show_device_code=show_device_code,
        show_browser_url=show_browser_url,
        warn=warn,
        on_poll=on_poll,
    )

    with create_broker(app_config, profile_name, open_browser=not no_browser) as broker:
        try:
            result = broker.login(
                profile_name,
                tenant=tenant,
                device_code=device_code,
                login_hint=login_hint,
                callbacks=callbacks,
            )
        except PistudioError as e:
            if polling:
                click.echo()  # Newline after dots
            raise to_click_exception(e) from e

    if polling:
        click.echo()  # Newline after dots
    click.echo()
    click.echo(style_success(f"Logged in as {result.user or 'unknown user'} (tenant: {result.tenant_id})"))
    click.echo(style_dim(f"  Profile: {result.profile}"))


@click.command()
@_profile_option
@click.pass_obj
def logout(state: CliState, profile: str | None) -> None:
    """Clear stored credentials for the profile.

    Safe to run repeatedly. You will need to run 'pistudio login' again
    before tokens can be fetched for this profile.
    """
    app_config = load_app_config_or_exit(state)
    profile_name = resolve_profile_or_exit(profile, app_config)

    with create_broker(app_config, profile_name) as broker:
        try:
            removed = broker.logout(profile_name)
        except PistudioError as e:
            raise to_click_exception(e) from e

    if removed:
        click.echo(style_success(f"Logged out of profile '{profile_name}'."))
    else:
        click.echo(style_dim(f"No stored credentials for profile '{profile_name}'."))


@click.command()
@_profile_option
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_obj
def status(state: CliState, profile: str | None, as_json: bool) -> None:
    """Show authentication status for the profile.

    Reads the stored credentials only; no network calls are made.
    """
    app_config = load_app_config_or_exit(state)
    profile_name = resolve_profile_or_exit(profile, app_config)

    with create_broker(app_config, profile_name) as broker:
        auth_status = broker.status(profile_name)

    if as_json:
        click.echo(json_module.dumps(auth_status.to_json_dict(), indent=2))
        return

    click.echo(f"{style_label('Profile')} {profile_name}")
    if not auth_status.logged_in:
        click.echo(style_dim("Not logged in."))
        click.echo()
        click.echo(f"Run 'pistudio login -p {profile_name}' to authenticate.")
        return

    document = auth_status.to_json_dict()
    click.echo(f"{style_label('Connected as')} {auth_status.connected_as or 'unknown user'}")
    click.echo(f"{style_label('Tenant')} {auth_status.tenant_id}")
    click.echo(f"{style_label('Acquired')} {document['acquiredAt']}")


@click.command()
@_profile_option
@click.option(
    "--resource",
    default=None,
    help="Resource URL the token is for (default: https://management.azure.com)",
)
@click.pass_obj
def token(state: CliState, profile: str | None, resource: str | None) -> None:
    """Print an access token for a resource.

    Uses the session cache, then the stored refresh token, then an
    installed m365 or az CLI. Never prompts; run 'pistudio login' first.
    """
    app_config = load_app_config_or_exit(state)
    profile_name = resolve_profile_or_exit(profile, app_config)
    tenant = app_config.get_profile(profile_name).tenant_id

    with create_broker(app_config, profile_name) as broker:
        try:
            access_token = broker.require_access_token(
                resource or broker.config.management_resource,
                profile_name,
                tenant,
            )
        except PistudioError as e:
            raise to_click_exception(e) from e

    click.echo(access_token)


@click.command()
@_profile_option
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_obj
def whoami(state: CliState, profile: str | None, as_json: bool) -> None:
    """Show the active user and tenant for the profile.

    Uses stored credentials first, then the profile's configured tenant,
    then whoever is signed in to an installed m365 or az CLI.
    """
    app_config = load_app_config_or_exit(state)
    profile_name = resolve_profile_or_exit(profile, app_config)
    configured_tenant = app_config.get_profile(profile_name).tenant_id

    with create_broker(app_config, profile_name) as broker:
        user = broker.active_user(profile_name)
        tenant_id = broker.active_tenant_id(profile_name, configured_tenant)

    if as_json:
        click.echo(json_module.dumps({"user": user, "tenantId": tenant_id}, indent=2))
        return

    click.echo(f"{style_label('Profile')} {profile_name}")
    click.echo(f"{style_label('User')} {user or style_dim('unknown')}")
    click.echo(f"{style_label('Tenant')} {tenant_id or style_dim('unknown')}")
