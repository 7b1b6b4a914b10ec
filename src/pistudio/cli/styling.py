"""CLI output styling helpers.

- Cyan bold for labels
- Green with a checkmark for success
- Yellow for warnings
- Dim for empty states
"""

from __future__ import annotations

__all__ = [
    "style_dim",
    "style_label",
    "style_success",
    "style_warning",
]

import click


def style_label(label: str) -> str:
    """Cyan bold label with a colon suffix, e.g. "Tenant:"."""
    return click.style(f"{label}:", fg="cyan", bold=True)


def style_success(message: str) -> str:
    """Green message prefixed with a checkmark.

    Example:
        >>> click.echo(style_success("Logged in as a@b.com (tenant: contoso)"))
        ✓ Logged in as a@b.com (tenant: contoso)
    """
    return click.style(f"✓ {message}", fg="green")


def style_dim(message: str) -> str:
    """Dim text for neutral or empty states ("Not logged in.")."""
    return click.style(message, dim=True)


def style_warning(message: str) -> str:
    """Yellow bold "Warning: ..." line."""
    return click.style(f"Warning: {message}", fg="yellow", bold=True)
