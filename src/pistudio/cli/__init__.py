"""Command-line interface for pistudio."""

from .main import cli, main

__all__ = ["cli", "main"]
