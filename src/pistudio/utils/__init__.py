"""Shared utilities for pistudio."""
