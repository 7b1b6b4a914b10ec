"""Security module for authentication and process-lifetime secrets.

This module provides:
- Authentication: token storage, session cache, login flows (security/auth/)
- Exit cleanup for ephemeral credentials (shutdown.py)

Note: Security exceptions are defined in pistudio.exceptions
"""
