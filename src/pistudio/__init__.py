"""pistudio: command-line client for Copilot Studio and Power Platform.

The authentication subsystem lives in `pistudio.security.auth`.
"""

__version__ = "0.4.0"
