"""Fallback credential sources.

When neither the session cache nor the stored refresh token yields an
access token, the broker asks other sanctioned tools already logged in on
this machine. Sources are tried in order; each one either returns a token
or None. They never prompt and never raise for an unavailable tool.

The same tools also answer "who is signed in" (tenant and user) for
machines where pistudio itself was never logged in.

Adding a provider means adding a class with `name`, `try_get_token` and
`try_get_identity` and putting it in the list passed to the broker.
"""

from __future__ import annotations

__all__ = [
    "AzureCliSource",
    "CommandCredentialSource",
    "CredentialSource",
    "M365CliSource",
    "SourceIdentity",
    "default_credential_sources",
]

import json
import shutil
import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Protocol

from pistudio.telemetry.system_logger import get_system_logger

_logger = get_system_logger()

# External CLIs can be slow to start (node, python)
_COMMAND_TIMEOUT_SECONDS = 60


@dataclass(frozen=True)
class SourceIdentity:
    """Account another tool is signed in with.

    Attributes:
        tenant_id: Tenant id, if the tool reported one.
        user: User principal, if the tool reported one.
    """

    tenant_id: str | None = None
    user: str | None = None


class CredentialSource(Protocol):
    """Something that may mint an access token for a resource."""

    name: str

    def try_get_token(self, resource: str, tenant: str | None) -> str | None:
        """Return a token for resource, or None if this source cannot."""
        ...

    def try_get_identity(self) -> SourceIdentity | None:
        """Return the signed-in account, or None if this source has none."""
        ...


class CommandCredentialSource(ABC):
    """Base class for sources backed by an installed command-line tool."""

    name = "command"
    executable = ""

    @abstractmethod
    def build_command(self, executable: str, resource: str, tenant: str | None) -> list[str]:
        """Argument vector that prints an access token for resource."""

    @abstractmethod
    def build_identity_command(self, executable: str) -> list[str]:
        """Argument vector that prints the signed-in account as a JSON object."""

    @abstractmethod
    def parse_identity(self, data: dict[str, Any]) -> SourceIdentity:
        """Pick tenant and user out of the identity command's JSON."""

    def try_get_token(self, resource: str, tenant: str | None) -> str | None:
        executable = shutil.which(self.executable)
        if executable is None:
            return None

        output = self._run(self.build_command(executable, resource, tenant))
        if output is None:
            return None

        token = output.strip().strip('"')
        if not token or token == "null":
            return None
        return token

    def try_get_identity(self) -> SourceIdentity | None:
        executable = shutil.which(self.executable)
        if executable is None:
            return None

        output = self._run(self.build_identity_command(executable))
        if output is None:
            return None

        try:
            data = json.loads(output)
        except json.JSONDecodeError:
            return None
        if not isinstance(data, dict):
            return None

        identity = self.parse_identity(data)
        if not identity.tenant_id and not identity.user:
            return None
        return identity

    def _run(self, command: list[str]) -> str | None:
        """Run a tool command and return stdout, or None on any failure."""
        try:
            completed = subprocess.run(
                command,
                capture_output=True,
                text=True,
                timeout=_COMMAND_TIMEOUT_SECONDS,
                check=False,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            _logger.debug(
                {
                    "event": "credential_source_failed",
                    "source": self.name,
                    "error": str(e),
                    "error_type": type(e).__name__,
                }
            )
            return None

        if completed.returncode != 0:
            _logger.debug(
                {
                    "event": "credential_source_failed",
                    "source": self.name,
                    "returncode": completed.returncode,
                }
            )
            return None
        return completed.stdout


def _text(value: object) -> str | None:
    return str(value) if isinstance(value, str) and value else None


class M365CliSource(CommandCredentialSource):
    """CLI for Microsoft 365 (`m365 util accesstoken get`, `m365 status`)."""

    name = "m365"
    executable = "m365"

    def build_command(self, executable: str, resource: str, tenant: str | None) -> list[str]:
        return [executable, "util", "accesstoken", "get", "--resource", resource]

    def build_identity_command(self, executable: str) -> list[str]:
        return [executable, "status", "--output", "json"]

    def parse_identity(self, data: dict[str, Any]) -> SourceIdentity:
        return SourceIdentity(tenant_id=_text(data.get("tenantId")), user=_text(data.get("connectedAs")))


class AzureCliSource(CommandCredentialSource):
    """Azure CLI (`az account get-access-token`, `az account show`)."""

    name = "az"
    executable = "az"

    def build_command(self, executable: str, resource: str, tenant: str | None) -> list[str]:
        command = [
            executable,
            "account",
            "get-access-token",
            "--resource",
            resource,
            "--query",
            "accessToken",
            "-o",
            "tsv",
        ]
        if tenant:
            command.extend(["--tenant", tenant])
        return command

    def build_identity_command(self, executable: str) -> list[str]:
        return [executable, "account", "show", "--output", "json"]

    def parse_identity(self, data: dict[str, Any]) -> SourceIdentity:
        user = data.get("user")
        name = user.get("name") if isinstance(user, dict) else None
        return SourceIdentity(tenant_id=_text(data.get("tenantId")), user=_text(name))


def default_credential_sources() -> list[CredentialSource]:
    """m365 first, then az."""
    return [M365CliSource(), AzureCliSource()]
