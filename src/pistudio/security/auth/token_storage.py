"""Durable per-profile token storage.

One JSON file per profile under an owner-only directory:

    <auth_dir>/<profile>.json
    {"tenant_id": ..., "refresh_token": ..., "user": ..., "acquired_at": ...}

Only refresh tokens and identity metadata are persisted. Access tokens
live in the process-scoped SessionCache and never touch this store.

Writes are atomic (temp file in the same directory + rename), so a
lock-free reader sees either the old or the new record. Read-modify-write
of a rotated refresh token is serialized across processes with a
directory lock scoped to the profile (see ProfileTokenStore.lock).
"""

from __future__ import annotations

__all__ = [
    "ProfileTokenStore",
    "StoredProfile",
]

import shutil
import time
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path

from pydantic import BaseModel, ValidationError, field_serializer

from pistudio.config import validate_profile_name
from pistudio.constants import PROFILE_LOCK_RETRY_SECONDS, PROFILE_LOCK_STALE_SECONDS
from pistudio.exceptions import TokenStorageError
from pistudio.telemetry.system_logger import get_system_logger
from pistudio.utils.file_helpers import atomic_write_json, ensure_secure_directory

_logger = get_system_logger()


class StoredProfile(BaseModel):
    """Persisted identity for one profile.

    Attributes:
        tenant_id: Resolved tenant id (or "common" if never resolved).
        refresh_token: Latest refresh token. Sensitive.
        user: User principal for display.
        acquired_at: UTC time the record was written.
    """

    tenant_id: str
    refresh_token: str
    user: str = ""
    acquired_at: datetime

    @field_serializer("acquired_at")
    def _serialize_acquired_at(self, value: datetime) -> str:
        return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class ProfileTokenStore:
    """File-per-profile refresh token store.

    Usage:
        store = ProfileTokenStore(Path("~/.config/pistudio/tokens").expanduser())
        store.write("dev", "tenant-x", "RT1", "a@b.com")
        store.read("dev", "user")  # "a@b.com"
        store.delete("dev")
    """

    def __init__(
        self,
        directory: Path,
        *,
        lock_stale_seconds: float = PROFILE_LOCK_STALE_SECONDS,
    ) -> None:
        """Initialize the store.

        Args:
            directory: Token directory (created lazily, owner-only).
            lock_stale_seconds: Age after which a profile lock is force-cleared.
        """
        self._directory = directory
        self._lock_stale_seconds = lock_stale_seconds

    @property
    def directory(self) -> Path:
        return self._directory

    def path_for(self, profile: str) -> Path:
        """Token file path for a profile.

        Raises:
            ConfigurationError: If the profile name is not a safe file name.
        """
        return self._directory / f"{validate_profile_name(profile)}.json"

    def write(self, profile: str, tenant_id: str, refresh_token: str, user: str | None) -> StoredProfile:
        """Overwrite a profile record atomically.

        Args:
            profile: Profile name.
            tenant_id: Tenant id to persist.
            refresh_token: Refresh token to persist.
            user: User principal (display only).

        Returns:
            The record that was written.

        Raises:
            TokenStorageError: If the directory or file cannot be written.
        """
        record = StoredProfile(
            tenant_id=tenant_id,
            refresh_token=refresh_token,
            user=user or "",
            acquired_at=datetime.now(timezone.utc),
        )
        path = self.path_for(profile)
        try:
            atomic_write_json(path, record.model_dump(mode="json"), prefix=f".{profile}_")
        except OSError as e:
            raise TokenStorageError(f"Failed to save credentials for profile '{profile}': {e}") from e

        _logger.debug({"event": "profile_written", "profile": profile, "tenant_id": tenant_id})
        return record

    def read_profile(self, profile: str) -> StoredProfile | None:
        """Load a full profile record.

        Returns None when the profile does not exist or cannot be parsed;
        "not logged in" is an expected state, not an error.
        """
        path = self.path_for(profile)
        try:
            data = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as e:
            _logger.debug(
                {
                    "event": "profile_read_failed",
                    "profile": profile,
                    "error": str(e),
                    "error_type": type(e).__name__,
                }
            )
            return None

        try:
            return StoredProfile.model_validate_json(data)
        except ValidationError as e:
            _logger.warning(
                {
                    "event": "profile_corrupted",
                    "profile": profile,
                    "message": f"Ignoring unreadable credentials for profile '{profile}'",
                    "error_count": e.error_count(),
                }
            )
            return None

    def read(self, profile: str, field: str) -> str | None:
        """Read a single field of a profile record.

        Args:
            profile: Profile name.
            field: One of tenant_id, refresh_token, user, acquired_at.

        Returns:
            Field value as a string, or None if the profile or field is absent.
        """
        record = self.read_profile(profile)
        if record is None:
            return None
        value = record.model_dump(mode="json").get(field)
        return str(value) if value else None

    def delete(self, profile: str) -> bool:
        """Remove a profile record. Idempotent.

        Returns:
            True if a record was removed, False if none existed.

        Raises:
            TokenStorageError: If the file exists but cannot be removed.
        """
        path = self.path_for(profile)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        except OSError as e:
            raise TokenStorageError(f"Failed to delete credentials for profile '{profile}': {e}") from e

        _logger.debug({"event": "profile_deleted", "profile": profile})
        return True

    def exists(self, profile: str) -> bool:
        """True iff a record with a non-empty refresh token is present.

        Liveness check only; the token is not checked against the server.
        """
        record = self.read_profile(profile)
        return record is not None and bool(record.refresh_token)

    def rotate_refresh_token(self, profile: str, refresh_token: str, tenant_id: str) -> StoredProfile:
        """Persist a rotated refresh token under the profile lock.

        Keeps the stored user and tenant; `tenant_id` is used only if the
        record vanished between the refresh and this write.

        Raises:
            TokenStorageError: If the record cannot be written.
        """
        with self.lock(profile):
            current = self.read_profile(profile)
            user = current.user if current else ""
            tenant = current.tenant_id if current else tenant_id
            return self.write(profile, tenant, refresh_token, user)

    @contextmanager
    def lock(self, profile: str) -> Iterator[None]:
        """Directory-based mutual exclusion for one profile's record.

        mkdir is atomic on every platform, so whichever process creates
        `.<profile>.lock` holds the lock. A lock directory older than
        lock_stale_seconds belongs to a crashed process and is removed.

        Yields:
            None while the lock is held.

        Raises:
            TokenStorageError: If the token directory cannot be created.
        """
        lock_dir = self._directory / f".{validate_profile_name(profile)}.lock"
        try:
            ensure_secure_directory(self._directory)
        except OSError as e:
            raise TokenStorageError(f"Cannot create token directory {self._directory}: {e}") from e

        while True:
            try:
                lock_dir.mkdir(mode=0o700)
                break
            except FileExistsError:
                try:
                    age = time.time() - lock_dir.stat().st_mtime
                except FileNotFoundError:
                    continue  # Released between mkdir and stat
                if age > self._lock_stale_seconds:
                    _logger.warning(
                        {
                            "event": "stale_lock_cleared",
                            "profile": profile,
                            "message": f"Removed stale credential lock for profile '{profile}'",
                            "age_seconds": round(age, 1),
                        }
                    )
                    shutil.rmtree(lock_dir, ignore_errors=True)
                    continue
                time.sleep(PROFILE_LOCK_RETRY_SECONDS)
            except OSError as e:
                raise TokenStorageError(f"Cannot lock credentials for profile '{profile}': {e}") from e

        try:
            yield
        finally:
            try:
                lock_dir.rmdir()
            except OSError:
                pass
