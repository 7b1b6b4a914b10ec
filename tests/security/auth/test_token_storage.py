"""Tests for the per-profile token store and its lock."""

from __future__ import annotations

import json
import os
import stat
import sys
import threading
import time
from pathlib import Path

import pytest

from pistudio.exceptions import ConfigurationError
from pistudio.security.auth.token_storage import ProfileTokenStore


@pytest.fixture
def store(tmp_path: Path) -> ProfileTokenStore:
    return ProfileTokenStore(tmp_path / "tokens", lock_stale_seconds=5)


class TestWriteAndRead:
    """Tests for write/read round trips."""

    def test_write_then_read_fields(self, store: ProfileTokenStore) -> None:
        """Given a written profile, read returns each field."""
        # Arrange
        store.write("dev", "tenant-x", "RT1", "a@b.com")

        # Act & Assert
        assert store.read("dev", "tenant_id") == "tenant-x"
        assert store.read("dev", "refresh_token") == "RT1"
        assert store.read("dev", "user") == "a@b.com"
        assert store.read("dev", "acquired_at") is not None

    def test_file_layout_matches_documented_shape(self, store: ProfileTokenStore) -> None:
        """Given a write, the file holds tenant_id, refresh_token, user, acquired_at."""
        # Act
        store.write("dev", "tenant-x", "RT1", "a@b.com")

        # Assert
        data = json.loads(store.path_for("dev").read_text())
        assert set(data) == {"tenant_id", "refresh_token", "user", "acquired_at"}
        assert data["acquired_at"].endswith("Z")

    def test_write_overwrites_previous_record(self, store: ProfileTokenStore) -> None:
        """Given two writes, the second replaces the first."""
        # Arrange
        store.write("dev", "tenant-x", "RT1", "a@b.com")

        # Act
        store.write("dev", "tenant-y", "RT2", "c@d.com")

        # Assert
        assert store.read("dev", "refresh_token") == "RT2"
        assert store.read("dev", "tenant_id") == "tenant-y"

    def test_write_leaves_no_temp_files(self, store: ProfileTokenStore) -> None:
        """Given a write, only the profile file remains in the directory."""
        # Act
        store.write("dev", "tenant-x", "RT1", "")

        # Assert
        assert [p.name for p in store.directory.iterdir()] == ["dev.json"]

    @pytest.mark.skipif(sys.platform == "win32", reason="POSIX permissions")
    def test_directory_and_file_are_owner_only(self, store: ProfileTokenStore) -> None:
        """Given a write, directory is 0700 and file is 0600."""
        # Act
        store.write("dev", "tenant-x", "RT1", "")

        # Assert
        assert stat.S_IMODE(os.stat(store.directory).st_mode) == 0o700
        assert stat.S_IMODE(os.stat(store.path_for("dev")).st_mode) == 0o600


class TestAbsentAndCorrupt:
    """Tests for missing and unreadable profiles."""

    def test_read_missing_profile_returns_none(self, store: ProfileTokenStore) -> None:
        """Given no stored profile, read returns None without raising."""
        # Act & Assert
        assert store.read("nobody", "refresh_token") is None
        assert store.read_profile("nobody") is None

    def test_corrupt_file_reads_as_absent(self, store: ProfileTokenStore) -> None:
        """Given a file that is not a valid record, read degrades to absent."""
        # Arrange
        store.directory.mkdir(parents=True)
        store.path_for("dev").write_text("{not json")

        # Act & Assert
        assert store.read_profile("dev") is None
        assert store.exists("dev") is False

    def test_exists_requires_non_empty_refresh_token(self, store: ProfileTokenStore) -> None:
        """Given an empty refresh token, exists is False."""
        # Arrange
        store.write("empty", "t", "", "")
        store.write("dev", "t", "RT1", "")

        # Act & Assert
        assert store.exists("empty") is False
        assert store.exists("dev") is True

    def test_invalid_profile_name_is_configuration_error(self, store: ProfileTokenStore) -> None:
        """Given a profile name with a path separator, raises ConfigurationError."""
        # Act & Assert
        with pytest.raises(ConfigurationError):
            store.write("../evil", "t", "RT", "")


class TestDelete:
    """Tests for delete."""

    def test_delete_is_idempotent(self, store: ProfileTokenStore) -> None:
        """Given a stored profile, first delete removes it and second is a no-op."""
        # Arrange
        store.write("dev", "t", "RT1", "")

        # Act & Assert
        assert store.delete("dev") is True
        assert store.delete("dev") is False
        assert store.exists("dev") is False


class TestRotateAndLock:
    """Tests for locked refresh token rotation."""

    def test_rotate_keeps_user_and_tenant(self, store: ProfileTokenStore) -> None:
        """Given a rotated refresh token, user and tenant are preserved."""
        # Arrange
        store.write("dev", "tenant-x", "RT1", "a@b.com")

        # Act
        store.rotate_refresh_token("dev", "RT2", "ignored-tenant")

        # Assert
        record = store.read_profile("dev")
        assert record is not None
        assert record.refresh_token == "RT2"
        assert record.tenant_id == "tenant-x"
        assert record.user == "a@b.com"

    def test_lock_directory_removed_after_use(self, store: ProfileTokenStore) -> None:
        """Given a completed locked section, the lock directory is gone."""
        # Act
        with store.lock("dev"):
            assert (store.directory / ".dev.lock").is_dir()

        # Assert
        assert not (store.directory / ".dev.lock").exists()

    def test_stale_lock_is_cleared(self, tmp_path: Path) -> None:
        """Given an abandoned lock older than the stale timeout, it is force-cleared."""
        # Arrange
        store = ProfileTokenStore(tmp_path / "tokens", lock_stale_seconds=1)
        lock_dir = store.directory / ".dev.lock"
        lock_dir.mkdir(parents=True)
        old = time.time() - 60
        os.utime(lock_dir, (old, old))

        # Act
        with store.lock("dev"):
            acquired = True

        # Assert
        assert acquired
        assert not lock_dir.exists()

    def test_lock_serializes_concurrent_holders(self, store: ProfileTokenStore) -> None:
        """Given two threads, the second waits until the first releases the lock."""
        # Arrange
        events: list[str] = []
        first_inside = threading.Event()

        def first() -> None:
            with store.lock("dev"):
                events.append("first-in")
                first_inside.set()
                time.sleep(0.3)
                events.append("first-out")

        def second() -> None:
            first_inside.wait(5)
            with store.lock("dev"):
                events.append("second-in")

        # Act
        threads = [threading.Thread(target=first), threading.Thread(target=second)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(10)

        # Assert
        assert events == ["first-in", "first-out", "second-in"]
