"""Shared file utilities for pistudio.

Provides common utilities used by config loading and token storage:
- set_secure_permissions: Owner-only file/directory permissions
- ensure_secure_directory: Create a directory with owner-only permissions
- atomic_write_json: Temp file + rename write with owner-only permissions
- load_validated_json: JSON load + Pydantic validation with readable errors
"""

from __future__ import annotations

import json
import os
import sys
import tempfile
from pathlib import Path
from typing import Any, TypeVar

from pydantic import BaseModel, ValidationError

# Type variable for Pydantic models
T = TypeVar("T", bound=BaseModel)

__all__ = [
    "atomic_write_json",
    "ensure_secure_directory",
    "load_validated_json",
    "set_secure_permissions",
]


def set_secure_permissions(path: Path, *, is_directory: bool = False) -> None:
    """Set secure permissions on file or directory.

    Sets permissions to restrict access to owner only:
    - Directory: 0o700 (rwx------)
    - File: 0o600 (rw-------)

    Does nothing on Windows. Silently ignores permission errors
    (some systems don't allow permission changes).

    Args:
        path: Path to file or directory.
        is_directory: If True, use directory permissions (0o700).
    """
    if sys.platform == "win32":
        return

    try:
        mode = 0o700 if is_directory else 0o600
        path.chmod(mode)
    except OSError:
        pass  # Permission changes might fail on some systems


def ensure_secure_directory(path: Path) -> None:
    """Create directory (and parents) with owner-only permissions.

    Args:
        path: Directory to create.

    Raises:
        OSError: If the directory cannot be created.
    """
    path.mkdir(mode=0o700, parents=True, exist_ok=True)
    set_secure_permissions(path, is_directory=True)


def atomic_write_json(path: Path, data: dict[str, Any], *, prefix: str = ".tmp_") -> None:
    """Write JSON to path atomically with owner-only permissions.

    Writes to a temp file in the same directory (so the rename stays on
    one filesystem), fsyncs, sets 0o600, then renames over the target.
    Readers only ever see the old or the new content.

    Args:
        path: Destination file.
        data: JSON-serializable mapping.
        prefix: Temp file name prefix.

    Raises:
        OSError: If the write or rename fails. The temp file is removed.
    """
    ensure_secure_directory(path.parent)

    fd, temp_path = tempfile.mkstemp(dir=path.parent, prefix=prefix, suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
            f.write("\n")
            f.flush()
            os.fsync(f.fileno())

        os.chmod(temp_path, 0o600)
        os.replace(temp_path, path)
    except Exception:
        try:
            os.unlink(temp_path)
        except OSError:
            pass
        raise


def load_validated_json(
    file_path: Path,
    model_class: type[T],
    file_type: str = "file",
    recovery_hint: str | None = None,
) -> T:
    """Load JSON file and validate against Pydantic model.

    Combines file reading, JSON parsing, and Pydantic validation with
    consistent error messages.

    Args:
        file_path: Path to JSON file.
        model_class: Pydantic model class to validate against.
        file_type: Description for error messages (e.g., "config").
        recovery_hint: Optional hint appended to validation errors.

    Returns:
        Validated Pydantic model instance.

    Raises:
        ValueError: If JSON is invalid or validation fails.
    """
    try:
        with open(file_path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid JSON in {file_type} file {file_path}: {e}") from e
    except OSError as e:
        raise ValueError(f"Could not read {file_type} file {file_path}: {e}") from e

    try:
        return model_class.model_validate(data)
    except ValidationError as e:
        errors = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            errors.append(f"  - {loc}: {error['msg']}")

        hint = f"\n\n{recovery_hint}" if recovery_hint else ""
        raise ValueError(
            f"Invalid {file_type} configuration in {file_path}:\n" + "\n".join(errors) + hint
        ) from e
