"""Safety validation functions shared by every entry point.

This module provides validation functions to reject dangerous or malformed
input before any work is done:
- Rejects path traversal and paths inside system or credential locations
- Verifies boot image and payload archive magic bytes
- Enforces size ceilings before files are read
- Checks partition names and digests before they reach a shell or the cache

All validation functions raise specific exceptions from the exceptions module
rather than returning boolean values, making error handling more explicit.

Example:
    from boot_integrity.storage.validation import validate_path

    try:
        boot_path = validate_path(user_supplied, must_exist=True)
    except PathValidationError:
        # Handle error
        pass
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Union

from .exceptions import (
    FileTooLargeError,
    ImageNotFoundError,
    InvalidBootImageError,
    InvalidInputError,
    InvalidPayloadError,
    PathValidationError,
)

PathLike = Union[str, "os.PathLike[str]"]

BLOCKED_SYSTEM_DIRS = ("/etc", "/proc", "/sys", "/dev", "/root", "/boot")
BLOCKED_HOME_ENTRIES = (
    ".ssh",
    ".gnupg",
    ".aws",
    ".netrc",
    ".bash_history",
    ".config/gcloud",
)

BOOT_MAGIC = b"ANDROID!"
CHROMEOS_MAGIC = b"CHROMEOS"
ZIP_MAGIC = b"PK\x03\x04"

_PARTITION_NAME_RE = re.compile(r"^[a-z0-9_][a-z0-9_-]*$", re.IGNORECASE)
_SHA1_RE = re.compile(r"^[0-9a-f]{40}$")


def _is_within(path: Path, root: Path) -> bool:
    return path == root or root in path.parents


def _blocked_locations() -> list[Path]:
    # Resolved so symlinked roots (/etc -> /private/etc on macOS) still match
    blocked = [Path(entry).resolve() for entry in BLOCKED_SYSTEM_DIRS]
    home = Path.home()
    blocked.extend((home / entry).resolve() for entry in BLOCKED_HOME_ENTRIES)
    return blocked


def validate_path(
    path: PathLike, *, must_exist: bool = False, kind: str = "File"
) -> Path:
    """Validate a caller-supplied filesystem path.

    Args:
        path: Path to validate
        must_exist: Raise ImageNotFoundError when the path does not exist
        kind: Label used in the not-found message

    Returns:
        The path with ~ expanded (not resolved)

    Raises:
        PathValidationError: If the path contains traversal sequences or
            resolves into a denied location
        ImageNotFoundError: If must_exist is set and the path is missing
    """
    raw = os.fspath(path)
    if not raw or not raw.strip():
        raise PathValidationError(raw, "path is empty")
    if "\0" in raw:
        raise PathValidationError(raw, "path contains a NUL byte")

    candidate = Path(raw).expanduser()
    if ".." in candidate.parts:
        raise PathValidationError(raw, "path traversal is not allowed")

    resolved = candidate.resolve(strict=False)
    for blocked in _blocked_locations():
        if _is_within(resolved, blocked):
            raise PathValidationError(raw, f"access to {blocked} is not allowed")

    if must_exist and not candidate.exists():
        raise ImageNotFoundError(raw, kind)
    return candidate


def read_magic(path: Path, length: int = 8) -> bytes:
    with open(path, "rb") as handle:
        return handle.read(length)


def validate_boot_image_magic(path: Path) -> None:
    """Validate that a file starts with an Android or ChromeOS boot magic.

    Raises:
        InvalidBootImageError: If the magic bytes do not match
    """
    magic = read_magic(path, 8)
    if magic == BOOT_MAGIC or magic.startswith(CHROMEOS_MAGIC):
        return
    raise InvalidBootImageError(str(path))


def validate_payload_archive(path: Path, min_bytes: int, max_bytes: int) -> int:
    """Validate a root-provider payload archive (an APK, i.e. a zip).

    Returns:
        Archive size in bytes

    Raises:
        InvalidPayloadError: If the size is implausible or the zip magic is wrong
    """
    size = path.stat().st_size
    if size < min_bytes or size > max_bytes:
        raise InvalidPayloadError(
            str(path),
            f"size {size} bytes is unreasonable (expected {min_bytes}-{max_bytes} bytes)",
        )
    if read_magic(path, 4) != ZIP_MAGIC:
        raise InvalidPayloadError(str(path), "not a ZIP/APK file (bad magic bytes)")
    return size


def validate_size_ceiling(path: Path, limit: int) -> int:
    """Return the file size, raising FileTooLargeError above ``limit``."""
    size = path.stat().st_size
    if size > limit:
        raise FileTooLargeError(str(path), size, limit)
    return size


def validate_partition_name(name: str) -> str:
    """Validate a partition name before it is interpolated into a device command.

    Raises:
        InvalidInputError: If the name contains anything besides a-z, 0-9, _ and -
    """
    if not name or not _PARTITION_NAME_RE.match(name):
        raise InvalidInputError(
            f"Invalid partition name: {name!r}. "
            "Must be alphanumeric (a-z, 0-9, _, -) and cannot start with a hyphen."
        )
    return name


def validate_sha1(digest: str) -> str:
    """Normalize and validate a hex SHA-1 digest used as a cache key."""
    normalized = (digest or "").strip().lower()
    if not _SHA1_RE.match(normalized):
        raise InvalidInputError(f"Invalid SHA-1 digest: {digest!r}")
    return normalized
