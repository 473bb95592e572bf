"""Custom exceptions for boot image and partition operations.

This module defines a hierarchy of exceptions so callers can branch on the
kind of failure instead of parsing messages.

Exception Hierarchy:
    BootIntegrityError (base)
        ├── InvalidInputError
        │   ├── PathValidationError
        │   ├── InvalidBootImageError
        │   ├── InvalidPayloadError
        │   ├── FileTooLargeError
        │   └── UnsupportedModeError
        ├── ExternalToolError
        │   ├── CodecError
        │   │   └── RepackOutputMissingError
        │   └── DeviceCommandError
        ├── IntegrityMismatchError
        ├── NotFoundError
        │   ├── ImageNotFoundError
        │   ├── UnpackRequiredError
        │   ├── PayloadBinaryNotFoundError
        │   └── PartitionNotFoundError
        ├── RamdiskError
        └── OperationCancelledError

Usage:
    from boot_integrity.storage.exceptions import IntegrityMismatchError

    if pre_copy_sha1 != post_copy_sha1:
        raise IntegrityMismatchError(output_path, pre_copy_sha1, post_copy_sha1)
"""

from __future__ import annotations

from typing import Optional, Sequence


class BootIntegrityError(Exception):
    """Base exception for all toolkit operations."""


class InvalidInputError(BootIntegrityError):
    """Input was rejected before any work was done."""


class PathValidationError(InvalidInputError):
    """Path contains traversal sequences or points into a denied location."""

    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Invalid path {path!r}: {reason}")


class InvalidBootImageError(InvalidInputError):
    """File is not an Android boot image."""

    def __init__(self, path: str, reason: str = "bad magic bytes"):
        self.path = path
        self.reason = reason
        super().__init__(f"Not a valid Android boot image: {path} ({reason})")


class InvalidPayloadError(InvalidInputError):
    """Root-provider payload archive failed validation."""

    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Invalid payload archive {path}: {reason}")


class FileTooLargeError(InvalidInputError):
    """File exceeds the configured size ceiling."""

    def __init__(self, path: str, size: int, limit: int):
        self.path = path
        self.size = size
        self.limit = limit
        super().__init__(
            f"File too large: {path} ({size} bytes). Maximum size: {limit} bytes"
        )


class UnsupportedModeError(InvalidInputError):
    """Device mode does not support the requested query."""

    def __init__(self, mode: str, supported: Sequence[str]):
        self.mode = mode
        self.supported = list(supported)
        super().__init__(
            f"Cannot query verified boot state in {mode!r} mode. "
            f"Supported modes: {', '.join(self.supported)}"
        )


class ExternalToolError(BootIntegrityError):
    """External process exited with a failure status."""

    def __init__(
        self,
        message: str,
        command: Optional[Sequence[str]] = None,
        exit_code: Optional[int] = None,
        stderr: str = "",
    ):
        self.command = list(command) if command else []
        self.exit_code = exit_code
        self.stderr = stderr
        super().__init__(message)


class CodecError(ExternalToolError):
    """Image codec reported a failure."""


class RepackOutputMissingError(CodecError):
    """Codec exited cleanly but did not produce the repacked image."""

    def __init__(self, work_dir: str, expected_name: str):
        self.work_dir = work_dir
        self.expected_name = expected_name
        super().__init__(
            f"Repacked boot image not created: {expected_name} missing in {work_dir}"
        )


class DeviceCommandError(ExternalToolError):
    """Device command channel reported a failure."""


class IntegrityMismatchError(BootIntegrityError):
    """Digest of a written file differs from the digest computed before the copy."""

    def __init__(self, path: str, expected: str, actual: str):
        self.path = path
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"File copy verification failed for {path}: "
            f"expected {expected}, got {actual}"
        )


class NotFoundError(BootIntegrityError):
    """Required file, entry or partition does not exist."""


class ImageNotFoundError(NotFoundError):
    """Input file does not exist."""

    def __init__(self, path: str, kind: str = "File"):
        self.path = path
        self.kind = kind
        super().__init__(f"{kind} not found: {path}")


class UnpackRequiredError(NotFoundError):
    """Work directory does not hold a previously unpacked image."""

    def __init__(self, work_dir: str):
        self.work_dir = work_dir
        super().__init__(f"boot.img not found in {work_dir}. Unpack first.")


class PayloadBinaryNotFoundError(NotFoundError):
    """Payload archive has no injectable binary for the selected ABI."""

    def __init__(self, member: str, abi: str):
        self.member = member
        self.abi = abi
        super().__init__(f"Payload init binary not found for architecture {abi}: {member}")


class PartitionNotFoundError(NotFoundError):
    """Partition does not exist on the device."""

    def __init__(self, partition: str):
        self.partition = partition
        super().__init__(f"Partition not found: {partition}")


class RamdiskError(BootIntegrityError):
    """Ramdisk archive could not be read or modified."""


class OperationCancelledError(BootIntegrityError):
    """Operation was cancelled through its cancellation token."""

    def __init__(self, operation: str = "operation"):
        self.operation = operation
        super().__init__(f"{operation} cancelled")
