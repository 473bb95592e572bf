"""Root-provider payload archive access."""

from __future__ import annotations

import platform
import zipfile
from pathlib import Path
from typing import Optional

from boot_integrity.logging import get_logger
from boot_integrity.storage.exceptions import (
    InvalidPayloadError,
    PayloadBinaryNotFoundError,
)

log = get_logger(source=__name__, tags=["bootimg", "payload"])

INIT_MEMBER_TEMPLATE = "lib/{abi}/libmagiskinit.so"
SUPPORTED_ABIS = ("arm64-v8a", "armeabi-v7a", "x86_64", "x86")
_ARM64_MACHINES = ("arm64", "aarch64")


def host_abi(machine: Optional[str] = None) -> str:
    """Map the host CPU architecture onto an Android ABI name."""
    machine = (machine if machine is not None else platform.machine()).lower()
    if machine in _ARM64_MACHINES:
        return "arm64-v8a"
    return "x86_64"


def init_member_name(abi: str) -> str:
    return INIT_MEMBER_TEMPLATE.format(abi=abi)


def list_payload_abis(payload_path: Path) -> list[str]:
    """ABIs for which the archive ships an injectable init binary."""
    try:
        with zipfile.ZipFile(payload_path) as archive:
            names = set(archive.namelist())
    except zipfile.BadZipFile as error:
        raise InvalidPayloadError(str(payload_path), f"corrupt archive: {error}") from error
    return [abi for abi in SUPPORTED_ABIS if init_member_name(abi) in names]


def extract_init_binary(payload_path: Path, abi: str) -> bytes:
    """Read the init binary for ``abi`` out of the payload archive.

    Raises:
        InvalidPayloadError: If the archive cannot be opened
        PayloadBinaryNotFoundError: If the archive has no binary for ``abi``
    """
    member = init_member_name(abi)
    try:
        with zipfile.ZipFile(payload_path) as archive:
            try:
                data = archive.read(member)
            except KeyError as error:
                raise PayloadBinaryNotFoundError(member, abi) from error
    except zipfile.BadZipFile as error:
        raise InvalidPayloadError(str(payload_path), f"corrupt archive: {error}") from error
    log.debug(f"Extracted {member} ({len(data)} bytes) from {payload_path.name}")
    return data
