"""Boot image header classification.

Pure parsing of fixed-offset little-endian header fields. ``classify_header``
never raises: malformed input yields ``unknown`` or partially populated info
with warnings.
"""

from __future__ import annotations

import struct
from pathlib import Path
from typing import Optional, Union

from boot_integrity.domain import (
    BootImageInfo,
    HeaderClassification,
    ImageType,
    ImageValidationResult,
)
from boot_integrity.logging import get_logger
from boot_integrity.storage.file_utils import human_size
from boot_integrity.storage.hashing import sha256_file
from boot_integrity.storage.validation import BOOT_MAGIC, CHROMEOS_MAGIC

log = get_logger(source=__name__, tags=["bootimg", "header"])

VENDOR_BOOT_MAGIC = b"VNDRBOOT"
VBMETA_MAGIC = b"AVB0"
SPARSE_MAGIC = 0xED26FF3A

MIN_HEADER_SIZE = 64
DEFAULT_HEADER_READ = 4096

# boot_img_hdr v0-v2
KERNEL_SIZE_OFFSET = 8
RAMDISK_SIZE_OFFSET = 16
SECOND_SIZE_OFFSET = 24
PAGE_SIZE_OFFSET = 36
HEADER_VERSION_OFFSET = 40
OS_VERSION_OFFSET = 44
CMDLINE_OFFSET = 64
CMDLINE_SIZE = 512

# boot_img_hdr v3/v4
V3_RAMDISK_SIZE_OFFSET = 12
V3_OS_VERSION_OFFSET = 16
V3_CMDLINE_OFFSET = 44
V3_CMDLINE_SIZE = 1536
V3_PAGE_SIZE = 4096

# vendor_boot_img_hdr v3/v4
VENDOR_HEADER_VERSION_OFFSET = 8
VENDOR_PAGE_SIZE_OFFSET = 12
VENDOR_RAMDISK_SIZE_OFFSET = 24
VENDOR_CMDLINE_OFFSET = 28
VENDOR_CMDLINE_SIZE = 2048

MAX_KNOWN_HEADER_VERSION = 4
VALID_PAGE_SIZES = (2048, 4096, 16384)

LARGE_IMAGE_BYTES = 100 * 1024 * 1024
MIN_IMAGE_BYTES = 512


def _u32(buffer: bytes, offset: int) -> Optional[int]:
    if len(buffer) < offset + 4:
        return None
    return struct.unpack_from("<I", buffer, offset)[0]


def _cstring(buffer: bytes, offset: int, size: int) -> str:
    raw = buffer[offset : offset + size]
    return raw.split(b"\0", 1)[0].decode("ascii", errors="replace").strip()


def decode_os_version(packed: int) -> str:
    """Decode ``major.minor.patch`` from the packed os_version field."""
    major = (packed >> 25) & 0x7F
    minor = (packed >> 18) & 0x7F
    patch = (packed >> 11) & 0x7F
    return f"{major}.{minor}.{patch}"


def decode_patch_level(packed: int) -> str:
    """Decode ``YYYY-MM`` from the low 11 bits of the packed os_version field."""
    year = ((packed >> 4) & 0x7F) + 2000
    month = packed & 0xF
    return f"{year}-{month:02d}"


def detect_image_type(buffer: bytes) -> ImageType:
    magic = bytes(buffer[:8])
    if magic == BOOT_MAGIC:
        return ImageType.BOOT
    if magic == VENDOR_BOOT_MAGIC:
        return ImageType.VENDOR_BOOT
    if magic == CHROMEOS_MAGIC:
        return ImageType.CHROMEOS
    if magic[:4] == VBMETA_MAGIC:
        return ImageType.VBMETA
    if _u32(buffer, 0) == SPARSE_MAGIC:
        return ImageType.SPARSE
    return ImageType.UNKNOWN


def _apply_os_version(info: BootImageInfo, packed: Optional[int]) -> None:
    if not packed:
        return
    info.os_version = decode_os_version(packed)
    info.os_patch_level = decode_patch_level(packed)


def _parse_boot_header(buffer: bytes) -> BootImageInfo:
    info = BootImageInfo(format="android")
    info.header_version = _u32(buffer, HEADER_VERSION_OFFSET) or 0
    info.kernel_size = _u32(buffer, KERNEL_SIZE_OFFSET) or 0

    if info.header_version >= 3:
        info.ramdisk_size = _u32(buffer, V3_RAMDISK_SIZE_OFFSET) or 0
        info.page_size = V3_PAGE_SIZE
        _apply_os_version(info, _u32(buffer, V3_OS_VERSION_OFFSET))
        info.cmdline = _cstring(buffer, V3_CMDLINE_OFFSET, V3_CMDLINE_SIZE)
    else:
        info.ramdisk_size = _u32(buffer, RAMDISK_SIZE_OFFSET) or 0
        info.second_size = _u32(buffer, SECOND_SIZE_OFFSET) or 0
        info.page_size = _u32(buffer, PAGE_SIZE_OFFSET) or 0
        if info.header_version >= 1:
            _apply_os_version(info, _u32(buffer, OS_VERSION_OFFSET))
        info.cmdline = _cstring(buffer, CMDLINE_OFFSET, CMDLINE_SIZE)

    if info.header_version > MAX_KNOWN_HEADER_VERSION:
        info.warnings.append(f"Unknown boot image header version: {info.header_version}")
    if info.kernel_size == 0:
        info.warnings.append(
            "Kernel size is 0 (may be boot image v3+ or unusual format)"
        )
    if info.page_size not in VALID_PAGE_SIZES:
        info.warnings.append(
            f"Unusual page size: {info.page_size}. Common values: 2048, 4096, 16384"
        )
    info.has_ramdisk = info.ramdisk_size > 0
    return info


def _parse_vendor_boot_header(buffer: bytes) -> BootImageInfo:
    info = BootImageInfo(format="android")
    info.header_version = _u32(buffer, VENDOR_HEADER_VERSION_OFFSET) or 0
    info.page_size = _u32(buffer, VENDOR_PAGE_SIZE_OFFSET) or 0
    info.ramdisk_size = _u32(buffer, VENDOR_RAMDISK_SIZE_OFFSET) or 0
    info.cmdline = _cstring(buffer, VENDOR_CMDLINE_OFFSET, VENDOR_CMDLINE_SIZE)
    info.has_ramdisk = info.ramdisk_size > 0

    if info.header_version > MAX_KNOWN_HEADER_VERSION:
        info.warnings.append(
            f"Unknown vendor boot header version: {info.header_version}"
        )
    if info.page_size not in VALID_PAGE_SIZES:
        info.warnings.append(
            f"Unusual page size: {info.page_size}. Common values: 2048, 4096, 16384"
        )
    return info


def classify_header(buffer: bytes) -> HeaderClassification:
    """Classify a header buffer and parse boot headers.

    Args:
        buffer: At least the first 64 bytes of an image

    Returns:
        HeaderClassification; ``info`` is populated for boot and vendor_boot
    """
    buffer = bytes(buffer)
    if len(buffer) < MIN_HEADER_SIZE:
        return HeaderClassification(
            image_type=ImageType.UNKNOWN,
            warnings=[
                f"Header too short: {len(buffer)} bytes (need {MIN_HEADER_SIZE})"
            ],
        )

    image_type = detect_image_type(buffer)
    if image_type == ImageType.BOOT:
        info = _parse_boot_header(buffer)
        return HeaderClassification(image_type, info, list(info.warnings))
    if image_type == ImageType.VENDOR_BOOT:
        info = _parse_vendor_boot_header(buffer)
        return HeaderClassification(image_type, info, list(info.warnings))
    if image_type == ImageType.CHROMEOS:
        return HeaderClassification(
            image_type, BootImageInfo(format=ImageType.CHROMEOS.format_tag)
        )
    return HeaderClassification(image_type)


def read_header(path: Union[str, Path], size: int = DEFAULT_HEADER_READ) -> bytes:
    with open(path, "rb") as handle:
        return handle.read(size)


def is_valid_boot_image(path: Union[str, Path]) -> bool:
    """True when the file starts with ``ANDROID!`` or ``CHROMEOS``."""
    magic = read_header(path, 8)
    return magic == BOOT_MAGIC or magic.startswith(CHROMEOS_MAGIC)


def validate_image(
    image_path: Union[str, Path], expected_type: Optional[ImageType] = None
) -> ImageValidationResult:
    """Validate an image file before it is flashed or patched.

    Problems are collected into ``errors`` and ``warnings`` rather than raised.
    """
    path = Path(image_path)
    result = ImageValidationResult(path=path)

    if not path.is_file():
        result.errors.append(f"File not found: {path}")
        return result
    result.exists = True

    result.size = path.stat().st_size
    result.size_human = human_size(result.size)

    if result.size == 0:
        result.errors.append("File is empty (0 bytes)")
        return result
    if result.size < MIN_IMAGE_BYTES:
        result.errors.append(
            f"File too small ({result.size_human}). Minimum expected: {MIN_IMAGE_BYTES} bytes"
        )
        return result

    try:
        result.sha256 = sha256_file(path)
    except OSError as error:
        result.warnings.append(f"Could not calculate SHA256: {error}")

    classification = classify_header(read_header(path))
    result.image_type = classification.image_type
    result.boot_info = classification.info
    result.warnings.extend(classification.warnings)

    if (
        expected_type is not None
        and result.image_type != ImageType.UNKNOWN
        and result.image_type != expected_type
    ):
        result.warnings.append(
            f"Expected {expected_type.value} image but detected {result.image_type.value}"
        )

    if result.size > LARGE_IMAGE_BYTES:
        result.warnings.append(
            f"Large image file ({result.size_human}). Flash operation may take longer."
        )

    extension = path.suffix.lower()
    if extension not in (".img", ".bin"):
        result.warnings.append(
            f"Unusual file extension: {extension or '(none)'}. Expected .img or .bin"
        )

    result.valid = not result.errors
    log.debug(
        f"Validated {path}: type={result.image_type.value} "
        f"warnings={len(result.warnings)} errors={len(result.errors)}"
    )
    return result
