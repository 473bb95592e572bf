"""Domain model for boot image and partition integrity operations.

Type-safe records passed between the classifier, the patch pipeline, the
stock cache and the partition engine, instead of loose dicts.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional


# ==============================================================================
# Boot Image Domain
# ==============================================================================


class ImageType(Enum):
    """Image type detected from magic bytes."""

    BOOT = "boot"  # ANDROID!
    VENDOR_BOOT = "vendor_boot"  # VNDRBOOT
    VBMETA = "vbmeta"  # AVB0
    SPARSE = "sparse"  # 0xED26FF3A
    CHROMEOS = "chromeos"  # CHROMEOS wrapper around an Android boot image
    UNKNOWN = "unknown"

    @property
    def format_tag(self) -> str:
        """Container format tag reported on BootImageInfo."""
        if self in (ImageType.BOOT, ImageType.VENDOR_BOOT):
            return "android"
        return self.value


# Codec output filename -> BootImageComponents attribute
COMPONENT_FILENAMES: dict[str, str] = {
    "kernel": "kernel",
    "ramdisk.cpio": "ramdisk",
    "second": "second",
    "dtb": "dtb",
    "extra": "extra",
    "recovery_dtbo": "recovery_dtbo",
    "kernel_dtb": "kernel_dtb",
}


@dataclass
class BootImageComponents:
    """Extracted parts of a boot image inside a work directory."""

    kernel: Optional[Path] = None
    ramdisk: Optional[Path] = None
    second: Optional[Path] = None
    dtb: Optional[Path] = None
    extra: Optional[Path] = None
    recovery_dtbo: Optional[Path] = None
    kernel_dtb: Optional[Path] = None

    @classmethod
    def from_directory(cls, directory: Path) -> BootImageComponents:
        """Collect whichever codec output files exist in ``directory``."""
        found = {}
        for filename, attribute in COMPONENT_FILENAMES.items():
            candidate = directory / filename
            if candidate.is_file():
                found[attribute] = candidate
        return cls(**found)

    def present(self) -> list[str]:
        return [
            attribute
            for attribute in COMPONENT_FILENAMES.values()
            if getattr(self, attribute) is not None
        ]


@dataclass
class BootImageInfo:
    """Parsed boot image header plus derived facts."""

    format: str = "unknown"
    header_version: int = 0
    kernel_size: int = 0
    ramdisk_size: int = 0
    second_size: int = 0
    page_size: int = 0
    os_version: Optional[str] = None
    os_patch_level: Optional[str] = None
    cmdline: str = ""
    has_ramdisk: bool = False
    has_dtb: bool = False
    sha1: str = ""
    components: BootImageComponents = field(default_factory=BootImageComponents)
    warnings: list[str] = field(default_factory=list)


@dataclass
class HeaderClassification:
    """Result of classifying a header buffer."""

    image_type: ImageType
    info: Optional[BootImageInfo] = None
    warnings: list[str] = field(default_factory=list)


@dataclass
class ImageValidationResult:
    """Pre-flash validation report for an image file."""

    path: Path
    valid: bool = False
    exists: bool = False
    size: int = 0
    size_human: str = "0 B"
    sha256: str = ""
    image_type: ImageType = ImageType.UNKNOWN
    boot_info: Optional[BootImageInfo] = None
    warnings: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class UnpackResult:
    """Components persisted by an unpack into a retained directory."""

    work_dir: Path
    components: BootImageComponents
    header_report: str


@dataclass(frozen=True)
class RepackResult:
    """Repacked image copied to its destination."""

    output_path: Path
    sha1: str


# ==============================================================================
# Root Patch Domain
# ==============================================================================


@dataclass(frozen=True)
class PatchOptions:
    """Options recognized by the root-patch pipeline.

    ``target_abi`` selects the injectable binary variant explicitly. When it is
    None the host CPU architecture is used.
    """

    keep_verity: bool = False
    keep_encryption: bool = False
    patch_vbmeta_flag: bool = False
    legacy_sar: bool = False
    target_abi: Optional[str] = None

    def describe(self) -> str:
        return (
            f"keepVerity={self.keep_verity}, "
            f"keepEncryption={self.keep_encryption}, "
            f"patchVbmetaFlag={self.patch_vbmeta_flag}, "
            f"legacySAR={self.legacy_sar}"
        )


@dataclass
class PatchResult:
    """Record of one patch pipeline run."""

    original_path: Path
    patched_path: Path
    sha1_original: str
    sha1_patched: str
    patch_method: str
    details: str
    backup_path: Optional[Path] = None
    warnings: list[str] = field(default_factory=list)


# ==============================================================================
# Stock Cache Domain
# ==============================================================================


@dataclass(frozen=True)
class DeviceMetadata:
    """Optional device facts stored next to a cached stock image."""

    model: Optional[str] = None
    codename: Optional[str] = None
    android_version: Optional[str] = None

    def to_json(self) -> dict[str, str]:
        data = {
            "model": self.model,
            "codename": self.codename,
            "androidVersion": self.android_version,
        }
        return {key: value for key, value in data.items() if value}

    @classmethod
    def from_json(cls, data: dict) -> DeviceMetadata:
        return cls(
            model=data.get("model"),
            codename=data.get("codename"),
            android_version=data.get("androidVersion"),
        )


@dataclass(frozen=True)
class BackupResult:
    """Outcome of backing up a stock image."""

    cache_path: Path
    sha1: str
    is_new: bool


@dataclass(frozen=True)
class StockCacheEntry:
    """A cached stock boot image."""

    sha1: str
    cache_path: Path
    cached_at: Optional[str]
    original_path: Optional[str] = None
    device: DeviceMetadata = field(default_factory=DeviceMetadata)
    size_bytes: int = 0


# ==============================================================================
# Verified Boot Domain
# ==============================================================================


class DeviceMode(Enum):
    """Mode the device is currently in."""

    BOOTLOADER = "bootloader"
    DEVICE = "device"


@dataclass(frozen=True)
class VerityState:
    verity: bool
    verification: bool
    raw: str


@dataclass
class AVBState:
    """Snapshot of a device's verified-boot configuration."""

    unlocked: bool = False
    verity_enabled: bool = True
    verification_enabled: bool = True
    state_code: int = 0
    state_description: str = "Unknown"
    slots: dict[str, VerityState] = field(default_factory=dict)
    rollback_indices: dict[str, int] = field(default_factory=dict)
    slot_count: Optional[int] = None
    current_slot: Optional[str] = None
    avb_version: Optional[str] = None


@dataclass
class SlotHealth:
    bootable: bool = False
    successful: bool = False
    retry_count: int = 0


@dataclass
class SlotInfo:
    """A/B slot layout and per-slot health when available."""

    is_ab: bool = False
    current_slot: Optional[str] = None
    slot_a: Optional[SlotHealth] = None
    slot_b: Optional[SlotHealth] = None


# ==============================================================================
# Partition Domain
# ==============================================================================


@dataclass(frozen=True)
class DiffRegion:
    offset: int
    length: int
    description: str

    @property
    def end(self) -> int:
        return self.offset + self.length

    def contains(self, offset: int) -> bool:
        return self.offset <= offset < self.end


@dataclass(frozen=True)
class FileDigest:
    path: Path
    size: int
    sha256: str


@dataclass
class PartitionCompareResult:
    """Comparison of two partition images."""

    identical: bool
    file1: FileDigest
    file2: FileDigest
    size_diff: int
    hash_match: bool
    diff_regions: Optional[list[DiffRegion]] = None
    truncated: bool = False


@dataclass
class IntegrityCheckResult:
    """Verification of a partition image against an expected digest.

    Errors are reported in ``error`` instead of raised.
    """

    partition: str
    expected_hash: str
    valid: bool = False
    actual_hash: str = ""
    size: int = 0
    size_human: str = "0 B"
    timestamp: str = ""
    error: Optional[str] = None


@dataclass(frozen=True)
class PartitionDetails:
    """A partition as seen on the device."""

    name: str
    block_device: str
    size_bytes: int
    size_human: str
    critical: bool
    slot: Optional[str] = None
    readonly: bool = False
    fs_type: Optional[str] = None
    mount_point: Optional[str] = None


@dataclass(frozen=True)
class PartitionDump:
    """A partition dumped from the device to the host."""

    partition: str
    output_path: Path
    size_bytes: int
    size_human: str
    sha256: str
    timestamp: str
    duration_seconds: float
    compressed: bool = False
    compressed_size: Optional[int] = None
    compression_ratio: Optional[str] = None
    metadata: Optional[dict[str, str]] = None
