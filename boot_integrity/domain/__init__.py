"""Domain models for boot image and partition integrity operations."""

from __future__ import annotations

from .models import (
    COMPONENT_FILENAMES,
    AVBState,
    BackupResult,
    BootImageComponents,
    BootImageInfo,
    DeviceMetadata,
    DeviceMode,
    DiffRegion,
    FileDigest,
    HeaderClassification,
    ImageType,
    ImageValidationResult,
    IntegrityCheckResult,
    PartitionCompareResult,
    PartitionDetails,
    PartitionDump,
    PatchOptions,
    PatchResult,
    RepackResult,
    SlotHealth,
    SlotInfo,
    StockCacheEntry,
    UnpackResult,
    VerityState,
)


__all__ = [
    "COMPONENT_FILENAMES",
    "AVBState",
    "BackupResult",
    "BootImageComponents",
    "BootImageInfo",
    "DeviceMetadata",
    "DeviceMode",
    "DiffRegion",
    "FileDigest",
    "HeaderClassification",
    "ImageType",
    "ImageValidationResult",
    "IntegrityCheckResult",
    "PartitionCompareResult",
    "PartitionDetails",
    "PartitionDump",
    "PatchOptions",
    "PatchResult",
    "RepackResult",
    "SlotHealth",
    "SlotInfo",
    "StockCacheEntry",
    "UnpackResult",
    "VerityState",
]
