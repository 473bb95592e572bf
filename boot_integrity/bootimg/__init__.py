"""Boot image package.

This package contains the boot image operations:
- header: Magic detection and header field parsing
- codec: External image codec port and magiskboot implementation
- orchestrator: Unpack/repack inside scoped work directories
- ramdisk: In-memory cpio editing
- payload: Root-provider archive access
- patcher: Root-patch pipeline
"""

from .codec import CodecResult, ImageCodec, MagiskbootCodec
from .header import classify_header, is_valid_boot_image, read_header, validate_image
from .orchestrator import BootImageOrchestrator
from .patcher import RootPatchPipeline
from .ramdisk import RamdiskArchive

__all__ = [
    # Header classification
    "classify_header",
    "is_valid_boot_image",
    "read_header",
    "validate_image",
    # Codec
    "CodecResult",
    "ImageCodec",
    "MagiskbootCodec",
    # Pipelines
    "BootImageOrchestrator",
    "RamdiskArchive",
    "RootPatchPipeline",
]
