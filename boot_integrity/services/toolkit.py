"""Service facade wiring the subsystems together.

Every operation is reachable as a method on ``BootToolkit``; the CLI is a thin
front end over it.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional, Union

from boot_integrity.avb.reader import VerifiedBootReader
from boot_integrity.bootimg.codec import ImageCodec, MagiskbootCodec
from boot_integrity.bootimg.header import validate_image
from boot_integrity.bootimg.orchestrator import BootImageOrchestrator
from boot_integrity.bootimg.patcher import RootPatchPipeline
from boot_integrity.config import settings
from boot_integrity.device.channel import AdbFastbootChannel, DeviceChannel
from boot_integrity.domain import (
    AVBState,
    BackupResult,
    BootImageInfo,
    DeviceMetadata,
    DeviceMode,
    ImageType,
    ImageValidationResult,
    IntegrityCheckResult,
    PartitionCompareResult,
    PartitionDetails,
    PartitionDump,
    PatchOptions,
    PatchResult,
    RepackResult,
    SlotInfo,
    StockCacheEntry,
    UnpackResult,
)
from boot_integrity.logging import LoggerFactory
from boot_integrity.partition import compare
from boot_integrity.partition.device import PartitionInspector
from boot_integrity.storage.command_runners import CancellationToken
from boot_integrity.storage.exceptions import DeviceCommandError, InvalidInputError
from boot_integrity.storage.stock_cache import StockCache

log = LoggerFactory.for_system()

PathArg = Union[str, Path]
ModeArg = Union[str, DeviceMode]


class BootToolkit:
    """Boot image and partition integrity operations for one host session.

    Args:
        cache_root: Stock cache directory (defaults to the ``cache_root`` setting)
        codec: Image codec (defaults to MagiskbootCodec)
        channel: Device channel; required only for device operations
        payload_min_bytes: Lower payload archive size bound for patching
        payload_max_bytes: Upper payload archive size bound for patching
    """

    def __init__(
        self,
        cache_root: Optional[PathArg] = None,
        codec: Optional[ImageCodec] = None,
        channel: Optional[DeviceChannel] = None,
        payload_min_bytes: Optional[int] = None,
        payload_max_bytes: Optional[int] = None,
    ):
        root = cache_root or settings.get_path("cache_root", settings.DEFAULT_CACHE_ROOT)
        self.stock_cache = StockCache(root)
        self.codec = codec or MagiskbootCodec()
        self.orchestrator = BootImageOrchestrator(self.codec)
        self.patcher = RootPatchPipeline(
            self.orchestrator,
            self.stock_cache,
            payload_min_bytes=payload_min_bytes,
            payload_max_bytes=payload_max_bytes,
        )
        self._channel = channel

    @classmethod
    def for_device(cls, serial: Optional[str] = None, **kwargs) -> BootToolkit:
        return cls(channel=AdbFastbootChannel(serial=serial), **kwargs)

    @property
    def channel(self) -> DeviceChannel:
        if self._channel is None:
            raise InvalidInputError("No device channel configured for this operation")
        return self._channel

    # Boot images

    def get_boot_info(self, boot_image_path: PathArg) -> BootImageInfo:
        return self.orchestrator.get_boot_info(boot_image_path)

    def unpack(self, boot_image_path: PathArg, output_dir: PathArg) -> UnpackResult:
        return self.orchestrator.unpack(boot_image_path, output_dir)

    def repack(self, work_dir: PathArg, output_path: PathArg) -> RepackResult:
        return self.orchestrator.repack(work_dir, output_path)

    def validate_image(
        self, image_path: PathArg, expected_type: Optional[ImageType] = None
    ) -> ImageValidationResult:
        return validate_image(image_path, expected_type)

    def patch_boot_image(
        self,
        boot_image_path: PathArg,
        payload_path: PathArg,
        output_path: PathArg,
        options: Optional[PatchOptions] = None,
        device: Optional[DeviceMetadata] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> PatchResult:
        return self.patcher.patch(
            boot_image_path,
            payload_path,
            output_path,
            options=options,
            device=device,
            cancel_token=cancel_token,
        )

    # Stock cache

    def backup_stock(
        self, boot_image_path: PathArg, metadata: Optional[DeviceMetadata] = None
    ) -> BackupResult:
        return self.stock_cache.backup_stock(boot_image_path, metadata)

    def get_stock_from_cache(self, sha1: str) -> Optional[Path]:
        return self.stock_cache.get_stock_from_cache(sha1)

    def list_cached_boots(self) -> list[StockCacheEntry]:
        return self.stock_cache.list_cached_boots()

    def verify_cache_entry(self, sha1: str) -> bool:
        return self.stock_cache.verify_entry(sha1)

    def prune_cache(
        self, max_entries: Optional[int] = None, max_bytes: Optional[int] = None
    ) -> list[str]:
        return self.stock_cache.prune(max_entries=max_entries, max_bytes=max_bytes)

    # Partition images on the host

    def compare_partitions(
        self, file1_path: PathArg, file2_path: PathArg, detailed: bool = False
    ) -> PartitionCompareResult:
        return compare.compare_partitions(file1_path, file2_path, detailed=detailed)

    def verify_partition_integrity(
        self,
        image_path: PathArg,
        expected_hash: str,
        partition_name: Optional[str] = None,
    ) -> IntegrityCheckResult:
        return compare.verify_partition_integrity(
            image_path, expected_hash, partition_name
        )

    def parse_manifest(self, manifest_path: PathArg) -> dict[str, str]:
        return compare.parse_manifest(manifest_path)

    # Device

    def get_avb_state(self, mode: ModeArg) -> AVBState:
        return VerifiedBootReader(self.channel).get_avb_state(mode)

    def get_slot_info(self, mode: ModeArg) -> SlotInfo:
        return VerifiedBootReader(self.channel).get_slot_info(mode)

    def has_ab_slots(self, mode: ModeArg) -> bool:
        return VerifiedBootReader(self.channel).has_ab_slots(mode)

    def get_partition_details(self, name: str) -> Optional[PartitionDetails]:
        return PartitionInspector(self.channel).get_partition_details(name)

    def list_partitions_detailed(
        self, batch_size: Optional[int] = None
    ) -> list[PartitionDetails]:
        return PartitionInspector(self.channel).list_partitions_detailed(batch_size)

    def dump_partition(
        self,
        name: str,
        output_path: PathArg,
        compress: bool = False,
        include_metadata: bool = False,
    ) -> PartitionDump:
        return PartitionInspector(self.channel).dump_partition(
            name, output_path, compress=compress, include_metadata=include_metadata
        )

    def resolve_device_abi(self) -> str:
        """Primary ABI of the booted device (``ro.product.cpu.abi``).

        Raises:
            DeviceCommandError: If the property cannot be read
        """
        result = self.channel.shell("getprop ro.product.cpu.abi")
        abi = result.stdout.strip()
        if not result.success or not abi:
            raise DeviceCommandError(
                "Could not read device ABI (ro.product.cpu.abi)",
                exit_code=result.exit_code,
                stderr=result.stderr,
            )
        log.debug(f"Device ABI: {abi}")
        return abi

    def device_metadata(self) -> DeviceMetadata:
        """Model, codename and Android version of the booted device."""
        values = {}
        for field_name, prop in (
            ("model", "ro.product.model"),
            ("codename", "ro.product.device"),
            ("android_version", "ro.build.version.release"),
        ):
            result = self.channel.shell(f"getprop {prop}")
            values[field_name] = (result.stdout.strip() or None) if result.success else None
        return DeviceMetadata(**values)
