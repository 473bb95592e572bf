"""On-device partition inspection and dumping."""

from __future__ import annotations

import gzip
import re
import secrets
import shlex
import shutil
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Union

from boot_integrity.config import settings
from boot_integrity.device.channel import DeviceChannel
from boot_integrity.domain import PartitionDetails, PartitionDump
from boot_integrity.logging import LoggerFactory, operation_context
from boot_integrity.storage.exceptions import (
    BootIntegrityError,
    DeviceCommandError,
    PartitionNotFoundError,
)
from boot_integrity.storage.file_utils import human_size
from boot_integrity.storage.hashing import sha256_file
from boot_integrity.storage.validation import validate_partition_name, validate_path

log = LoggerFactory.for_partition()

BY_NAME_DIR = "/dev/block/by-name"
DEVICE_TEMP_DIR = "/sdcard"
CRITICAL_PARTITIONS = (
    "boot",
    "system",
    "vendor",
    "userdata",
    "metadata",
    "vbmeta",
    "bootloader",
    "radio",
    "modem",
    "dtbo",
    "super",
    "product",
    "system_ext",
    "odm",
)

_LINK_TARGET_RE = re.compile(r"-> (/dev/block/\S+)")
_UNSAFE_BLOCK_DEVICE_RE = re.compile(r"[;&|$`\"'\n\r]")
_STANDARD_BLOCK_DEVICE_RE = re.compile(
    r"^/dev/block/(mmcblk|sd[a-z]|nvme[0-9]|vd[a-z]|loop|dm-)[0-9a-z]*p?[0-9]*$",
    re.IGNORECASE,
)
_MOUNT_LINE_RE = re.compile(r"(\S+) on (\S+) type (\S+)")
_SLOT_SUFFIX_RE = re.compile(r"_([ab])$")


def is_critical_partition(name: str) -> bool:
    base = _SLOT_SUFFIX_RE.sub("", name)
    return any(base == item or base.startswith(f"{item}_") for item in CRITICAL_PARTITIONS)


def partition_slot(name: str) -> Optional[str]:
    match = _SLOT_SUFFIX_RE.search(name)
    return match.group(1) if match else None


def _sort_key(details: PartitionDetails) -> tuple:
    # critical first, then slot a before everything else, then name
    return (not details.critical, details.slot != "a", details.name)


class PartitionInspector:
    """Inspect and dump partitions through a DeviceChannel."""

    def __init__(self, channel: DeviceChannel):
        self.channel = channel

    def _resolve_block_device(self, name: str) -> Optional[str]:
        result = self.channel.shell(
            f"ls -la {shlex.quote(f'{BY_NAME_DIR}/{name}')} 2>/dev/null"
        )
        if not result.success:
            return None
        match = _LINK_TARGET_RE.search(result.stdout)
        if not match:
            return None
        block_device = match.group(1)
        if ".." in block_device or _UNSAFE_BLOCK_DEVICE_RE.search(block_device):
            log.warning(f"Rejected suspicious block device path for {name}: {block_device!r}")
            return None
        if not _STANDARD_BLOCK_DEVICE_RE.match(block_device):
            log.debug(f"Non-standard block device for {name}: {block_device}")
        return block_device

    def get_partition_details(self, name: str) -> Optional[PartitionDetails]:
        """Describe one partition, or None when it does not exist on the device.

        Raises:
            InvalidInputError: If ``name`` is not a plain partition name
        """
        validate_partition_name(name)
        block_device = self._resolve_block_device(name)
        if block_device is None:
            return None
        quoted = shlex.quote(block_device)

        size_result = self.channel.shell(f"blockdev --getsize64 {quoted} 2>/dev/null")
        try:
            size_bytes = int(size_result.stdout.strip()) if size_result.success else 0
        except ValueError:
            size_bytes = 0

        ro_result = self.channel.shell(f"blockdev --getro {quoted} 2>/dev/null")
        readonly = ro_result.success and ro_result.stdout.strip() == "1"

        fs_type = mount_point = None
        mount_result = self.channel.shell(f"mount | grep {quoted} 2>/dev/null")
        if mount_result.success and mount_result.stdout.strip():
            mount_match = _MOUNT_LINE_RE.search(mount_result.stdout)
            if mount_match:
                mount_point = mount_match.group(2)
                fs_type = mount_match.group(3)

        return PartitionDetails(
            name=name,
            block_device=block_device,
            size_bytes=size_bytes,
            size_human=human_size(size_bytes),
            critical=is_critical_partition(name),
            slot=partition_slot(name),
            readonly=readonly,
            fs_type=fs_type,
            mount_point=mount_point,
        )

    def list_partition_names(self) -> list[str]:
        """
        Raises:
            DeviceCommandError: If the device has no by-name directory
        """
        result = self.channel.shell(f"ls {BY_NAME_DIR}/ 2>/dev/null")
        if not result.success:
            raise DeviceCommandError(
                f"Failed to list partitions. Device may not support {BY_NAME_DIR}/",
                exit_code=result.exit_code,
                stderr=result.stderr,
            )
        return result.stdout.split()

    def list_partitions_detailed(
        self, batch_size: Optional[int] = None
    ) -> list[PartitionDetails]:
        """Describe every partition, querying ``batch_size`` partitions at a time.

        Sorted critical first, then slot ``a``, then by name.
        """
        batch_size = batch_size or settings.get_int(
            "partition_batch_size", settings.DEFAULT_PARTITION_BATCH_SIZE
        )
        names = []
        for name in self.list_partition_names():
            try:
                names.append(validate_partition_name(name))
            except BootIntegrityError:
                log.debug(f"Skipping unexpected by-name entry {name!r}")

        partitions: list[PartitionDetails] = []
        with ThreadPoolExecutor(max_workers=batch_size) as executor:
            for start in range(0, len(names), batch_size):
                batch = names[start : start + batch_size]
                for details in executor.map(self.get_partition_details, batch):
                    if details is not None:
                        partitions.append(details)
        partitions.sort(key=_sort_key)
        log.debug(f"Listed {len(partitions)} partitions")
        return partitions

    def _device_metadata(self) -> dict[str, str]:
        props = {
            "deviceModel": "ro.product.model",
            "androidVersion": "ro.build.version.release",
            "buildId": "ro.build.id",
        }
        metadata = {}
        for key, prop in props.items():
            result = self.channel.shell(f"getprop {prop}")
            metadata[key] = result.stdout.strip() if result.success else "Unknown"
        return metadata

    def dump_partition(
        self,
        name: str,
        output_path: Union[str, Path],
        compress: bool = False,
        include_metadata: bool = False,
    ) -> PartitionDump:
        """Dump a partition with root ``dd`` and pull it to the host.

        The device-side temp file is removed on every exit path.

        Raises:
            PartitionNotFoundError: If the partition does not exist
            DeviceCommandError: If the block device is unreadable or a
                device command fails
        """
        output = validate_path(output_path)
        details = self.get_partition_details(name)
        if details is None:
            raise PartitionNotFoundError(name)

        temp_path = f"{DEVICE_TEMP_DIR}/partition_dump_{secrets.token_hex(8)}.img"
        block_device = shlex.quote(details.block_device)
        start_time = time.monotonic()

        with operation_context("dump", partition=name, output=str(output)):
            try:
                check = self.channel.shell(
                    "su -c " + shlex.quote(f"test -r {block_device} && echo ok")
                )
                if not check.success or "ok" not in check.stdout:
                    raise DeviceCommandError(
                        f"Block device not readable: {details.block_device}",
                        exit_code=check.exit_code,
                        stderr=check.stderr,
                    )

                dd_command = f"dd if={block_device} of={shlex.quote(temp_path)} bs=4096"
                dd_result = self.channel.shell("su -c " + shlex.quote(dd_command))
                if not dd_result.success:
                    raise DeviceCommandError(
                        f"Failed to dump partition: {dd_result.stderr.strip()}",
                        exit_code=dd_result.exit_code,
                        stderr=dd_result.stderr,
                    )

                output.parent.mkdir(parents=True, exist_ok=True)
                pull_result = self.channel.pull(temp_path, output)
                if not pull_result.success:
                    raise DeviceCommandError(
                        f"Failed to pull partition backup: {pull_result.stderr.strip()}",
                        exit_code=pull_result.exit_code,
                        stderr=pull_result.stderr,
                    )
            finally:
                self._remove_device_file(temp_path)

            final_path = output
            compressed_size = None
            compression_ratio = None
            if compress:
                final_path = output.with_name(output.name + ".gz")
                with open(output, "rb") as source, gzip.open(
                    final_path, "wb", compresslevel=6
                ) as target:
                    shutil.copyfileobj(source, target)
                output.unlink()
                compressed_size = final_path.stat().st_size
                if details.size_bytes:
                    compression_ratio = (
                        f"{(1 - compressed_size / details.size_bytes) * 100:.1f}%"
                    )

            size_bytes = final_path.stat().st_size
            sha256 = sha256_file(final_path)
            metadata = self._device_metadata() if include_metadata else None

        return PartitionDump(
            partition=name,
            output_path=final_path,
            size_bytes=size_bytes,
            size_human=human_size(size_bytes),
            sha256=sha256,
            timestamp=datetime.now(timezone.utc).isoformat(),
            duration_seconds=round(time.monotonic() - start_time, 2),
            compressed=compress,
            compressed_size=compressed_size,
            compression_ratio=compression_ratio,
            metadata=metadata,
        )

    def _remove_device_file(self, remote_path: str) -> None:
        try:
            result = self.channel.shell(f"rm -f {shlex.quote(remote_path)}")
        except BootIntegrityError as error:
            log.warning(f"Failed to remove device temp file {remote_path}: {error}")
            return
        if not result.success:
            log.warning(
                f"Failed to remove device temp file {remote_path}: {result.stderr.strip()}"
            )
