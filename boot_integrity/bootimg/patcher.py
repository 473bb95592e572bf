"""Root-patch pipeline.

Stages, in order:

1. Validate the boot image and payload archive
2. Back up the stock image into the stock cache (failure is only a warning)
3. Unpack into a private work directory
4. Inject the payload's init binary into the ramdisk
5. Strip verity and forced encryption from the ramdisk fstabs
6. Repack, copy to the output path and verify the copy by digest
"""

from __future__ import annotations

import shutil
import stat
from pathlib import Path
from typing import Optional, Union

from boot_integrity.config import settings
from boot_integrity.domain import DeviceMetadata, PatchOptions, PatchResult
from boot_integrity.logging import EventLogger, LoggerFactory, operation_context
from boot_integrity.storage.command_runners import CancellationToken
from boot_integrity.storage.exceptions import (
    BootIntegrityError,
    IntegrityMismatchError,
    RamdiskError,
)
from boot_integrity.storage.hashing import sha1_file
from boot_integrity.storage.stock_cache import StockCache
from boot_integrity.storage.tempdirs import managed_temp_dir
from boot_integrity.storage.validation import (
    validate_boot_image_magic,
    validate_path,
    validate_payload_archive,
)

from .orchestrator import CONTROL_IMAGE_NAME, BootImageOrchestrator
from .payload import extract_init_binary, host_abi
from .ramdisk import RamdiskArchive

PATCH_METHOD = "magisk"
RAMDISK_NAME = "ramdisk.cpio"
INIT_ENTRY = "init"
INIT_BACKUP_ENTRY = ".backup/init"
CONFIG_ENTRY = ".backup/.magisk"
INIT_MODE = 0o750
CONFIG_MODE = 0o000


def _flag(value: bool) -> str:
    return "true" if value else "false"


def magisk_environment(options: PatchOptions) -> dict[str, str]:
    """Environment flags the codec reads during repack."""
    return {
        "KEEPVERITY": _flag(options.keep_verity),
        "KEEPFORCEENCRYPT": _flag(options.keep_encryption),
        "PATCHVBMETAFLAG": _flag(options.patch_vbmeta_flag),
        "LEGACYSAR": _flag(options.legacy_sar),
    }


def magisk_config(options: PatchOptions, stock_sha1: str) -> bytes:
    lines = [
        f"KEEPVERITY={_flag(options.keep_verity)}",
        f"KEEPFORCEENCRYPT={_flag(options.keep_encryption)}",
        f"PATCHVBMETAFLAG={_flag(options.patch_vbmeta_flag)}",
        "RECOVERYMODE=false",
        f"SHA1={stock_sha1}",
    ]
    return ("\n".join(lines) + "\n").encode("ascii")


class RootPatchPipeline:
    """Patch stock boot images with a root-provider payload."""

    def __init__(
        self,
        orchestrator: BootImageOrchestrator,
        stock_cache: StockCache,
        payload_min_bytes: Optional[int] = None,
        payload_max_bytes: Optional[int] = None,
    ):
        self.orchestrator = orchestrator
        self.stock_cache = stock_cache
        self.payload_min_bytes = (
            payload_min_bytes
            if payload_min_bytes is not None
            else settings.get_int("payload_min_bytes", settings.DEFAULT_PAYLOAD_MIN_BYTES)
        )
        self.payload_max_bytes = (
            payload_max_bytes
            if payload_max_bytes is not None
            else settings.get_int("payload_max_bytes", settings.DEFAULT_PAYLOAD_MAX_BYTES)
        )

    def patch(
        self,
        boot_image_path: Union[str, Path],
        payload_path: Union[str, Path],
        output_path: Union[str, Path],
        options: Optional[PatchOptions] = None,
        device: Optional[DeviceMetadata] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> PatchResult:
        """Run the full patch pipeline.

        Args:
            boot_image_path: Stock boot image
            payload_path: Root-provider APK/zip carrying ``lib/<abi>/libmagiskinit.so``
            output_path: Destination of the patched image
            options: Patch flags; defaults strip verity and forced encryption
            device: Metadata stored with the stock backup
            cancel_token: Checked before each external codec call

        Returns:
            PatchResult with both digests, the backup location and warnings

        Raises:
            PathValidationError: If any path is rejected
            ImageNotFoundError: If the boot image or payload does not exist
            InvalidBootImageError: If the boot image magic is wrong
            InvalidPayloadError: If the payload is not a plausible zip
            PayloadBinaryNotFoundError: If the payload lacks the ABI's binary
            CodecError: If unpack or repack fails
            IntegrityMismatchError: If the copied output does not match
            OperationCancelledError: If ``cancel_token`` is cancelled
        """
        options = options or PatchOptions()
        boot = validate_path(boot_image_path, must_exist=True, kind="Boot image")
        payload = validate_path(payload_path, must_exist=True, kind="Payload archive")
        output = validate_path(output_path)
        validate_boot_image_magic(boot)
        validate_payload_archive(payload, self.payload_min_bytes, self.payload_max_bytes)

        warnings: list[str] = []
        abi = options.target_abi
        if not abi:
            abi = host_abi()
            warnings.append(
                f"No target ABI given; assuming host architecture {abi}. "
                "Pass the device ABI to avoid an unbootable image."
            )

        log = LoggerFactory.for_patch()
        with operation_context("patch", boot=str(boot), output=str(output)):
            EventLogger.log_patch_started(log, str(boot), str(payload), abi)
            sha1_original = sha1_file(boot)

            backup_path = None
            try:
                backup_path = self.stock_cache.backup_stock(boot, device).cache_path
            except (BootIntegrityError, OSError) as error:
                message = f"Stock backup failed, continuing without it: {error}"
                log.warning(message)
                warnings.append(message)

            with managed_temp_dir("bootpatch", warnings) as work_dir:
                if cancel_token is not None:
                    cancel_token.raise_if_cancelled("patch")
                control_image = work_dir / CONTROL_IMAGE_NAME
                shutil.copyfile(boot, control_image)
                self.orchestrator.unpack_in_place(control_image, work_dir)

                init_binary = extract_init_binary(payload, abi)
                ramdisk_path = work_dir / RAMDISK_NAME
                archive = self._load_ramdisk(ramdisk_path, warnings, log)
                self._inject_init(archive, init_binary, options, sha1_original)
                self._patch_fstabs(archive, options, log)
                archive.save(ramdisk_path)

                if cancel_token is not None:
                    cancel_token.raise_if_cancelled("patch")
                repacked = self.orchestrator.repack_in_place(
                    work_dir, env=magisk_environment(options)
                )
                sha1_patched = sha1_file(repacked)
                output.parent.mkdir(parents=True, exist_ok=True)
                shutil.copyfile(repacked, output)

            copied_sha1 = sha1_file(output)
            if copied_sha1 != sha1_patched:
                EventLogger.log_integrity_mismatch(log, str(output), sha1_patched, copied_sha1)
                raise IntegrityMismatchError(str(output), sha1_patched, copied_sha1)

        log.info(f"Patched image written to {output} (sha1 {sha1_patched})")
        return PatchResult(
            original_path=boot,
            patched_path=output,
            sha1_original=sha1_original,
            sha1_patched=sha1_patched,
            patch_method=PATCH_METHOD,
            details=f"Patched with Magisk. Options: {options.describe()}, abi={abi}",
            backup_path=backup_path,
            warnings=warnings,
        )

    @staticmethod
    def _load_ramdisk(path: Path, warnings: list[str], log) -> RamdiskArchive:
        if path.is_file():
            return RamdiskArchive.load(path)
        message = "Boot image has no ramdisk; creating a new one"
        log.warning(message)
        warnings.append(message)
        return RamdiskArchive()

    @staticmethod
    def _inject_init(
        archive: RamdiskArchive,
        init_binary: bytes,
        options: PatchOptions,
        stock_sha1: str,
    ) -> None:
        stock_init = archive.get(INIT_ENTRY)
        if (
            stock_init is not None
            and stock_init.is_regular
            and archive.get(INIT_BACKUP_ENTRY) is None
        ):
            archive.add_file(
                INIT_BACKUP_ENTRY, stock_init.data, stat.S_IMODE(stock_init.mode)
            )
        archive.add_file(INIT_ENTRY, init_binary, INIT_MODE)
        archive.add_file(CONFIG_ENTRY, magisk_config(options, stock_sha1), CONFIG_MODE)

    @staticmethod
    def _patch_fstabs(archive: RamdiskArchive, options: PatchOptions, log) -> None:
        if options.keep_verity and options.keep_encryption:
            return
        try:
            changed = archive.patch_fstab(
                keep_verity=options.keep_verity,
                keep_encryption=options.keep_encryption,
            )
        except RamdiskError as error:
            log.debug(f"Skipping fstab patch: {error}")
            return
        log.debug(f"Patched fstab entries: {changed}")
