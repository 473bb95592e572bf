"""Unpack/repack orchestration around an injected image codec."""

from __future__ import annotations

import shutil
from pathlib import Path
from typing import Mapping, Optional, Union

from boot_integrity.domain import (
    BootImageComponents,
    BootImageInfo,
    RepackResult,
    UnpackResult,
)
from boot_integrity.logging import LoggerFactory
from boot_integrity.storage.exceptions import (
    CodecError,
    ExternalToolError,
    RepackOutputMissingError,
    UnpackRequiredError,
)
from boot_integrity.storage.hashing import sha1_file
from boot_integrity.storage.tempdirs import managed_temp_dir
from boot_integrity.storage.validation import validate_path

from .codec import REPACK_OUTPUT_NAME, CodecResult, ImageCodec, parse_codec_report
from .header import classify_header, read_header

# Copy of the source image the codec works on; repack needs it as its control file
CONTROL_IMAGE_NAME = "boot.img"

log = LoggerFactory.for_codec()


class BootImageOrchestrator:
    """Drive an ImageCodec inside scoped work directories."""

    def __init__(self, codec: ImageCodec):
        self.codec = codec

    def get_boot_info(self, boot_image_path: Union[str, Path]) -> BootImageInfo:
        """Describe a boot image without modifying it.

        The image is copied into a throwaway directory for the codec. Codec
        failures and unparseable headers become warnings on the result.

        Raises:
            PathValidationError: If the path is rejected
            ImageNotFoundError: If the image does not exist
        """
        source = validate_path(boot_image_path, must_exist=True, kind="Boot image")
        warnings: list[str] = []

        with managed_temp_dir("bootinfo", warnings) as work_dir:
            temp_boot = work_dir / CONTROL_IMAGE_NAME
            shutil.copyfile(source, temp_boot)

            classification = classify_header(read_header(temp_boot))
            info = classification.info or BootImageInfo(
                format=classification.image_type.format_tag
            )
            if classification.info is None:
                warnings.extend(classification.warnings)
                warnings.append(
                    f"Not a boot image header (detected {classification.image_type.value})"
                )

            report = ""
            try:
                codec_result = self.codec.unpack(temp_boot, work_dir, header_only=True)
            except ExternalToolError as error:
                warnings.append(f"Codec unpack failed: {error}")
            else:
                report = codec_result.report
                if not codec_result.ok:
                    warnings.append(
                        f"Codec unpack exited with {codec_result.exit_code}: "
                        f"{codec_result.stderr.strip()}"
                    )
            fields = parse_codec_report(report)
            if not info.cmdline and fields.get("cmdline"):
                info.cmdline = str(fields["cmdline"])
            if fields.get("format") == "chromeos":
                info.format = "chromeos"

            components = BootImageComponents.from_directory(work_dir)
            info.has_ramdisk = info.has_ramdisk or components.ramdisk is not None
            info.has_dtb = components.dtb is not None
            # Paths inside work_dir are gone after cleanup; keep the names only
            info.components = BootImageComponents(
                **{
                    name: Path(getattr(components, name).name)
                    for name in components.present()
                }
            )
            info.sha1 = sha1_file(source)

        info.warnings = list(dict.fromkeys(info.warnings + warnings))
        log.debug(
            f"Boot info for {source}: v{info.header_version} page={info.page_size} "
            f"components={info.components.present()}"
        )
        return info

    def unpack_in_place(self, image_path: Path, work_dir: Path) -> UnpackResult:
        """Unpack ``image_path`` (already inside ``work_dir``) with the codec.

        Raises:
            CodecError: If the codec fails without producing a header report
        """
        result = self.codec.unpack(image_path, work_dir)
        if not result.ok and "HEADER_VER" not in result.stdout:
            raise CodecError(
                f"Failed to unpack boot image: {result.stderr}",
                exit_code=result.exit_code,
                stderr=result.stderr,
            )
        components = BootImageComponents.from_directory(work_dir)
        log.debug(f"Unpacked {image_path.name}: {components.present()}")
        return UnpackResult(
            work_dir=work_dir, components=components, header_report=result.report
        )

    def unpack(
        self, boot_image_path: Union[str, Path], output_dir: Union[str, Path]
    ) -> UnpackResult:
        """Unpack a boot image into a retained directory for inspection.

        The directory keeps a ``boot.img`` copy so it can be repacked later.
        """
        source = validate_path(boot_image_path, must_exist=True, kind="Boot image")
        target = validate_path(output_dir)
        target.mkdir(parents=True, exist_ok=True)

        control_image = target / CONTROL_IMAGE_NAME
        shutil.copyfile(source, control_image)
        return self.unpack_in_place(control_image, target)

    def repack_in_place(
        self, work_dir: Path, env: Optional[Mapping[str, str]] = None
    ) -> Path:
        """Run codec repack in ``work_dir`` and return the repacked image path.

        Raises:
            UnpackRequiredError: If ``work_dir`` holds no unpacked image
            CodecError: If the codec reports failure
            RepackOutputMissingError: If the codec succeeded but wrote nothing
        """
        control_image = work_dir / CONTROL_IMAGE_NAME
        if not control_image.is_file():
            raise UnpackRequiredError(str(work_dir))

        result: CodecResult = self.codec.repack(control_image, work_dir, env)
        if not result.ok:
            raise CodecError(
                f"Failed to repack boot image: {result.stderr}",
                exit_code=result.exit_code,
                stderr=result.stderr,
            )

        repacked = work_dir / REPACK_OUTPUT_NAME
        if not repacked.is_file():
            raise RepackOutputMissingError(str(work_dir), REPACK_OUTPUT_NAME)
        return repacked

    def repack(
        self, work_dir: Union[str, Path], output_path: Union[str, Path]
    ) -> RepackResult:
        """Repack a previously unpacked directory and copy the image to ``output_path``."""
        source_dir = validate_path(work_dir, must_exist=True, kind="Work directory")
        destination = validate_path(output_path)

        repacked = self.repack_in_place(source_dir)
        destination.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(repacked, destination)
        sha1 = sha1_file(destination)
        log.info(f"Repacked boot image written to {destination} (sha1 {sha1})")
        return RepackResult(output_path=destination, sha1=sha1)
