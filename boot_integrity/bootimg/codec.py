"""Image codec port and the magiskboot-backed implementation.

The codec is the external primitive that (de)compresses and splits boot
images. This package never reimplements it; it only drives it.

Contract:
    unpack(image, cwd) leaves any of ``kernel``, ``ramdisk.cpio``, ``second``,
    ``dtb``, ``extra``, ``recovery_dtbo``, ``kernel_dtb`` in ``cwd``.
    repack(image, cwd) leaves ``new-boot.img`` in ``cwd``.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional, Protocol

from boot_integrity.config import settings
from boot_integrity.domain import COMPONENT_FILENAMES
from boot_integrity.logging import LoggerFactory
from boot_integrity.storage.command_runners import CancellationToken, run_command

REPACK_OUTPUT_NAME = "new-boot.img"

log = LoggerFactory.for_codec()


@dataclass
class CodecResult:
    """Exit status and captured output of one codec call."""

    exit_code: int
    stdout: str = ""
    stderr: str = ""
    produced_files: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    @property
    def report(self) -> str:
        return self.stdout + self.stderr


class ImageCodec(Protocol):
    def unpack(
        self, image_path: Path, cwd: Path, header_only: bool = False
    ) -> CodecResult:
        ...

    def repack(
        self, image_path: Path, cwd: Path, env: Optional[Mapping[str, str]] = None
    ) -> CodecResult:
        ...


def list_codec_outputs(cwd: Path) -> list[str]:
    names = list(COMPONENT_FILENAMES) + [REPACK_OUTPUT_NAME]
    return [name for name in names if (cwd / name).is_file()]


class MagiskbootCodec:
    """Run the ``magiskboot`` binary."""

    def __init__(
        self,
        binary: Optional[str] = None,
        unpack_timeout: Optional[float] = None,
        repack_timeout: Optional[float] = None,
        cancel_token: Optional[CancellationToken] = None,
    ):
        self.binary = binary or settings.get_setting("codec_binary", "magiskboot")
        self.unpack_timeout = unpack_timeout or settings.get_float(
            "codec_unpack_timeout_seconds", 60.0
        )
        self.repack_timeout = repack_timeout or settings.get_float(
            "codec_repack_timeout_seconds", 120.0
        )
        self.cancel_token = cancel_token

    def _run(
        self,
        args: list[str],
        cwd: Path,
        timeout: Optional[float],
        env: Optional[Mapping[str, str]] = None,
    ) -> CodecResult:
        merged_env = None
        if env:
            merged_env = dict(os.environ)
            merged_env.update(env)
        result = run_command(
            [self.binary, *args],
            cwd=cwd,
            timeout=timeout,
            env=merged_env,
            cancel_token=self.cancel_token,
        )
        codec_result = CodecResult(
            exit_code=result.returncode,
            stdout=result.stdout or "",
            stderr=result.stderr or "",
            produced_files=list_codec_outputs(cwd),
        )
        log.debug(
            f"magiskboot {args[0]} exited {codec_result.exit_code}, "
            f"produced {codec_result.produced_files}"
        )
        return codec_result

    def unpack(
        self, image_path: Path, cwd: Path, header_only: bool = False
    ) -> CodecResult:
        args = ["unpack"]
        if header_only:
            args.append("-h")
        args.append(str(image_path))
        return self._run(args, cwd, self.unpack_timeout)

    def repack(
        self, image_path: Path, cwd: Path, env: Optional[Mapping[str, str]] = None
    ) -> CodecResult:
        return self._run(["repack", str(image_path)], cwd, self.repack_timeout, env)


_REPORT_FIELDS = {
    "header_version": r"HEADER_VER\s*\[(\d+)\]",
    "kernel_size": r"KERNEL_SZ\s*\[(\d+)\]",
    "ramdisk_size": r"RAMDISK_SZ\s*\[(\d+)\]",
    "second_size": r"SECOND_SZ\s*\[(\d+)\]",
    "page_size": r"PAGESIZE\s*\[(\d+)\]",
    "os_version": r"OS_VERSION\s*\[([^\]]+)\]",
    "os_patch_level": r"OS_PATCH_LEVEL\s*\[([^\]]+)\]",
    "cmdline": r"CMDLINE\s*\[([^\]]*)\]",
}
_NUMERIC_FIELDS = {
    "header_version",
    "kernel_size",
    "ramdisk_size",
    "second_size",
    "page_size",
}


def parse_codec_report(report: str) -> dict[str, object]:
    """Extract header fields from the codec's textual unpack report."""
    fields: dict[str, object] = {}
    for key, pattern in _REPORT_FIELDS.items():
        match = re.search(pattern, report)
        if not match:
            continue
        value = match.group(1)
        fields[key] = int(value) if key in _NUMERIC_FIELDS else value
    if "CHROMEOS" in report:
        fields["format"] = "chromeos"
    elif "HEADER_VER" in report:
        fields["format"] = "android"
    return fields
