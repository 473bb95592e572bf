"""
Pytest configuration and shared fixtures for boot-integrity tests.

This module provides synthetic boot images, a fake image codec and a fake
device channel so nothing here needs magiskboot, adb or a device.
"""

import struct
import zipfile
from pathlib import Path
from typing import Dict, Iterable, Optional, Tuple, Union

import pytest

from boot_integrity.bootimg.codec import CodecResult, list_codec_outputs
from boot_integrity.config import settings
from boot_integrity.device.channel import CommandResult
from boot_integrity.services import BootToolkit


# ==============================================================================
# Synthetic Image Builders
# ==============================================================================


def pack_os_version(major: int, minor: int, patch: int, year: int, month: int) -> int:
    """Pack an OS version and patch level the way boot headers store them."""
    return (
        (major << 25) | (minor << 18) | (patch << 11) | ((year - 2000) << 4) | month
    )


def _pad(data: bytes, page_size: int) -> bytes:
    return data + b"\0" * ((page_size - len(data) % page_size) % page_size)


def build_boot_image(
    header_version: int = 1,
    kernel: bytes = b"\x1f\x8bKERNEL" * 64,
    ramdisk: bytes = b"RAMDISK" * 32,
    second: bytes = b"",
    page_size: int = 2048,
    os_version: int = 0,
    cmdline: bytes = b"console=ttyMSM0 androidboot.hardware=qcom",
) -> bytes:
    """Build a v0-v2 ``ANDROID!`` image with page-aligned sections."""
    header = bytearray(page_size)
    header[0:8] = b"ANDROID!"
    struct.pack_into(
        "<10I",
        header,
        8,
        len(kernel),
        0x00008000,
        len(ramdisk),
        0x01000000,
        len(second),
        0x00F00000,
        0x00000100,
        page_size,
        header_version,
        os_version,
    )
    header[64 : 64 + len(cmdline)] = cmdline
    image = bytes(header) + _pad(kernel, page_size) + _pad(ramdisk, page_size)
    if second:
        image += _pad(second, page_size)
    return image


def build_boot_image_v3(
    header_version: int = 3,
    kernel: bytes = b"\x1f\x8bKERNEL" * 64,
    ramdisk: bytes = b"RAMDISK" * 32,
    os_version: int = 0,
    cmdline: bytes = b"console=ttyS0",
) -> bytes:
    header = bytearray(4096)
    header[0:8] = b"ANDROID!"
    struct.pack_into("<4I", header, 8, len(kernel), len(ramdisk), os_version, 1580)
    struct.pack_into("<I", header, 40, header_version)
    header[44 : 44 + len(cmdline)] = cmdline
    return bytes(header) + _pad(kernel, 4096) + _pad(ramdisk, 4096)


def build_vendor_boot_header(
    header_version: int = 4,
    page_size: int = 4096,
    ramdisk_size: int = 8192,
    cmdline: bytes = b"androidboot.console=ttyMSM0",
) -> bytes:
    header = bytearray(4096)
    header[0:8] = b"VNDRBOOT"
    struct.pack_into("<2I", header, 8, header_version, page_size)
    struct.pack_into("<I", header, 24, ramdisk_size)
    header[28 : 28 + len(cmdline)] = cmdline
    return bytes(header)


def make_newc(entries: Iterable[Tuple[str, int, bytes]]) -> bytes:
    """Write a newc cpio archive from ``(name, mode, data)`` tuples."""
    out = b""
    for ino, (name, mode, data) in enumerate(
        list(entries) + [("TRAILER!!!", 0, b"")], start=1
    ):
        name_bytes = name.encode() + b"\0"
        fields = (ino, mode, 0, 0, 1, 0, len(data), 0, 0, 0, 0, len(name_bytes), 0)
        out += b"070701" + b"".join(b"%08X" % value for value in fields) + name_bytes
        out += b"\0" * ((4 - len(out) % 4) % 4)
        out += data
        out += b"\0" * ((4 - len(out) % 4) % 4)
    return out


SAMPLE_FSTAB = (
    b"# Android fstab file\n"
    b"/dev/block/bootdevice/by-name/system /system ext4 ro,barrier=1 wait,verify,avb=vbmeta\n"
    b"/dev/block/bootdevice/by-name/userdata /data f2fs nosuid,nodev forceencrypt=footer,check\n"
)

STOCK_INIT = b"\x7fELF-stock-init"

SAMPLE_RAMDISK = make_newc(
    [
        ("init", 0o100750, STOCK_INIT),
        ("system", 0o040755, b""),
        ("fstab.qcom", 0o100640, SAMPLE_FSTAB),
    ]
)


# ==============================================================================
# Fake Codec
# ==============================================================================


class FakeCodec:
    """In-process stand-in for magiskboot.

    unpack writes ``kernel`` and (optionally) ``ramdisk.cpio``; repack writes
    ``new-boot.img`` as the control image followed by the current ramdisk, so
    the repacked digest changes whenever the ramdisk does.
    """

    def __init__(
        self,
        ramdisk: Optional[bytes] = SAMPLE_RAMDISK,
        unpack_exit: int = 0,
        repack_exit: int = 0,
        report: Optional[str] = None,
        write_output: bool = True,
        unpack_error: Optional[Exception] = None,
    ):
        self.ramdisk = ramdisk
        self.unpack_exit = unpack_exit
        self.repack_exit = repack_exit
        self.report = report
        self.write_output = write_output
        self.unpack_error = unpack_error
        self.calls = []
        self.repack_env: Dict[str, str] = {}
        self.repacked_ramdisk: Optional[bytes] = None

    def unpack(self, image_path: Path, cwd: Path, header_only: bool = False) -> CodecResult:
        self.calls.append(("unpack", Path(image_path), header_only))
        if self.unpack_error is not None:
            raise self.unpack_error
        if self.unpack_exit != 0:
            return CodecResult(
                exit_code=self.unpack_exit, stderr="Unsupported/Unknown image format"
            )
        (cwd / "kernel").write_bytes(b"\x1f\x8bKERNEL")
        if self.ramdisk is not None:
            (cwd / "ramdisk.cpio").write_bytes(self.ramdisk)
        report = self.report
        if report is None:
            report = (
                "HEADER_VER      [1]\n"
                "KERNEL_SZ       [448]\n"
                "RAMDISK_SZ      [224]\n"
                "PAGESIZE        [2048]\n"
                "CMDLINE         [console=ttyMSM0 androidboot.hardware=qcom]\n"
            )
        return CodecResult(
            exit_code=0, stdout=report, produced_files=list_codec_outputs(cwd)
        )

    def repack(self, image_path: Path, cwd: Path, env=None) -> CodecResult:
        self.calls.append(("repack", Path(image_path), False))
        self.repack_env = dict(env or {})
        if self.repack_exit != 0:
            return CodecResult(exit_code=self.repack_exit, stderr="Repack failed")
        ramdisk_path = cwd / "ramdisk.cpio"
        self.repacked_ramdisk = ramdisk_path.read_bytes() if ramdisk_path.exists() else b""
        if self.write_output:
            (cwd / "new-boot.img").write_bytes(
                Path(image_path).read_bytes() + self.repacked_ramdisk
            )
        return CodecResult(exit_code=0, produced_files=list_codec_outputs(cwd))


# ==============================================================================
# Fake Device Channel
# ==============================================================================


class FakeChannel:
    """DeviceChannel double driven by a command -> response table.

    Keys ending in ``*`` match by prefix. A string response is stdout of a
    successful command. Unknown commands fail with exit code 1.
    """

    def __init__(
        self,
        responses: Optional[Dict[str, Union[str, CommandResult]]] = None,
        variables: str = "",
        pull_data: bytes = b"",
        pull_exit: int = 0,
    ):
        self.responses = responses or {}
        self.variables = variables
        self.pull_data = pull_data
        self.pull_exit = pull_exit
        self.commands = []
        self.pulls = []

    def _lookup(self, command: str):
        if command in self.responses:
            return self.responses[command]
        for key, value in self.responses.items():
            if key.endswith("*") and command.startswith(key[:-1]):
                return value
        return None

    def shell(self, command: str) -> CommandResult:
        self.commands.append(command)
        response = self._lookup(command)
        if response is None:
            return CommandResult(stderr="not found", exit_code=1)
        if isinstance(response, str):
            return CommandResult(stdout=response)
        return response

    def privileged_variable_dump(self) -> str:
        return self.variables

    def pull(self, remote_path: str, local_path) -> CommandResult:
        self.pulls.append((remote_path, Path(local_path)))
        if self.pull_exit != 0:
            return CommandResult(stderr="remote object does not exist", exit_code=1)
        Path(local_path).write_bytes(self.pull_data)
        return CommandResult(stdout="1 file pulled")


# ==============================================================================
# Fixtures
# ==============================================================================


@pytest.fixture(autouse=True)
def isolated_settings(tmp_path, monkeypatch):
    """Keep every test on default settings and off the real settings file."""
    monkeypatch.setattr(settings, "SETTINGS_PATH", tmp_path / "settings.json")
    settings.settings_store.values = dict(settings.DEFAULT_SETTINGS)
    yield
    settings.settings_store.values = dict(settings.DEFAULT_SETTINGS)


@pytest.fixture
def private_tempdir(tmp_path, monkeypatch) -> Path:
    """Route tempfile.mkdtemp into a directory the test can inspect."""
    temp_root = tmp_path / "system-tmp"
    temp_root.mkdir()
    monkeypatch.setattr("tempfile.tempdir", str(temp_root))
    return temp_root


@pytest.fixture
def android_version_packed() -> int:
    return pack_os_version(11, 0, 0, 2021, 3)


@pytest.fixture
def boot_image(tmp_path, android_version_packed) -> Path:
    """A v1 boot image on disk."""
    path = tmp_path / "boot.img"
    path.write_bytes(build_boot_image(header_version=1, os_version=android_version_packed))
    return path


@pytest.fixture
def payload_zip(tmp_path) -> Path:
    """A minimal root-provider APK with init binaries for two ABIs."""
    path = tmp_path / "Magisk.apk"
    with zipfile.ZipFile(path, "w") as archive:
        archive.writestr("AndroidManifest.xml", b"\x03\x00\x08\x00")
        archive.writestr("lib/arm64-v8a/libmagiskinit.so", b"\x7fELF-magiskinit-arm64")
        archive.writestr("lib/x86_64/libmagiskinit.so", b"\x7fELF-magiskinit-x86_64")
    return path


@pytest.fixture
def mock_subprocess_run(mocker):
    """
    Fixture providing a mock for subprocess.run.

    Returns:
        Mock object for subprocess.run
    """
    return mocker.patch("subprocess.run")


@pytest.fixture
def fake_codec() -> FakeCodec:
    return FakeCodec()


@pytest.fixture
def cache_root(tmp_path) -> Path:
    return tmp_path / "boot-cache"


@pytest.fixture
def toolkit(cache_root, fake_codec) -> BootToolkit:
    return BootToolkit(
        cache_root=cache_root,
        codec=fake_codec,
        payload_min_bytes=1,
        payload_max_bytes=10_000_000,
    )
