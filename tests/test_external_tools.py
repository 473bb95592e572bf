"""Tests for the magiskboot codec and the adb/fastboot channel wrappers."""

from unittest.mock import Mock

import pytest

from boot_integrity.bootimg.codec import MagiskbootCodec
from boot_integrity.device.channel import PULL_TIMEOUT_SECONDS, AdbFastbootChannel
from boot_integrity.storage.exceptions import DeviceCommandError


@pytest.fixture
def codec_run(mocker):
    return mocker.patch(
        "boot_integrity.bootimg.codec.run_command",
        return_value=Mock(returncode=0, stdout="HEADER_VER      [2]\n", stderr=""),
    )


@pytest.fixture
def channel_run(mocker):
    return mocker.patch(
        "boot_integrity.device.channel.run_command",
        return_value=Mock(returncode=0, stdout="", stderr=""),
    )


class TestMagiskbootCodec:
    def test_unpack_header_only(self, codec_run, tmp_path):
        codec = MagiskbootCodec(binary="/opt/magiskboot", unpack_timeout=5)

        result = codec.unpack(tmp_path / "boot.img", tmp_path, header_only=True)

        command = codec_run.call_args.args[0]
        assert command == ["/opt/magiskboot", "unpack", "-h", str(tmp_path / "boot.img")]
        assert codec_run.call_args.kwargs["cwd"] == tmp_path
        assert codec_run.call_args.kwargs["timeout"] == 5
        assert result.ok
        assert "HEADER_VER" in result.report

    def test_reports_produced_files(self, codec_run, tmp_path):
        (tmp_path / "kernel").write_bytes(b"k")
        (tmp_path / "ramdisk.cpio").write_bytes(b"r")

        result = MagiskbootCodec().unpack(tmp_path / "boot.img", tmp_path)

        assert result.produced_files == ["kernel", "ramdisk.cpio"]

    def test_repack_merges_environment(self, codec_run, tmp_path, monkeypatch):
        monkeypatch.setenv("PATH", "/usr/bin")

        MagiskbootCodec().repack(tmp_path / "boot.img", tmp_path, env={"KEEPVERITY": "true"})

        env = codec_run.call_args.kwargs["env"]
        assert env["KEEPVERITY"] == "true"
        assert env["PATH"] == "/usr/bin"
        assert codec_run.call_args.args[0][1:] == ["repack", str(tmp_path / "boot.img")]

    def test_repack_without_environment(self, codec_run, tmp_path):
        MagiskbootCodec().repack(tmp_path / "boot.img", tmp_path)
        assert codec_run.call_args.kwargs["env"] is None

    def test_defaults_from_settings(self):
        codec = MagiskbootCodec()
        assert codec.binary == "magiskboot"
        assert codec.unpack_timeout == 60
        assert codec.repack_timeout == 120


class TestAdbFastbootChannel:
    def test_shell_with_serial(self, channel_run):
        channel_run.return_value = Mock(returncode=0, stdout="redfin\n", stderr="")
        channel = AdbFastbootChannel(serial="0A1B2C", adb_path="adb")

        result = channel.shell("getprop ro.product.device")

        assert channel_run.call_args.args[0] == [
            "adb",
            "-s",
            "0A1B2C",
            "shell",
            "getprop ro.product.device",
        ]
        assert result.success
        assert result.stdout == "redfin\n"

    def test_failed_command(self, channel_run):
        channel_run.return_value = Mock(returncode=1, stdout=None, stderr="error: no devices")

        result = AdbFastbootChannel().shell("true")

        assert result.success is False
        assert result.stdout == ""
        assert result.stderr == "error: no devices"

    def test_variable_dump_reads_stderr(self, channel_run):
        channel_run.return_value = Mock(
            returncode=0, stdout="", stderr="(bootloader) unlocked: yes\n"
        )

        dump = AdbFastbootChannel(fastboot_path="fastboot").privileged_variable_dump()

        assert dump == "(bootloader) unlocked: yes\n"
        assert channel_run.call_args.args[0] == ["fastboot", "getvar", "all"]

    def test_variable_dump_falls_back_to_stdout(self, channel_run):
        channel_run.return_value = Mock(returncode=0, stdout="(bootloader) unlocked: no\n", stderr="")
        assert "unlocked: no" in AdbFastbootChannel().privileged_variable_dump()

    def test_variable_dump_failure_raises(self, channel_run):
        channel_run.return_value = Mock(
            returncode=1, stdout="", stderr="fastboot: error: no devices found"
        )

        with pytest.raises(DeviceCommandError, match="getvar all") as exc_info:
            AdbFastbootChannel(fastboot_path="fastboot").privileged_variable_dump()

        assert exc_info.value.exit_code == 1
        assert exc_info.value.stderr == "fastboot: error: no devices found"
        assert exc_info.value.command == ["fastboot", "getvar", "all"]

    def test_pull_uses_long_timeout(self, channel_run, tmp_path):
        AdbFastbootChannel(timeout=10).pull("/sdcard/dump.img", tmp_path / "dump.img")

        assert channel_run.call_args.args[0][-3:] == [
            "pull",
            "/sdcard/dump.img",
            str(tmp_path / "dump.img"),
        ]
        assert channel_run.call_args.kwargs["timeout"] == PULL_TIMEOUT_SECONDS

    def test_default_timeout_from_settings(self, channel_run):
        AdbFastbootChannel().shell("true")
        assert channel_run.call_args.kwargs["timeout"] == 30
