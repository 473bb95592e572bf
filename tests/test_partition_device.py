"""Tests for on-device partition inspection and dumping."""

import gzip
import hashlib

import pytest

from boot_integrity.device.channel import CommandResult
from boot_integrity.partition.device import (
    PartitionInspector,
    is_critical_partition,
    partition_slot,
)
from boot_integrity.storage.exceptions import (
    DeviceCommandError,
    InvalidInputError,
    PartitionNotFoundError,
)
from conftest import FakeChannel

DUMP_DATA = b"\x00" * 8192 + b"ANDROID!" * 512


def partition_responses(name, block_device, size=67108864, readonly="0", mount=None):
    responses = {
        f"ls -la /dev/block/by-name/{name} 2>/dev/null": (
            f"lrwxrwxrwx 1 root root 16 1970-01-01 00:00 {name} -> {block_device}\n"
        ),
        f"blockdev --getsize64 {block_device} 2>/dev/null": f"{size}\n",
        f"blockdev --getro {block_device} 2>/dev/null": f"{readonly}\n",
    }
    if mount:
        responses[f"mount | grep {block_device} 2>/dev/null"] = mount
    return responses


def dump_responses(name="boot_a", block_device="/dev/block/sda12"):
    return {
        **partition_responses(name, block_device, size=len(DUMP_DATA)),
        "su -c 'test -r *": "ok\n",
        "su -c 'dd if=*": "",
        "rm -f *": "",
    }


class TestPartitionNames:
    @pytest.mark.parametrize(
        "name,critical",
        [
            ("boot_a", True),
            ("vendor_boot_b", True),
            ("system_ext_a", True),
            ("super", True),
            ("persist", False),
            ("cust_a", False),
        ],
    )
    def test_is_critical_partition(self, name, critical):
        assert is_critical_partition(name) is critical

    def test_partition_slot(self):
        assert partition_slot("boot_a") == "a"
        assert partition_slot("vbmeta_system_b") == "b"
        assert partition_slot("persist") is None


class TestGetPartitionDetails:
    """Single partition queries."""

    def test_details(self):
        channel = FakeChannel(
            partition_responses(
                "vendor_a",
                "/dev/block/dm-3",
                size=1048576,
                readonly="1",
                mount="/dev/block/dm-3 on /vendor type ext4 (ro,seclabel,relatime)\n",
            )
        )
        details = PartitionInspector(channel).get_partition_details("vendor_a")

        assert details.block_device == "/dev/block/dm-3"
        assert details.size_bytes == 1048576
        assert details.size_human == "1.00 MB"
        assert details.readonly is True
        assert details.critical is True
        assert details.slot == "a"
        assert details.mount_point == "/vendor"
        assert details.fs_type == "ext4"

    def test_unmounted_partition(self):
        channel = FakeChannel(partition_responses("modem_a", "/dev/block/sde4"))
        details = PartitionInspector(channel).get_partition_details("modem_a")
        assert details.readonly is False
        assert details.mount_point is None
        assert details.fs_type is None

    def test_unparseable_size_is_zero(self):
        responses = partition_responses("boot_a", "/dev/block/sda12")
        responses["blockdev --getsize64 /dev/block/sda12 2>/dev/null"] = "garbage"
        details = PartitionInspector(FakeChannel(responses)).get_partition_details("boot_a")
        assert details.size_bytes == 0
        assert details.size_human == "0 B"

    def test_missing_partition(self):
        assert PartitionInspector(FakeChannel()).get_partition_details("nope") is None

    def test_suspicious_link_target_rejected(self):
        channel = FakeChannel(
            {"ls -la /dev/block/by-name/boot_a 2>/dev/null": "boot_a -> /dev/block/sda1;reboot\n"}
        )
        assert PartitionInspector(channel).get_partition_details("boot_a") is None
        assert len(channel.commands) == 1

    @pytest.mark.parametrize("name", ["", "-boot", "boot;reboot", "../boot", "boot a"])
    def test_invalid_name_never_reaches_device(self, name):
        channel = FakeChannel()
        with pytest.raises(InvalidInputError):
            PartitionInspector(channel).get_partition_details(name)
        assert channel.commands == []


class TestListPartitions:
    def test_sorted_critical_then_slot_a(self):
        responses = {"ls /dev/block/by-name/ 2>/dev/null": "foo\nboot_b\ncust_a\nboot_a\nbad;name\n"}
        for index, name in enumerate(["foo", "boot_b", "cust_a", "boot_a"], start=1):
            responses.update(partition_responses(name, f"/dev/block/sda{index}"))
        channel = FakeChannel(responses)

        partitions = PartitionInspector(channel).list_partitions_detailed(batch_size=2)

        assert [p.name for p in partitions] == ["boot_a", "boot_b", "cust_a", "foo"]
        assert not any("bad;name" in command for command in channel.commands)

    def test_vanished_partitions_are_omitted(self):
        responses = {"ls /dev/block/by-name/ 2>/dev/null": "boot_a\nghost\n"}
        responses.update(partition_responses("boot_a", "/dev/block/sda1"))
        partitions = PartitionInspector(FakeChannel(responses)).list_partitions_detailed()
        assert [p.name for p in partitions] == ["boot_a"]

    def test_missing_by_name_directory(self):
        with pytest.raises(DeviceCommandError, match="by-name"):
            PartitionInspector(FakeChannel()).list_partitions_detailed()


class TestDumpPartition:
    """Root dd dumps pulled to the host."""

    def test_dump(self, tmp_path):
        channel = FakeChannel(dump_responses(), pull_data=DUMP_DATA)
        output = tmp_path / "dumps" / "boot_a.img"

        dump = PartitionInspector(channel).dump_partition("boot_a", output)

        assert dump.output_path == output
        assert output.read_bytes() == DUMP_DATA
        assert dump.size_bytes == len(DUMP_DATA)
        assert dump.sha256 == hashlib.sha256(DUMP_DATA).hexdigest()
        assert dump.compressed is False
        assert dump.metadata is None
        assert dump.timestamp

        remote_path = channel.pulls[0][0]
        assert remote_path.startswith("/sdcard/partition_dump_")
        assert channel.commands[-1] == f"rm -f {remote_path}"

    def test_dump_command_quotes_block_device(self, tmp_path):
        channel = FakeChannel(dump_responses(), pull_data=DUMP_DATA)
        PartitionInspector(channel).dump_partition("boot_a", tmp_path / "boot_a.img")
        dd_command = next(c for c in channel.commands if c.startswith("su -c 'dd"))
        assert "if=/dev/block/sda12" in dd_command
        assert "bs=4096" in dd_command

    def test_compressed_dump(self, tmp_path):
        channel = FakeChannel(dump_responses(), pull_data=DUMP_DATA)
        output = tmp_path / "boot_a.img"

        dump = PartitionInspector(channel).dump_partition("boot_a", output, compress=True)

        assert not output.exists()
        assert dump.output_path == tmp_path / "boot_a.img.gz"
        assert gzip.decompress(dump.output_path.read_bytes()) == DUMP_DATA
        assert dump.compressed_size == dump.output_path.stat().st_size
        assert dump.compression_ratio.endswith("%")
        assert dump.sha256 == hashlib.sha256(dump.output_path.read_bytes()).hexdigest()

    def test_metadata(self, tmp_path):
        responses = dump_responses()
        responses.update(
            {
                "getprop ro.product.model": "Pixel 5\n",
                "getprop ro.build.version.release": "13\n",
            }
        )
        channel = FakeChannel(responses, pull_data=DUMP_DATA)

        dump = PartitionInspector(channel).dump_partition(
            "boot_a", tmp_path / "boot_a.img", include_metadata=True
        )

        assert dump.metadata == {
            "deviceModel": "Pixel 5",
            "androidVersion": "13",
            "buildId": "Unknown",
        }

    def test_missing_partition(self, tmp_path):
        with pytest.raises(PartitionNotFoundError) as exc_info:
            PartitionInspector(FakeChannel()).dump_partition("boot_a", tmp_path / "x.img")
        assert exc_info.value.partition == "boot_a"

    def test_unreadable_block_device_cleans_up(self, tmp_path):
        responses = dump_responses()
        responses["su -c 'test -r *"] = CommandResult(stderr="Permission denied", exit_code=1)
        channel = FakeChannel(responses)

        with pytest.raises(DeviceCommandError, match="not readable"):
            PartitionInspector(channel).dump_partition("boot_a", tmp_path / "boot_a.img")

        assert channel.commands[-1].startswith("rm -f /sdcard/partition_dump_")
        assert not any(c.startswith("su -c 'dd") for c in channel.commands)

    def test_failed_pull_cleans_up(self, tmp_path):
        channel = FakeChannel(dump_responses(), pull_exit=1)

        with pytest.raises(DeviceCommandError, match="pull"):
            PartitionInspector(channel).dump_partition("boot_a", tmp_path / "boot_a.img")

        assert channel.commands[-1] == f"rm -f {channel.pulls[0][0]}"

    def test_failed_dd(self, tmp_path):
        responses = dump_responses()
        responses["su -c 'dd if=*"] = CommandResult(stderr="No space left on device", exit_code=1)
        channel = FakeChannel(responses)

        with pytest.raises(DeviceCommandError, match="No space left"):
            PartitionInspector(channel).dump_partition("boot_a", tmp_path / "boot_a.img")
        assert channel.pulls == []
        assert channel.commands[-1].startswith("rm -f ")
