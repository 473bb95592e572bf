"""Tests for the ramdisk cpio editor."""

import stat

import pytest

from boot_integrity.bootimg.ramdisk import RamdiskArchive, patch_fstab_text
from boot_integrity.storage.exceptions import RamdiskError
from conftest import SAMPLE_FSTAB, SAMPLE_RAMDISK, STOCK_INIT, make_newc


class TestRamdiskArchiveParsing:
    """Reading newc archives."""

    def test_reads_entries(self):
        archive = RamdiskArchive.from_bytes(SAMPLE_RAMDISK)
        assert archive.names() == ["init", "system", "fstab.qcom"]
        init = archive.get("init")
        assert init.data == STOCK_INIT
        assert stat.S_IMODE(init.mode) == 0o750
        assert archive.get("system").is_directory

    def test_serialization_is_stable(self):
        """Re-encoding an unmodified archive reproduces its entries."""
        archive = RamdiskArchive.from_bytes(SAMPLE_RAMDISK)
        reparsed = RamdiskArchive.from_bytes(archive.to_bytes())
        assert reparsed.names() == archive.names()
        assert [entry.data for entry in reparsed.entries] == [
            entry.data for entry in archive.entries
        ]

    def test_missing_trailer_raises(self):
        truncated = SAMPLE_RAMDISK[: len(SAMPLE_RAMDISK) - 124]
        with pytest.raises(RamdiskError):
            RamdiskArchive.from_bytes(truncated)

    def test_non_newc_raises(self):
        with pytest.raises(RamdiskError, match="newc"):
            RamdiskArchive.from_bytes(b"\x1f\x8b" + b"\x00" * 200)

    def test_load_and_save(self, tmp_path):
        path = tmp_path / "ramdisk.cpio"
        path.write_bytes(SAMPLE_RAMDISK)
        archive = RamdiskArchive.load(path)
        archive.add_file("overlay.d/custom.rc", b"on boot\n", 0o644)
        archive.save(path)
        assert RamdiskArchive.load(path).get("overlay.d/custom.rc").data == b"on boot\n"


class TestRamdiskArchiveEditing:
    """Adding and replacing entries."""

    def test_add_file_replaces_existing(self):
        archive = RamdiskArchive.from_bytes(SAMPLE_RAMDISK)
        archive.add_file("init", b"new-init", 0o750)
        assert archive.names().count("init") == 1
        assert archive.get("init").data == b"new-init"

    def test_add_file_creates_parent_directory(self):
        archive = RamdiskArchive.from_bytes(SAMPLE_RAMDISK)
        archive.add_file(".backup/.magisk", b"KEEPVERITY=false\n", 0o000)
        parent = archive.get(".backup")
        assert parent is not None and parent.is_directory
        assert archive.get(".backup/.magisk").is_regular

    def test_new_entries_get_unique_inodes(self):
        archive = RamdiskArchive()
        first = archive.add_file("a", b"1", 0o644)
        second = archive.add_file("b", b"2", 0o644)
        assert first.ino != second.ino

    def test_empty_archive_has_only_trailer(self):
        assert RamdiskArchive.from_bytes(RamdiskArchive().to_bytes()).entries == []


class TestFstabPatching:
    """Verity and forced-encryption flag stripping."""

    def test_strips_verity_and_encryption(self):
        patched = patch_fstab_text(
            SAMPLE_FSTAB.decode(), keep_verity=False, keep_encryption=False
        )
        lines = patched.splitlines()
        assert lines[0] == "# Android fstab file"
        assert lines[1].endswith("ro,barrier=1 wait")
        assert lines[2].endswith("nosuid,nodev encryptable=footer,check")

    def test_keep_verity(self):
        patched = patch_fstab_text(
            SAMPLE_FSTAB.decode(), keep_verity=True, keep_encryption=False
        )
        assert "wait,verify,avb=vbmeta" in patched
        assert "forceencrypt" not in patched

    def test_keep_encryption(self):
        patched = patch_fstab_text(
            SAMPLE_FSTAB.decode(), keep_verity=False, keep_encryption=True
        )
        assert "forceencrypt=footer" in patched
        assert "verify" not in patched

    def test_flags_column_never_left_empty(self):
        patched = patch_fstab_text(
            "/dev/block/vdb /vendor ext4 ro avb\n", keep_verity=False, keep_encryption=False
        )
        assert patched == "/dev/block/vdb /vendor ext4 ro defaults\n"

    def test_fileencryption_rewritten(self):
        patched = patch_fstab_text(
            "/dev/block/sda /data ext4 noatime fileencryption=aes-256-xts,quota\n",
            keep_verity=False,
            keep_encryption=False,
        )
        assert "encryptable=aes-256-xts,quota" in patched

    def test_archive_patch_reports_changed_entries(self):
        archive = RamdiskArchive.from_bytes(SAMPLE_RAMDISK)
        changed = archive.patch_fstab(keep_verity=False, keep_encryption=False)
        assert changed == ["fstab.qcom"]
        assert b"verify" not in archive.get("fstab.qcom").data

    def test_archive_without_fstab_raises(self):
        archive = RamdiskArchive.from_bytes(make_newc([("init", 0o100750, b"x")]))
        with pytest.raises(RamdiskError, match="No fstab"):
            archive.patch_fstab(keep_verity=False, keep_encryption=False)
