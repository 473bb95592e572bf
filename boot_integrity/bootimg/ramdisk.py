"""Ramdisk archive editing (cpio "newc" format).

The codec leaves the ramdisk decompressed as ``ramdisk.cpio``. Entries are
edited in memory and written back, so device nodes and symlinks survive
untouched.
"""

from __future__ import annotations

import stat
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Optional, Union

from boot_integrity.logging import get_logger
from boot_integrity.storage.exceptions import RamdiskError

log = get_logger(source=__name__, tags=["bootimg", "ramdisk"])

NEWC_MAGIC = b"070701"
NEWC_CRC_MAGIC = b"070702"
HEADER_SIZE = 110
ALIGNMENT = 4
TRAILER_NAME = "TRAILER!!!"

VERITY_FLAGS = (
    "verifyatboot",
    "verify",
    "avb_keys",
    "avb",
    "support_scsi_verity",
    "fsverity",
)
ENCRYPTION_FLAGS = ("forceencrypt", "forcefdeorfbe", "fileencryption")


def _padding(length: int) -> int:
    return (ALIGNMENT - length % ALIGNMENT) % ALIGNMENT


@dataclass
class CpioEntry:
    name: str
    mode: int
    data: bytes = b""
    ino: int = 0
    uid: int = 0
    gid: int = 0
    nlink: int = 1
    mtime: int = 0
    devmajor: int = 0
    devminor: int = 0
    rdevmajor: int = 0
    rdevminor: int = 0
    check: int = 0

    @property
    def is_regular(self) -> bool:
        return stat.S_ISREG(self.mode)

    @property
    def is_directory(self) -> bool:
        return stat.S_ISDIR(self.mode)

    def encode(self) -> bytes:
        name_bytes = self.name.encode("utf-8", errors="surrogateescape") + b"\0"
        fields = (
            self.ino,
            self.mode,
            self.uid,
            self.gid,
            self.nlink,
            self.mtime,
            len(self.data),
            self.devmajor,
            self.devminor,
            self.rdevmajor,
            self.rdevminor,
            len(name_bytes),
            self.check,
        )
        header = NEWC_MAGIC + b"".join(b"%08X" % value for value in fields)
        return (
            header
            + name_bytes
            + b"\0" * _padding(HEADER_SIZE + len(name_bytes))
            + self.data
            + b"\0" * _padding(len(self.data))
        )


@dataclass
class RamdiskArchive:
    """An editable newc cpio archive without its trailer."""

    entries: list[CpioEntry] = field(default_factory=list)

    @classmethod
    def from_bytes(cls, data: bytes) -> RamdiskArchive:
        """Parse a newc archive.

        Raises:
            RamdiskError: If the archive is truncated or not newc
        """
        entries: list[CpioEntry] = []
        offset = 0
        while True:
            header = data[offset : offset + HEADER_SIZE]
            if len(header) < HEADER_SIZE:
                raise RamdiskError("Truncated cpio header (missing TRAILER!!!)")
            if header[:6] not in (NEWC_MAGIC, NEWC_CRC_MAGIC):
                raise RamdiskError(
                    f"Unsupported cpio format at offset {offset} (expected newc)"
                )
            try:
                values = [
                    int(header[6 + index * 8 : 14 + index * 8], 16)
                    for index in range(13)
                ]
            except ValueError as error:
                raise RamdiskError(f"Corrupt cpio header at offset {offset}") from error
            (ino, mode, uid, gid, nlink, mtime, filesize,
             devmajor, devminor, rdevmajor, rdevminor, namesize, check) = values

            name_start = offset + HEADER_SIZE
            name_end = name_start + namesize
            if name_end > len(data):
                raise RamdiskError("Truncated cpio entry name")
            name = data[name_start : name_end - 1].decode(
                "utf-8", errors="surrogateescape"
            )
            data_start = name_end + _padding(HEADER_SIZE + namesize)
            data_end = data_start + filesize
            if data_end > len(data):
                raise RamdiskError(f"Truncated cpio entry data for {name}")
            offset = data_end + _padding(filesize)

            if name == TRAILER_NAME:
                break
            entries.append(
                CpioEntry(
                    name=name,
                    mode=mode,
                    data=data[data_start:data_end],
                    ino=ino,
                    uid=uid,
                    gid=gid,
                    nlink=nlink,
                    mtime=mtime,
                    devmajor=devmajor,
                    devminor=devminor,
                    rdevmajor=rdevmajor,
                    rdevminor=rdevminor,
                    check=check,
                )
            )
        return cls(entries)

    @classmethod
    def load(cls, path: Union[str, Path]) -> RamdiskArchive:
        return cls.from_bytes(Path(path).read_bytes())

    def to_bytes(self) -> bytes:
        chunks = [entry.encode() for entry in self.entries]
        chunks.append(CpioEntry(name=TRAILER_NAME, mode=0, nlink=1).encode())
        return b"".join(chunks)

    def save(self, path: Union[str, Path]) -> None:
        Path(path).write_bytes(self.to_bytes())

    def names(self) -> list[str]:
        return [entry.name for entry in self.entries]

    def get(self, name: str) -> Optional[CpioEntry]:
        name = name.strip("/")
        for entry in self.entries:
            if entry.name == name:
                return entry
        return None

    def _next_inode(self) -> int:
        return max((entry.ino for entry in self.entries), default=300000) + 1

    def add_directory(self, name: str, mode: int = 0o750) -> CpioEntry:
        name = name.strip("/")
        existing = self.get(name)
        if existing is not None:
            return existing
        entry = CpioEntry(
            name=name, mode=stat.S_IFDIR | mode, nlink=2, ino=self._next_inode()
        )
        self.entries.append(entry)
        return entry

    def add_file(self, name: str, data: bytes, mode: int) -> CpioEntry:
        """Add a regular file, replacing an existing entry of the same name."""
        name = name.strip("/")
        parent = name.rpartition("/")[0]
        if parent and self.get(parent) is None:
            self.add_directory(parent)
        existing = self.get(name)
        if existing is not None:
            existing.mode = stat.S_IFREG | mode
            existing.data = data
            existing.nlink = 1
            log.debug(f"Replaced ramdisk entry {name} ({len(data)} bytes)")
            return existing
        entry = CpioEntry(
            name=name, mode=stat.S_IFREG | mode, data=data, ino=self._next_inode()
        )
        self.entries.append(entry)
        log.debug(f"Added ramdisk entry {name} ({len(data)} bytes)")
        return entry

    def fstab_entries(self) -> list[CpioEntry]:
        return [
            entry
            for entry in self.entries
            if entry.is_regular and entry.name.rpartition("/")[2].startswith("fstab.")
        ]

    def patch_fstab(self, keep_verity: bool, keep_encryption: bool) -> list[str]:
        """Strip verity and forced-encryption flags from every fstab in the ramdisk.

        Returns:
            Names of entries whose content changed

        Raises:
            RamdiskError: If the ramdisk carries no fstab
        """
        fstabs = self.fstab_entries()
        if not fstabs:
            raise RamdiskError("No fstab found in ramdisk")
        changed = []
        for entry in fstabs:
            text = entry.data.decode("utf-8", errors="surrogateescape")
            patched = patch_fstab_text(
                text, keep_verity=keep_verity, keep_encryption=keep_encryption
            )
            if patched != text:
                entry.data = patched.encode("utf-8", errors="surrogateescape")
                changed.append(entry.name)
        return changed


def _patch_flags(
    flags: Iterable[str], keep_verity: bool, keep_encryption: bool
) -> list[str]:
    result = []
    for flag in flags:
        key, separator, value = flag.partition("=")
        if not keep_verity and key in VERITY_FLAGS:
            continue
        if not keep_encryption and key in ENCRYPTION_FLAGS:
            flag = f"encryptable{separator}{value}"
        result.append(flag)
    return result


def patch_fstab_text(text: str, keep_verity: bool, keep_encryption: bool) -> str:
    """Rewrite the fs_mgr flags column of an fstab."""
    lines = []
    for line in text.splitlines(keepends=True):
        stripped = line.strip()
        columns = stripped.split()
        if not stripped or stripped.startswith("#") or len(columns) < 5:
            lines.append(line)
            continue
        flags = _patch_flags(columns[4].split(","), keep_verity, keep_encryption)
        columns[4] = ",".join(flags) or "defaults"
        ending = line[len(line.rstrip("\r\n")) :]
        lines.append(" ".join(columns) + ending)
    return "".join(lines)
