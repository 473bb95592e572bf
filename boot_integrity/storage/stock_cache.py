"""Content-addressed cache of untouched (stock) boot images.

Layout::

    <root>/<sha1>/boot.img
    <root>/<sha1>/metadata.json   {sha, originalPath, cachedAt, device}

Entries are write-once. Nothing is evicted automatically; ``prune`` is an
explicit command.
"""

from __future__ import annotations

import json
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Union

from boot_integrity.domain import BackupResult, DeviceMetadata, StockCacheEntry
from boot_integrity.logging import EventLogger, LoggerFactory

from .exceptions import IntegrityMismatchError
from .file_utils import copy_file_atomic
from .hashing import sha1_file
from .tempdirs import remove_tree
from .validation import validate_path, validate_sha1

BOOT_FILENAME = "boot.img"
METADATA_FILENAME = "metadata.json"

log = LoggerFactory.for_cache()


class StockCache:
    """Stock boot image store rooted at an explicit directory."""

    def __init__(self, root: Union[str, Path]):
        self.root = Path(root).expanduser()

    def entry_dir(self, sha1: str) -> Path:
        return self.root / validate_sha1(sha1)

    def backup_stock(
        self,
        boot_image_path: Union[str, Path],
        metadata: Optional[DeviceMetadata] = None,
    ) -> BackupResult:
        """Cache an untouched boot image under its SHA-1.

        Idempotent: an existing entry is returned unchanged with ``is_new=False``.

        Raises:
            PathValidationError: If the path is rejected
            ImageNotFoundError: If the image does not exist
            IntegrityMismatchError: If the stored copy does not hash to the key
        """
        source = validate_path(boot_image_path, must_exist=True, kind="Boot image")
        sha1 = sha1_file(source)
        entry_dir = self.root / sha1
        cached_boot = entry_dir / BOOT_FILENAME

        if cached_boot.is_file() and (entry_dir / METADATA_FILENAME).is_file():
            log.trace(f"Stock cache hit for {sha1}")
            EventLogger.log_stock_backup(log, sha1, is_new=False)
            return BackupResult(cache_path=cached_boot, sha1=sha1, is_new=False)

        document = {
            "sha": sha1,
            "originalPath": str(source.resolve()),
            "cachedAt": datetime.now(timezone.utc).isoformat(),
            "device": (metadata or DeviceMetadata()).to_json(),
        }
        entry_dir.mkdir(parents=True, exist_ok=True)
        # metadata.json first, boot.img last
        try:
            (entry_dir / METADATA_FILENAME).write_text(
                json.dumps(document, indent=2), encoding="utf-8"
            )
            copy_file_atomic(source, cached_boot)
        except OSError:
            remove_tree(entry_dir)
            raise
        stored_sha1 = sha1_file(cached_boot)
        if stored_sha1 != sha1:
            # Never leave an entry whose key does not match its bytes
            remove_tree(entry_dir)
            EventLogger.log_integrity_mismatch(log, str(cached_boot), sha1, stored_sha1)
            raise IntegrityMismatchError(str(cached_boot), sha1, stored_sha1)

        EventLogger.log_stock_backup(log, sha1, is_new=True, cache_path=str(cached_boot))
        return BackupResult(cache_path=cached_boot, sha1=sha1, is_new=True)

    def get_stock_from_cache(self, sha1: str) -> Optional[Path]:
        """Return the cached image path for ``sha1``, or None when absent."""
        cached_boot = self.entry_dir(sha1) / BOOT_FILENAME
        if cached_boot.is_file():
            return cached_boot
        return None

    def _read_entry(self, entry_dir: Path) -> Optional[StockCacheEntry]:
        cached_boot = entry_dir / BOOT_FILENAME
        try:
            data = json.loads((entry_dir / METADATA_FILENAME).read_text(encoding="utf-8"))
            size_bytes = cached_boot.stat().st_size
        except (OSError, json.JSONDecodeError) as error:
            log.debug(f"Skipping invalid cache entry {entry_dir.name}: {error}")
            return None
        if not isinstance(data, dict):
            log.debug(f"Skipping invalid cache entry {entry_dir.name}: not an object")
            return None
        device = data.get("device") if isinstance(data.get("device"), dict) else {}
        return StockCacheEntry(
            sha1=entry_dir.name,
            cache_path=cached_boot,
            cached_at=data.get("cachedAt"),
            original_path=data.get("originalPath"),
            device=DeviceMetadata.from_json(device),
            size_bytes=size_bytes,
        )

    def list_cached_boots(self) -> list[StockCacheEntry]:
        """Enumerate cache entries, skipping directories without valid metadata."""
        if not self.root.is_dir():
            return []
        entries = []
        for entry_dir in sorted(self.root.iterdir()):
            if not entry_dir.is_dir():
                continue
            entry = self._read_entry(entry_dir)
            if entry is not None:
                entries.append(entry)
        return entries

    def verify_entry(self, sha1: str) -> bool:
        """Re-hash a cached image and check it still matches its key."""
        cached_boot = self.get_stock_from_cache(sha1)
        if cached_boot is None:
            return False
        actual = sha1_file(cached_boot)
        if actual != validate_sha1(sha1):
            EventLogger.log_integrity_mismatch(log, str(cached_boot), sha1, actual)
            return False
        return True

    def prune(
        self, max_entries: Optional[int] = None, max_bytes: Optional[int] = None
    ) -> list[str]:
        """Remove the oldest entries until both limits hold.

        Returns:
            Digests of the removed entries
        """
        entries = sorted(
            self.list_cached_boots(), key=lambda entry: entry.cached_at or ""
        )
        total_bytes = sum(entry.size_bytes for entry in entries)
        removed: list[str] = []

        def over_limit() -> bool:
            remaining = len(entries) - len(removed)
            if max_entries is not None and remaining > max_entries:
                return True
            return max_bytes is not None and total_bytes > max_bytes

        for entry in entries:
            if not over_limit():
                break
            if remove_tree(self.root / entry.sha1):
                removed.append(entry.sha1)
                total_bytes -= entry.size_bytes
                log.info(f"Pruned stock cache entry {entry.sha1}")
            else:
                break
        return removed

    def __repr__(self) -> str:
        return f"StockCache(root={os.fspath(self.root)!r})"
