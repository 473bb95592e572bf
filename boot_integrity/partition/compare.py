"""Partition image comparison and integrity verification using SHA256 checksums."""

from __future__ import annotations

import re
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Union

from boot_integrity.config import settings
from boot_integrity.domain import (
    DiffRegion,
    FileDigest,
    IntegrityCheckResult,
    PartitionCompareResult,
)
from boot_integrity.logging import EventLogger, ThrottledLogger, get_logger
from boot_integrity.storage.exceptions import BootIntegrityError, InvalidInputError
from boot_integrity.storage.file_utils import human_size
from boot_integrity.storage.hashing import sha256_file
from boot_integrity.storage.validation import validate_path, validate_size_ceiling

log = get_logger(source=__name__, tags=["partition", "compare"])
progress_log = ThrottledLogger(
    get_logger(source=__name__, tags=["partition", "progress"]), interval_seconds=2.0
)

_MANIFEST_LINE_RE = re.compile(r"^([a-fA-F0-9]{64})\s+(.+)$")


def compare_partitions(
    file1_path: Union[str, Path],
    file2_path: Union[str, Path],
    detailed: bool = False,
    max_regions: Optional[int] = None,
    block_size: Optional[int] = None,
    max_bytes: Optional[int] = None,
) -> PartitionCompareResult:
    """Compare two partition images.

    Both sizes are checked against ``max_bytes`` before anything is read.
    When ``detailed`` is set and the digests differ, the files are scanned
    block by block to locate differing regions.

    Raises:
        PathValidationError: If a path is rejected
        ImageNotFoundError: If a file does not exist
        FileTooLargeError: If a file exceeds ``max_bytes``
        InvalidInputError: If ``block_size`` is not positive
    """
    if max_regions is None:
        max_regions = settings.get_int(
            "compare_max_regions", settings.DEFAULT_COMPARE_MAX_REGIONS
        )
    if block_size is None:
        block_size = settings.get_int(
            "compare_block_size", settings.DEFAULT_COMPARE_BLOCK_SIZE
        )
    if max_bytes is None:
        max_bytes = settings.get_int(
            "compare_max_bytes", settings.DEFAULT_COMPARE_MAX_BYTES
        )
    if block_size <= 0:
        raise InvalidInputError(f"Block size must be positive, got {block_size}")

    path1 = validate_path(file1_path, must_exist=True)
    path2 = validate_path(file2_path, must_exist=True)
    size1 = validate_size_ceiling(path1, max_bytes)
    size2 = validate_size_ceiling(path2, max_bytes)

    start_time = time.monotonic()
    hash1 = sha256_file(path1)
    hash2 = sha256_file(path2)
    EventLogger.log_operation_metric(
        log,
        "compare",
        "hash_seconds",
        time.monotonic() - start_time,
        unit="s",
        bytes_hashed=size1 + size2,
    )
    hash_match = hash1 == hash2

    result = PartitionCompareResult(
        identical=hash_match,
        file1=FileDigest(path=path1, size=size1, sha256=hash1),
        file2=FileDigest(path=path2, size=size2, sha256=hash2),
        size_diff=abs(size1 - size2),
        hash_match=hash_match,
    )
    if detailed and not hash_match:
        result.diff_regions, result.truncated = find_diff_regions(
            path1, path2, block_size=block_size, max_regions=max_regions
        )
    log.debug(
        f"Compared {path1.name} and {path2.name}: identical={result.identical} "
        f"regions={len(result.diff_regions or [])}"
    )
    return result


def find_diff_regions(
    file1_path: Path,
    file2_path: Path,
    block_size: int = settings.DEFAULT_COMPARE_BLOCK_SIZE,
    max_regions: int = settings.DEFAULT_COMPARE_MAX_REGIONS,
) -> tuple[list[DiffRegion], bool]:
    """Locate block-granular differing regions.

    Returns:
        (regions, truncated). ``truncated`` is True when the scan stopped at
        ``max_regions`` before reaching the end of the shorter file.
    """
    size1 = file1_path.stat().st_size
    size2 = file2_path.stat().st_size
    min_size = min(size1, size2)
    regions: list[DiffRegion] = []
    diff_start: Optional[int] = None
    offset = 0

    with open(file1_path, "rb") as first, open(file2_path, "rb") as second:
        while offset < min_size and len(regions) < max_regions:
            to_read = min(block_size, min_size - offset)
            blocks_match = first.read(to_read) == second.read(to_read)

            if not blocks_match and diff_start is None:
                diff_start = offset
            elif blocks_match and diff_start is not None:
                regions.append(
                    DiffRegion(
                        offset=diff_start,
                        length=offset - diff_start,
                        description=(
                            f"Diff at offset 0x{diff_start:x} "
                            f"({human_size(offset - diff_start)})"
                        ),
                    )
                )
                diff_start = None

            offset += to_read
            progress_log.trace(
                "scan",
                f"Scanned {human_size(offset)} of {human_size(min_size)}",
            )

    truncated = offset < min_size
    if diff_start is not None and len(regions) < max_regions:
        regions.append(
            DiffRegion(
                offset=diff_start,
                length=offset - diff_start,
                description=f"Diff at offset 0x{diff_start:x} to end",
            )
        )
    if size1 != size2:
        regions.append(
            DiffRegion(
                offset=min_size,
                length=abs(size1 - size2),
                description=(
                    f"Size difference: file1={size1} bytes, "
                    f"file2={size2} bytes"
                ),
            )
        )
    if truncated:
        log.warning(
            f"Diff scan stopped after {max_regions} regions at offset 0x{offset:x}"
        )
    return regions, truncated


def verify_partition_integrity(
    image_path: Union[str, Path],
    expected_hash: str,
    partition_name: Optional[str] = None,
) -> IntegrityCheckResult:
    """Verify an image against an expected SHA256 digest.

    Never raises; failures are reported in ``error``.
    """
    result = IntegrityCheckResult(
        partition=partition_name or Path(str(image_path)).name,
        expected_hash=(expected_hash or "").strip().lower(),
        timestamp=datetime.now(timezone.utc).isoformat(),
    )
    try:
        path = validate_path(image_path, must_exist=True)
        max_bytes = settings.get_int(
            "compare_max_bytes", settings.DEFAULT_COMPARE_MAX_BYTES
        )
        result.size = validate_size_ceiling(path, max_bytes)
        result.size_human = human_size(result.size)
        result.actual_hash = sha256_file(path)
    except BootIntegrityError as error:
        result.error = str(error)
        return result
    except OSError as error:
        result.error = f"Failed to verify: {error}"
        return result

    result.valid = result.actual_hash.lower() == result.expected_hash
    if not result.valid:
        log.warning(
            f"Integrity check failed for {result.partition}: "
            f"expected {result.expected_hash}, got {result.actual_hash}"
        )
    return result


def parse_manifest(manifest_path: Union[str, Path]) -> dict[str, str]:
    """Parse ``<sha256>  <filename>`` lines from a factory image manifest.

    Returns:
        Mapping of filename to lowercase digest; empty when the file is missing
    """
    path = validate_path(manifest_path)
    if not path.is_file():
        return {}
    hashes: dict[str, str] = {}
    for line in path.read_text(encoding="utf-8", errors="replace").splitlines():
        match = _MANIFEST_LINE_RE.match(line.strip())
        if match:
            hashes[match.group(2).strip()] = match.group(1).lower()
    return hashes
