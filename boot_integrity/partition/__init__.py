"""Partition comparison, integrity verification and on-device inspection."""

from .compare import (
    compare_partitions,
    find_diff_regions,
    parse_manifest,
    verify_partition_integrity,
)
from .device import PartitionInspector

__all__ = [
    "compare_partitions",
    "find_diff_regions",
    "parse_manifest",
    "verify_partition_integrity",
    "PartitionInspector",
]
