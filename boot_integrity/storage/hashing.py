"""Streaming file digests."""

from __future__ import annotations

import hashlib
from pathlib import Path
from typing import Union

CHUNK_SIZE = 1024 * 1024


def compute_digest(
    path: Union[str, Path], algorithm: str = "sha256", chunk_size: int = CHUNK_SIZE
) -> str:
    """Compute the hex digest of a file without loading it into memory."""
    digest = hashlib.new(algorithm)
    with open(path, "rb") as handle:
        for chunk in iter(lambda: handle.read(chunk_size), b""):
            digest.update(chunk)
    return digest.hexdigest()


def sha1_file(path: Union[str, Path]) -> str:
    """SHA-1 identifies boot images (stock cache keys, patch results)."""
    return compute_digest(path, "sha1")


def sha256_file(path: Union[str, Path]) -> str:
    return compute_digest(path, "sha256")
