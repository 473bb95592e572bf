"""File helpers shared by the cache, orchestrator and partition engine."""

from __future__ import annotations

import os
import shutil
from pathlib import Path
from typing import Optional


def human_size(size_bytes: Optional[int]) -> str:
    if size_bytes is None:
        return "0 B"
    size = float(size_bytes)
    for unit in ["B", "KB", "MB", "GB", "TB"]:
        if size < 1024.0:
            if unit == "B":
                return f"{int(size)} {unit}"
            return f"{size:.2f} {unit}"
        size /= 1024.0
    return f"{size:.2f} PB"


def copy_file_atomic(source: Path, destination: Path) -> None:
    """Copy ``source`` to ``destination`` through a sibling temp file and rename.

    Readers never observe a partially written destination.
    """
    destination.parent.mkdir(parents=True, exist_ok=True)
    partial = destination.with_name(f".{destination.name}.partial")
    try:
        shutil.copyfile(source, partial)
        os.replace(partial, destination)
    finally:
        if partial.exists():
            partial.unlink()
