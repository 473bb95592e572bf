"""Scoped temporary work directories.

Directories are created with ``tempfile.mkdtemp`` (atomic, unique, mode 0700)
and removed on every exit path. A removal failure is logged and appended to
the caller's warnings list; it never replaces an exception already in flight.
"""

from __future__ import annotations

import shutil
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

from boot_integrity.logging import get_logger

log = get_logger(source=__name__, tags=["tempdir"])


def remove_tree(path: Path, warnings: Optional[list[str]] = None) -> bool:
    """Best-effort recursive removal.

    Returns:
        True when the directory is gone afterwards
    """
    try:
        shutil.rmtree(path)
    except FileNotFoundError:
        return True
    except OSError as error:
        message = f"Failed to remove temporary directory {path}: {error}"
        log.warning(message)
        if warnings is not None:
            warnings.append(message)
        return False
    log.trace(f"Removed temporary directory {path}")
    return True


@contextmanager
def managed_temp_dir(
    prefix: str,
    warnings: Optional[list[str]] = None,
    parent: Optional[Path] = None,
) -> Iterator[Path]:
    """Yield a fresh private directory and remove it afterwards.

    Args:
        prefix: Directory name prefix (a trailing dash is added)
        warnings: List that receives cleanup failure messages
        parent: Directory to create the temp dir in (defaults to the system temp dir)
    """
    work_dir = Path(
        tempfile.mkdtemp(prefix=f"{prefix}-", dir=str(parent) if parent else None)
    )
    log.trace(f"Created temporary directory {work_dir}")
    try:
        yield work_dir
    finally:
        remove_tree(work_dir, warnings)
