from __future__ import annotations

import os
import sys
import time
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Iterable

if TYPE_CHECKING:
    from loguru import Logger

from loguru import logger

DEFAULT_LOG_DIR = Path(
    os.environ.get(
        "BOOT_INTEGRITY_LOG_DIR",
        Path.home() / ".local" / "state" / "boot-integrity" / "logs",
    )
)


def _should_log_progress(record) -> bool:
    """Filter block-scan progress logs - only show in TRACE mode."""
    tags = record["extra"].get("tags", [])

    if "progress" in tags:
        return record["level"].no <= logger.level("TRACE").no or (
            record["level"].no >= logger.level("WARNING").no
        )

    return True


def _should_log_cache(record) -> bool:
    """Filter cache hit logs - these are noisy and not useful."""
    message = record["message"].lower()

    if "cache hit" in message:
        # Only show cache hits in TRACE mode
        return record["level"].no <= logger.level("TRACE").no

    return True


def _combined_filter(record) -> bool:
    """Combined filter for all log suppression rules."""
    return _should_log_progress(record) and _should_log_cache(record)


def setup_logging(
    *,
    debug: bool = False,
    trace: bool = False,
    log_dir: Path | None = None,
    file_sinks: bool = True,
) -> Logger:
    """
    Setup multi-tier logging with separate sinks for different log levels.

    Logging Tiers:
    - CRITICAL/ERROR: Integrity mismatches, unrecoverable errors
    - SUCCESS/INFO: Patches, backups, comparisons
    - DEBUG: Detailed diagnostics, codec and device command execution
    - TRACE: Ultra-verbose (block-scan progress, cache hits)

    Log Files:
    - operations.log: INFO+ events (7 day retention)
    - debug.log: DEBUG+ events when --debug is enabled (3 day retention)
    - trace.log: TRACE+ events when --trace is enabled (1 day retention)
    - structured.jsonl: Structured JSON logs for analysis (7 day retention)

    Args:
        debug: Enable DEBUG level logging
        trace: Enable TRACE level logging (very verbose)
        log_dir: Custom log directory (defaults to ~/.local/state/boot-integrity/logs)
        file_sinks: Write log files in addition to the console
    """
    logger.remove()
    logger.configure(extra={"job_id": "-", "tags": [], "source": "APP"})

    if trace:
        console_level = "TRACE"
    elif debug:
        console_level = "DEBUG"
    else:
        console_level = "INFO"

    # SINK 1: Console (stderr) - User-facing, filtered
    logger.add(
        sys.stderr,
        level=console_level,
        enqueue=True,
        backtrace=False,
        diagnose=False,
        filter=_combined_filter,
        colorize=True,
        format=(
            "<green>{time:HH:mm:ss}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{extra[source]: <15}</cyan> | "
            "<blue>{extra[job_id]: <15}</blue> | "
            "{message}"
        ),
    )

    if not file_sinks:
        return logger

    log_dir = log_dir or DEFAULT_LOG_DIR
    log_dir.mkdir(parents=True, exist_ok=True)

    # SINK 2: Operations Log - Important events only (INFO+)
    logger.add(
        log_dir / "operations.log",
        level="INFO",
        rotation="5 MB",
        retention="7 days",
        compression="zip",
        enqueue=True,
        backtrace=False,
        diagnose=False,
        format=(
            "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
            "{level: <8} | "
            "{extra[source]: <15} | "
            "{extra[job_id]: <15} | "
            "{message}"
        ),
    )

    # SINK 3: Debug Log - Detailed diagnostics (DEBUG+ when debug=True)
    if debug or trace:
        logger.add(
            log_dir / "debug.log",
            level="DEBUG",
            rotation="10 MB",
            retention="3 days",
            compression="zip",
            enqueue=True,
            backtrace=True,
            diagnose=True,
            format=(
                "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
                "{level: <8} | "
                "{extra[source]: <15} | "
                "{extra[job_id]: <15} | "
                "{extra[tags]} | "
                "{message}"
            ),
        )

    # SINK 4: Trace Log - Ultra-verbose (TRACE only, when trace=True)
    if trace:
        logger.add(
            log_dir / "trace.log",
            level="TRACE",
            rotation="50 MB",
            retention="1 day",
            compression="zip",
            enqueue=True,
            backtrace=False,
            diagnose=False,
            format=(
                "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
                "{extra[source]: <15} | "
                "{extra[job_id]: <15} | "
                "{message}"
            ),
        )

    # SINK 5: Structured JSON Log - For analysis tools (INFO+)
    logger.add(
        log_dir / "structured.jsonl",
        level="INFO",
        rotation="10 MB",
        retention="7 days",
        compression="zip",
        enqueue=True,
        serialize=True,
        format="{message}",
    )

    return logger


def get_logger(
    *,
    job_id: str | None = None,
    tags: Iterable[str] | None = None,
    source: str | None = None,
) -> Logger:
    """
    Get a logger with bound context.

    Args:
        job_id: Job identifier for tracking operations
        tags: Tags for filtering (e.g., ["patch", "bootimg"])
        source: Source component (e.g., "patch", "cache", "avb")

    Returns:
        Logger with bound context
    """
    extras: dict[str, object] = {}
    if job_id is not None:
        extras["job_id"] = job_id
    if tags is not None:
        extras["tags"] = list(tags)
    if source is not None:
        extras["source"] = source
    return logger.bind(**extras)


@contextmanager
def operation_context(operation: str, **details):
    """
    Context manager for tracking long-running operations with automatic timing.

    Automatically logs operation start, completion, and failure with duration tracking.

    Args:
        operation: Operation name (e.g., "patch", "compare", "dump")
        **details: Operation-specific details to log

    Yields:
        Logger bound with job_id and operation context

    Example:
        with operation_context("patch", boot="/tmp/boot.img") as log:
            log.debug("Unpacking boot image")
    """
    job_id = f"{operation}-{uuid.uuid4().hex[:8]}"

    with logger.contextualize(
        job_id=job_id,
        operation=operation,
        **details,
    ):
        start_time = time.time()
        log = logger.bind(source=operation, job_id=job_id, tags=[operation])

        log.info(f"{operation.capitalize()} started", **details)

        try:
            yield log
            duration = time.time() - start_time
            log.success(
                f"{operation.capitalize()} completed", duration_seconds=round(duration, 2)
            )
        except Exception as e:
            duration = time.time() - start_time
            log.error(
                f"{operation.capitalize()} failed",
                error=str(e),
                error_type=type(e).__name__,
                duration_seconds=round(duration, 2),
            )
            raise


class LoggerFactory:
    """
    Factory for creating domain-specific loggers with automatic context.

    Each factory method returns a logger pre-configured with appropriate
    source, tags, and context for the domain.
    """

    @staticmethod
    def for_patch(job_id: str | None = None, **details) -> Logger:
        """Logger for root-patch pipeline runs."""
        if job_id is None:
            job_id = f"patch-{uuid.uuid4().hex[:8]}"
        return logger.bind(
            job_id=job_id, source="patch", tags=["patch", "bootimg"], **details
        )

    @staticmethod
    def for_codec() -> Logger:
        """Logger for external image codec invocations."""
        return logger.bind(source="codec", tags=["codec", "bootimg"])

    @staticmethod
    def for_cache() -> Logger:
        """Logger for the stock boot image cache."""
        return logger.bind(source="cache", tags=["cache", "storage"])

    @staticmethod
    def for_partition(job_id: str | None = None) -> Logger:
        """Logger for partition comparison, verification and dumps."""
        if job_id is None:
            job_id = f"partition-{uuid.uuid4().hex[:8]}"
        return logger.bind(
            job_id=job_id, source="partition", tags=["partition", "integrity"]
        )

    @staticmethod
    def for_avb() -> Logger:
        """Logger for verified-boot and slot state queries."""
        return logger.bind(source="avb", tags=["avb", "device"])

    @staticmethod
    def for_device() -> Logger:
        """Logger for device command channel traffic."""
        return logger.bind(source="device", tags=["device"])

    @staticmethod
    def for_system() -> Logger:
        """Logger for system operations (startup, config)."""
        return logger.bind(source="system", tags=["system"])


class ThrottledLogger:
    """
    Logger wrapper that throttles high-frequency log events.

    Useful for block-scan progress or other high-volume logs that should
    only be emitted at intervals.
    """

    def __init__(self, log: Logger, interval_seconds: float = 5.0):
        """
        Initialize throttled logger.

        Args:
            log: Base logger to wrap
            interval_seconds: Minimum seconds between log emissions
        """
        self.log = log
        self.interval = interval_seconds
        self.last_log_time: dict[str, float] = {}

    def trace(self, key: str, message: str, **kwargs) -> None:
        """Log at TRACE level, throttled by key."""
        self._throttled_log("TRACE", key, message, **kwargs)

    def debug(self, key: str, message: str, **kwargs) -> None:
        """Log at DEBUG level, throttled by key."""
        self._throttled_log("DEBUG", key, message, **kwargs)

    def _throttled_log(self, level: str, key: str, message: str, **kwargs) -> None:
        now = time.time()
        last_time = self.last_log_time.get(key, 0)

        if now - last_time >= self.interval:
            log_method = getattr(self.log, level.lower())
            log_method(message, **kwargs)
            self.last_log_time[key] = now


class EventLogger:
    """
    Structured event logger using standardized schemas.

    Provides methods for logging common events with consistent
    structure and fields.
    """

    @staticmethod
    def log_patch_started(
        log: Logger, boot_image: str, payload: str, abi: str, **extra
    ) -> None:
        """Log root-patch pipeline start."""
        log.info(
            "Patch started",
            event_type="patch_started",
            boot_image=boot_image,
            payload=payload,
            abi=abi,
            **extra,
        )

    @staticmethod
    def log_stock_backup(log: Logger, sha1: str, is_new: bool, **extra) -> None:
        """Log a stock cache backup."""
        log.info(
            "Stock boot image cached" if is_new else "Stock boot image already cached",
            event_type="stock_backup",
            sha1=sha1,
            is_new=is_new,
            **extra,
        )

    @staticmethod
    def log_integrity_mismatch(
        log: Logger, path: str, expected: str, actual: str, **extra
    ) -> None:
        """Log a digest mismatch."""
        log.error(
            f"Integrity mismatch for {path}",
            event_type="integrity_mismatch",
            path=path,
            expected=expected,
            actual=actual,
            **extra,
        )

    @staticmethod
    def log_operation_metric(
        log: Logger, operation: str, metric_name: str, value: float, unit: str = "", **extra
    ) -> None:
        """Log operation performance metric."""
        log.debug(
            f"{operation} metric: {metric_name}",
            event_type="operation_metric",
            operation=operation,
            metric=metric_name,
            value=round(value, 2),
            unit=unit,
            **extra,
        )
