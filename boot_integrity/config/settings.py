"""Settings storage for toolkit configuration."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any


SETTINGS_PATH = Path(
    os.environ.get(
        "BOOT_INTEGRITY_SETTINGS_PATH",
        Path.home() / ".config" / "boot-integrity" / "settings.json",
    )
)

# Default values - use these constants instead of hardcoding values elsewhere
DEFAULT_CACHE_ROOT = Path.home() / ".boot-integrity" / "boot-cache"
DEFAULT_COMPARE_MAX_BYTES = 10 * 1024 * 1024 * 1024
DEFAULT_COMPARE_BLOCK_SIZE = 4096
DEFAULT_COMPARE_MAX_REGIONS = 100
DEFAULT_PAYLOAD_MIN_BYTES = 1_000_000
DEFAULT_PAYLOAD_MAX_BYTES = 500_000_000
DEFAULT_PARTITION_BATCH_SIZE = 10

DEFAULT_SETTINGS: dict[str, Any] = {
    "cache_root": str(DEFAULT_CACHE_ROOT),
    "codec_binary": "magiskboot",
    "codec_unpack_timeout_seconds": 60,
    "codec_repack_timeout_seconds": 120,
    "adb_path": os.environ.get("ADB_PATH", "adb"),
    "fastboot_path": os.environ.get("FASTBOOT_PATH", "fastboot"),
    "command_timeout_seconds": 30,
    "compare_max_bytes": DEFAULT_COMPARE_MAX_BYTES,
    "compare_block_size": DEFAULT_COMPARE_BLOCK_SIZE,
    "compare_max_regions": DEFAULT_COMPARE_MAX_REGIONS,
    "payload_min_bytes": DEFAULT_PAYLOAD_MIN_BYTES,
    "payload_max_bytes": DEFAULT_PAYLOAD_MAX_BYTES,
    "partition_batch_size": DEFAULT_PARTITION_BATCH_SIZE,
}


@dataclass
class SettingsStore:
    values: dict[str, Any] = field(default_factory=dict)


settings_store = SettingsStore()


def load_settings() -> None:
    settings_store.values = dict(DEFAULT_SETTINGS)
    if not SETTINGS_PATH.exists():
        return
    try:
        data = json.loads(SETTINGS_PATH.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return
    if isinstance(data, dict):
        settings_store.values.update(data)


def save_settings() -> None:
    SETTINGS_PATH.parent.mkdir(parents=True, exist_ok=True)
    SETTINGS_PATH.write_text(
        json.dumps(settings_store.values, indent=2, sort_keys=True),
        encoding="utf-8",
    )


def get_setting(key: str, default: Any | None = None) -> Any:
    return settings_store.values.get(key, default)


def set_setting(key: str, value: Any) -> None:
    settings_store.values[key] = value
    save_settings()


def get_int(key: str, default: int = 0) -> int:
    value = get_setting(key, default)
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def get_float(key: str, default: float | None = None) -> float | None:
    """Return a positive float setting, or ``default`` when unset or invalid."""
    value = get_setting(key)
    if value is None:
        return default
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    if number <= 0:
        return default
    return number


def get_path(key: str, default: Path | None = None) -> Path | None:
    value = get_setting(key)
    if not value:
        return default
    return Path(value).expanduser()


load_settings()
