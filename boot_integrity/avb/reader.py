"""Verified boot (AVB) and A/B slot state.

Bootloader mode reads the ``getvar all`` dump; device mode reads boot
properties over the shell. Nothing here validates vbmeta signatures.
"""

from __future__ import annotations

import re
from concurrent.futures import ThreadPoolExecutor
from typing import Optional, Union

from boot_integrity.device.channel import DeviceChannel
from boot_integrity.domain import AVBState, DeviceMode, SlotHealth, SlotInfo, VerityState
from boot_integrity.logging import LoggerFactory
from boot_integrity.storage.exceptions import BootIntegrityError, UnsupportedModeError

log = LoggerFactory.for_avb()

# vbmeta flags value -> (verity, verification, description)
AVB_STATES = {
    0: (True, True, "Verified Boot enabled (default)"),
    1: (False, True, "Verity disabled, verification enabled"),
    2: (True, False, "Verity enabled, verification disabled"),
    3: (False, False, "All verification disabled (unlocked)"),
}

# ro.boot.verifiedbootstate -> (state_code, description, unlocked, verity, verification)
BOOT_STATE_COLORS = {
    "green": (0, "Verified boot: GREEN (locked, verified)", False, True, True),
    "yellow": (1, "Verified boot: YELLOW (locked, custom key)", False, True, True),
    "orange": (3, "Verified boot: ORANGE (unlocked)", True, False, False),
    "red": (2, "Verified boot: RED (verification failed)", False, True, False),
}

DEVICE_PROPERTIES = (
    "ro.boot.verifiedbootstate",
    "ro.boot.veritymode",
    "ro.boot.flash.locked",
    "ro.boot.slot_suffix",
)

_VARIABLE_LINE_RE = re.compile(r"^\(bootloader\)\s*(.+?):\s+(.*)$")
_COMPACT_LINE_RE = re.compile(r"^\(bootloader\)\s*([^:]+):\s*(.+)$")
_VBMETA_STATE_KEY_RE = re.compile(r"vbmeta-state[-_:]?([ab])?$")
_DIGITS_RE = re.compile(r"(\d+)")
_SLOT_KEY_RE = re.compile(
    r"^slot-(bootable|successful|retry-count)[:_]([ab])$"
)


def _normalize_mode(mode: Union[str, DeviceMode]) -> DeviceMode:
    try:
        return DeviceMode(mode)
    except ValueError:
        raise UnsupportedModeError(
            str(mode), [supported.value for supported in DeviceMode]
        ) from None


def parse_variables(dump: str) -> dict[str, str]:
    """Parse ``(bootloader) key: value`` lines into a lowercase-keyed dict.

    Keys keep a slot qualifier, so ``slot-bootable:a: yes`` yields
    ``slot-bootable:a``.
    """
    variables: dict[str, str] = {}
    for line in dump.splitlines():
        line = line.strip()
        match = _VARIABLE_LINE_RE.match(line) or _COMPACT_LINE_RE.match(line)
        if not match:
            continue
        variables[match.group(1).strip().lower()] = match.group(2).strip()
    return variables


def parse_vbmeta_state(text: str) -> VerityState:
    """Interpret a vbmeta state string reported by the bootloader."""
    lower = text.lower()
    if "disabled" in lower or "unlocked" in lower:
        return VerityState(verity=False, verification=False, raw=text)
    if "enabled" in lower or "locked" in lower:
        return VerityState(verity=True, verification=True, raw=text)
    match = _DIGITS_RE.search(text)
    if match and int(match.group(1)) in AVB_STATES:
        verity, verification, _ = AVB_STATES[int(match.group(1))]
        return VerityState(verity=verity, verification=verification, raw=text)
    return VerityState(verity=True, verification=True, raw=text)


def _parse_int(value: str) -> Optional[int]:
    match = _DIGITS_RE.search(value)
    return int(match.group(1)) if match else None


class VerifiedBootReader:
    """Query verified boot and slot state through a DeviceChannel."""

    def __init__(self, channel: DeviceChannel):
        self.channel = channel

    def get_avb_state(self, mode: Union[str, DeviceMode]) -> AVBState:
        """Read the device's verified boot state.

        Raises:
            UnsupportedModeError: If ``mode`` is neither bootloader nor device
        """
        mode = _normalize_mode(mode)
        if mode == DeviceMode.BOOTLOADER:
            return self._state_from_bootloader()
        return self._state_from_device()

    def _state_from_bootloader(self) -> AVBState:
        state = AVBState()
        variables = parse_variables(self.channel.privileged_variable_dump())

        for key, value in variables.items():
            if key == "unlocked":
                state.unlocked = value.lower() == "yes"
            elif key == "slot-count":
                state.slot_count = _parse_int(value)
            elif key == "current-slot":
                state.current_slot = value.lower()
            elif "avb" in key and "version" in key:
                state.avb_version = value
            elif key.startswith("vbmeta-state"):
                slot_match = _VBMETA_STATE_KEY_RE.search(key)
                slot = (slot_match.group(1) if slot_match else None) or "default"
                state.slots[slot] = parse_vbmeta_state(value)
            elif "rollback" in key:
                index = _parse_int(key)
                number = _parse_int(value)
                if index is not None and number is not None:
                    state.rollback_indices[str(index)] = number

        if state.unlocked:
            state.state_code = 3
            state.state_description = "Bootloader unlocked - verification disabled"
            state.verity_enabled = False
            state.verification_enabled = False
        else:
            state.state_code = 0
            state.state_description = "Bootloader locked - verification enabled"
        log.debug(f"Bootloader AVB state: {state.state_description}")
        return state

    def _getprop(self, name: str) -> Optional[str]:
        try:
            result = self.channel.shell(f"getprop {name}")
        except BootIntegrityError as error:
            log.debug(f"getprop {name} failed: {error}")
            return None
        if not result.success:
            return None
        return result.stdout.strip()

    def _probe_properties(self) -> dict[str, Optional[str]]:
        with ThreadPoolExecutor(max_workers=len(DEVICE_PROPERTIES)) as executor:
            values = executor.map(self._getprop, DEVICE_PROPERTIES)
            return dict(zip(DEVICE_PROPERTIES, values))

    def _state_from_device(self) -> AVBState:
        state = AVBState()
        props = self._probe_properties()

        boot_state = props["ro.boot.verifiedbootstate"]
        if boot_state is not None:
            color = boot_state.lower()
            if color in BOOT_STATE_COLORS:
                (
                    state.state_code,
                    state.state_description,
                    state.unlocked,
                    state.verity_enabled,
                    state.verification_enabled,
                ) = BOOT_STATE_COLORS[color]
            else:
                state.state_description = f"Verified boot state: {color}"

        verity_mode = props["ro.boot.veritymode"]
        if verity_mode is not None:
            state.verity_enabled = verity_mode.lower() not in ("disabled", "")

        flash_locked = props["ro.boot.flash.locked"]
        if flash_locked is not None:
            state.unlocked = flash_locked == "0"

        slot_suffix = props["ro.boot.slot_suffix"]
        if slot_suffix:
            state.current_slot = slot_suffix.replace("_", "")
            state.slot_count = 2
        log.debug(f"Device AVB state: {state.state_description}")
        return state

    def has_ab_slots(self, mode: Union[str, DeviceMode]) -> bool:
        mode = _normalize_mode(mode)
        if mode == DeviceMode.BOOTLOADER:
            variables = parse_variables(self.channel.privileged_variable_dump())
            count = _parse_int(variables.get("slot-count", ""))
            return count is not None and count >= 2
        return bool(self._getprop("ro.boot.slot_suffix"))

    def get_slot_info(self, mode: Union[str, DeviceMode]) -> SlotInfo:
        """Describe the A/B layout; per-slot health needs bootloader mode."""
        mode = _normalize_mode(mode)
        info = SlotInfo()
        if mode == DeviceMode.DEVICE:
            suffix = self._getprop("ro.boot.slot_suffix")
            if suffix:
                info.is_ab = True
                info.current_slot = suffix.replace("_", "")
            return info

        variables = parse_variables(self.channel.privileged_variable_dump())
        health = {"a": SlotHealth(), "b": SlotHealth()}
        for key, value in variables.items():
            lower = value.lower()
            if key == "slot-count":
                count = _parse_int(value)
                info.is_ab = count is not None and count >= 2
            elif key == "current-slot":
                info.current_slot = lower
            else:
                match = _SLOT_KEY_RE.match(key)
                if not match:
                    continue
                field_name, slot = match.groups()
                if field_name == "bootable":
                    health[slot].bootable = lower == "yes"
                elif field_name == "successful":
                    health[slot].successful = lower == "yes"
                else:
                    health[slot].retry_count = _parse_int(value) or 0

        if info.is_ab:
            info.slot_a = health["a"]
            info.slot_b = health["b"]
        return info
