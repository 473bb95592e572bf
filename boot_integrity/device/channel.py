"""Device command channel port and the adb/fastboot implementation."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Protocol, Sequence, Union

from boot_integrity.config import settings
from boot_integrity.logging import LoggerFactory
from boot_integrity.storage.command_runners import CancellationToken, run_command
from boot_integrity.storage.exceptions import DeviceCommandError

log = LoggerFactory.for_device()

PULL_TIMEOUT_SECONDS = 3600


@dataclass(frozen=True)
class CommandResult:
    stdout: str = ""
    stderr: str = ""
    exit_code: int = 0

    @property
    def success(self) -> bool:
        return self.exit_code == 0


class DeviceChannel(Protocol):
    """Transport to one attached device.

    ``shell`` runs in the booted OS, ``privileged_variable_dump`` returns the
    bootloader's ``getvar all`` text (raising DeviceCommandError when the
    bootloader call fails) and ``pull`` copies a device file to the
    host.
    """

    def shell(self, command: str) -> CommandResult:
        ...

    def privileged_variable_dump(self) -> str:
        ...

    def pull(self, remote_path: str, local_path: Union[str, Path]) -> CommandResult:
        ...


class AdbFastbootChannel:
    """DeviceChannel backed by the ``adb`` and ``fastboot`` binaries."""

    def __init__(
        self,
        serial: Optional[str] = None,
        adb_path: Optional[str] = None,
        fastboot_path: Optional[str] = None,
        timeout: Optional[float] = None,
        cancel_token: Optional[CancellationToken] = None,
    ):
        self.serial = serial
        self.adb_path = adb_path or settings.get_setting("adb_path", "adb")
        self.fastboot_path = fastboot_path or settings.get_setting(
            "fastboot_path", "fastboot"
        )
        self.timeout = timeout or settings.get_float("command_timeout_seconds", 30.0)
        self.cancel_token = cancel_token

    def _serial_args(self) -> list[str]:
        return ["-s", self.serial] if self.serial else []

    def _run(
        self, binary: str, args: Sequence[str], timeout: Optional[float] = None
    ) -> CommandResult:
        result = run_command(
            [binary, *self._serial_args(), *args],
            timeout=timeout or self.timeout,
            cancel_token=self.cancel_token,
        )
        if result.returncode != 0:
            log.debug(f"{Path(binary).name} {args[0]} exited {result.returncode}")
        return CommandResult(
            stdout=result.stdout or "",
            stderr=result.stderr or "",
            exit_code=result.returncode,
        )

    def shell(self, command: str) -> CommandResult:
        return self._run(self.adb_path, ["shell", command])

    def privileged_variable_dump(self) -> str:
        result = self._run(self.fastboot_path, ["getvar", "all"])
        if not result.success:
            raise DeviceCommandError(
                "fastboot getvar all failed",
                command=[self.fastboot_path, "getvar", "all"],
                exit_code=result.exit_code,
                stderr=result.stderr,
            )
        # fastboot writes getvar output to stderr
        return result.stderr or result.stdout

    def pull(self, remote_path: str, local_path: Union[str, Path]) -> CommandResult:
        return self._run(
            self.adb_path,
            ["pull", remote_path, str(local_path)],
            timeout=PULL_TIMEOUT_SECONDS,
        )

    def __repr__(self) -> str:
        return f"AdbFastbootChannel(serial={self.serial!r})"
