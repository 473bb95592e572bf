"""External command execution with timeouts and cooperative cancellation."""

from __future__ import annotations

import subprocess
import threading
from pathlib import Path
from typing import Mapping, Optional, Sequence

from boot_integrity.logging import get_logger

from .exceptions import ExternalToolError, OperationCancelledError

log = get_logger(source=__name__, tags=["command"])


class CancellationToken:
    """Cooperative cancellation flag checked before every external call.

    A cancelled token stops the next external process from starting; a
    process that is already running is left to finish or time out.
    """

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self, operation: str = "operation") -> None:
        if self._event.is_set():
            raise OperationCancelledError(operation)


def run_command(
    command: Sequence[str],
    *,
    cwd: Optional[Path] = None,
    timeout: Optional[float] = None,
    env: Optional[Mapping[str, str]] = None,
    input_text: Optional[str] = None,
    cancel_token: Optional[CancellationToken] = None,
) -> subprocess.CompletedProcess:
    """Run a command and return the completed process without checking its status.

    Raises:
        OperationCancelledError: If the token was cancelled before the call
        ExternalToolError: If the binary is missing or the timeout expires
    """
    if cancel_token is not None:
        cancel_token.raise_if_cancelled(command[0])
    log.debug(f"Running command: {' '.join(command)}")
    try:
        result = subprocess.run(
            list(command),
            cwd=str(cwd) if cwd else None,
            env=dict(env) if env is not None else None,
            input=input_text,
            text=True,
            encoding="utf-8",
            errors="replace",
            capture_output=True,
            timeout=timeout,
        )
    except FileNotFoundError as error:
        raise ExternalToolError(
            f"Command not found: {command[0]}", command=command, stderr=str(error)
        ) from error
    except subprocess.TimeoutExpired as error:
        raise ExternalToolError(
            f"Command timed out after {timeout} seconds ({' '.join(command)})",
            command=command,
        ) from error
    log.trace(f"Command exited with code {result.returncode}")
    return result


__all__ = [
    "CancellationToken",
    "run_command",
]
