"""Device command channel."""

from .channel import AdbFastbootChannel, CommandResult, DeviceChannel

__all__ = ["AdbFastbootChannel", "CommandResult", "DeviceChannel"]
