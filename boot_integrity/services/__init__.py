"""Service facade."""

from .toolkit import BootToolkit

__all__ = ["BootToolkit"]
