"""Inspect, patch, back up and verify Android boot images and partitions."""

from .__version__ import __version__


__all__ = ["__version__"]
