"""Verified boot and slot state reader."""

from .reader import VerifiedBootReader, parse_vbmeta_state

__all__ = ["VerifiedBootReader", "parse_vbmeta_state"]
