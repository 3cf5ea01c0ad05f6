"""Vendor session collaborator."""

from .session import SessionHealth, VendorSession

__all__ = ["SessionHealth", "VendorSession"]
