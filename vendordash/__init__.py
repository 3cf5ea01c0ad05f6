"""Vendor dashboard subscription purchase service."""

__version__ = "0.1.0"
