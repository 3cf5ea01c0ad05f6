"""Vendor backend REST boundary."""

from .client import BackendAPIError, BackendClient, BackendTimeout, BackendUnavailable, SessionExpired
from .models import VerificationResult, WireDecodeError

__all__ = [
    "BackendAPIError",
    "BackendClient",
    "BackendTimeout",
    "BackendUnavailable",
    "SessionExpired",
    "VerificationResult",
    "WireDecodeError",
]
