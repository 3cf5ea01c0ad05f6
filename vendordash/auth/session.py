"""In-memory vendor session holding the backend bearer credential."""

from __future__ import annotations

import base64
import binascii
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, List, Optional

logger = logging.getLogger(__name__)

SessionExpiredHandler = Callable[[], None]


@dataclass(frozen=True)
class SessionHealth:
    """Read-only diagnostics about the current vendor session."""

    authenticated: bool
    expired: bool
    expires_at: Optional[datetime]


def _base64url_decode(data: str) -> bytes:
    padding = "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(data + padding)


def _token_expiry(token: str) -> Optional[datetime]:
    """Read the ``exp`` claim without verifying the token.

    The backend owns token validation; the claim is only used for
    diagnostics.
    """

    try:
        _, payload_segment, _ = token.split(".")
        payload = json.loads(_base64url_decode(payload_segment))
    except (ValueError, binascii.Error):
        return None
    exp = payload.get("exp") if isinstance(payload, dict) else None
    if not isinstance(exp, (int, float)):
        return None
    return datetime.fromtimestamp(exp, tz=timezone.utc)


class VendorSession:
    """Supplies the bearer credential and receives session-expiry signals."""

    def __init__(self, token: str | None = None) -> None:
        self._token = token or None
        self._expired = False
        self._expiry_handlers: List[SessionExpiredHandler] = []

    def login(self, token: str) -> None:
        if not token:
            raise ValueError("token must not be empty")
        self._token = token
        self._expired = False

    def clear(self) -> None:
        self._token = None
        self._expired = False

    def bearer_token(self) -> Optional[str]:
        if self._expired:
            return None
        return self._token

    def on_expired(self, handler: SessionExpiredHandler) -> None:
        self._expiry_handlers.append(handler)

    def mark_expired(self) -> None:
        """Record a 401 from the backend and notify registered handlers."""

        if self._expired:
            return
        self._expired = True
        logger.warning({"event": "session_expired"})
        for handler in list(self._expiry_handlers):
            try:
                handler()
            except Exception:
                logger.exception("Session expiry handler failed")

    def session_health(self) -> SessionHealth:
        token = self._token
        expires_at = _token_expiry(token) if token else None
        expired = self._expired
        if expires_at is not None and expires_at <= datetime.now(tz=timezone.utc):
            expired = True
        return SessionHealth(authenticated=token is not None and not expired, expired=expired, expires_at=expires_at)
