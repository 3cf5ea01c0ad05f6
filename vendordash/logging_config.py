"""Process-wide logging setup."""

from __future__ import annotations

import logging

_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging(level: str = "INFO") -> None:
    """Install a single stream handler on the root logger."""

    root = logging.getLogger()
    resolved = logging.getLevelName(level.upper())
    if not isinstance(resolved, int):
        resolved = logging.INFO
    root.setLevel(resolved)
    if any(getattr(handler, "_vendordash", False) for handler in root.handlers):
        return
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(_FORMAT))
    handler._vendordash = True  # type: ignore[attr-defined]
    root.addHandler(handler)


def redact(value: str | None, keep: int = 6) -> str:
    """Return a shortened form of an opaque credential for log output."""

    if not value:
        return ""
    if len(value) <= keep:
        return "***"
    return f"{value[:keep]}***"
