"""Runtime configuration loaded from environment variables."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass

logger = logging.getLogger(__name__)

DEFAULT_API_BASE = "https://api.localzarurat.com/api/vendor"


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        parsed = float(value)
    except ValueError:
        logger.warning({"event": "invalid_config", "name": name, "value": value, "default": default})
        return default
    if parsed <= 0:
        logger.warning({"event": "invalid_config", "name": name, "value": value, "default": default})
        return default
    return parsed


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        parsed = int(value)
    except ValueError:
        logger.warning({"event": "invalid_config", "name": name, "value": value, "default": default})
        return default
    return max(parsed, 0)


@dataclass(frozen=True)
class Settings:
    """Settings for the backend client, the checkout runtime and logging.

    Only the gateway's public key id is configured here. Secret gateway
    credentials belong to the vendor backend and are never read by this
    service.
    """

    api_base: str = DEFAULT_API_BASE
    http_timeout: float = 10.0
    read_retries: int = 1
    gateway_key_id: str = ""
    merchant_name: str = "VendorPro"
    currency: str = "INR"
    gateway_ready_timeout: float = 10.0
    gateway_ready_poll_interval: float = 0.1
    log_level: str = "INFO"

    @classmethod
    def load_from_env(cls) -> "Settings":
        return cls(
            api_base=os.getenv("VENDORDASH_API_BASE", DEFAULT_API_BASE).rstrip("/"),
            http_timeout=_env_float("VENDORDASH_HTTP_TIMEOUT", 10.0),
            read_retries=_env_int("VENDORDASH_READ_RETRIES", 1),
            gateway_key_id=os.getenv("GATEWAY_KEY_ID", "").strip(),
            merchant_name=os.getenv("GATEWAY_MERCHANT_NAME", "VendorPro"),
            currency=os.getenv("GATEWAY_CURRENCY", "INR").upper(),
            gateway_ready_timeout=_env_float("GATEWAY_READY_TIMEOUT", 10.0),
            gateway_ready_poll_interval=_env_float("GATEWAY_READY_POLL_INTERVAL", 0.1),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )
