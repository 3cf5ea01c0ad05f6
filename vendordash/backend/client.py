"""Async client for the vendor backend subscription endpoints."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from time import perf_counter
from typing import Any, Dict, List, Mapping

import httpx
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from vendordash.auth import VendorSession
from vendordash.config import Settings
from vendordash.logging_config import redact
from vendordash.metrics import record_backend_request
from vendordash.subscription.models import CreatedSubscription, EntitlementSnapshot, Plan, ProofOfPayment

from .models import (
    Envelope,
    VerificationResult,
    decode_created_subscription,
    decode_plans,
    decode_snapshot,
    decode_verification,
)

logger = logging.getLogger(__name__)

CONFLICT_CODE = "SUBSCRIPTION_CONFLICT"
# Compatibility with backends that only report the conflict as prose.
_CONFLICT_MESSAGE = "already have an active or pending subscription"


class BackendAPIError(RuntimeError):
    """Raised when the vendor backend rejects a request."""

    def __init__(
        self,
        method: str,
        path: str,
        message: str,
        *,
        status_code: int | None = None,
        code: str | None = None,
    ) -> None:
        description = f"{method} {path} failed: {message}"
        if status_code is not None:
            description = f"{description} (status={status_code})"
        super().__init__(description)
        self.method = method
        self.path = path
        self.message = message
        self.status_code = status_code
        self.code = code

    @property
    def is_conflict(self) -> bool:
        if self.code == CONFLICT_CODE or self.status_code == 409:
            return True
        return _CONFLICT_MESSAGE in (self.message or "").lower()


class BackendUnavailable(BackendAPIError):
    """Transport failure or 5xx response; safe to retry for idempotent reads."""


class BackendTimeout(BackendUnavailable):
    """The request exceeded the configured timeout."""


class SessionExpired(BackendAPIError):
    """The backend answered 401; the session collaborator has been notified."""


def _log_retry(retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    logger.info(
        {
            "event": "retry",
            "attempt": retry_state.attempt_number,
            "error": str(exc) if exc else None,
        }
    )


class BackendClient:
    """Thin wrapper over the four subscription endpoints of the vendor backend.

    The bearer credential is taken from the :class:`VendorSession` on every
    request. Idempotent reads are retried on transport errors and 5xx
    responses; subscription creation and payment verification never are,
    since a duplicate submission could double-charge or double-activate.
    """

    def __init__(
        self,
        session: VendorSession,
        *,
        base_url: str | None = None,
        timeout: float = 10.0,
        read_retries: int = 1,
        retry_backoff: float = 0.2,
        currency: str = "INR",
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._session = session
        self._base_url = (base_url or Settings().api_base).rstrip("/")
        self._timeout = timeout
        self._read_retries = max(read_retries, 0)
        self._retry_backoff = retry_backoff
        self._currency = currency.upper()
        self._client = client
        self._owns_client = client is None

    @classmethod
    def from_settings(cls, settings: Settings, session: VendorSession, **kwargs: Any) -> "BackendClient":
        return cls(
            session,
            base_url=settings.api_base,
            timeout=settings.http_timeout,
            read_retries=settings.read_retries,
            currency=settings.currency,
            **kwargs,
        )

    @property
    def base_url(self) -> str:
        return self._base_url

    def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(base_url=self._base_url, timeout=self._timeout)
        return self._client

    async def close(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "BackendClient":
        self._ensure_client()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        token = self._session.bearer_token()
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        *,
        endpoint: str,
        json: Mapping[str, Any] | None = None,
    ) -> Envelope:
        client = self._ensure_client()
        started = perf_counter()
        try:
            response = await client.request(
                method, path, json=json, headers=self._headers(), timeout=self._timeout
            )
        except httpx.TimeoutException as exc:
            raise BackendTimeout(method, path, str(exc) or "request timed out") from exc
        except httpx.TransportError as exc:
            raise BackendUnavailable(method, path, str(exc) or exc.__class__.__name__) from exc
        finally:
            record_backend_request(endpoint, perf_counter() - started)

        body = self._decode_body(response)
        message = str(body.get("message") or response.reason_phrase or "") if isinstance(body, dict) else ""
        code = body.get("code") if isinstance(body, dict) else None

        if response.status_code == 401:
            self._session.mark_expired()
            raise SessionExpired(method, path, message or "unauthorized", status_code=401, code=code)
        if response.status_code >= 500:
            raise BackendUnavailable(method, path, message, status_code=response.status_code, code=code)
        if response.status_code >= 400:
            raise BackendAPIError(method, path, message, status_code=response.status_code, code=code)

        if isinstance(body, dict) and "success" in body:
            return Envelope.model_validate(body)
        return Envelope(success=True, data=body)

    @staticmethod
    def _decode_body(response: httpx.Response) -> Any:
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError:
            return {"message": response.text}

    async def _read(self, path: str, *, endpoint: str) -> Envelope:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(1 + self._read_retries),
            wait=wait_exponential(multiplier=self._retry_backoff, max=2),
            retry=retry_if_exception_type(BackendUnavailable),
            before_sleep=_log_retry,
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                envelope = await self._request("GET", path, endpoint=endpoint)
        if not envelope.success:
            raise BackendAPIError("GET", path, envelope.message or "request rejected", code=envelope.code)
        return envelope

    async def get_plans(self) -> List[Plan]:
        envelope = await self._read("/subscription/plans", endpoint="plans")
        return decode_plans(envelope.data)

    async def create_subscription(self, plan: Plan) -> CreatedSubscription:
        path = "/subscription"
        envelope = await self._request("POST", path, endpoint="create", json={"plan": plan.key})
        if not envelope.success:
            raise BackendAPIError("POST", path, envelope.message or "request rejected", code=envelope.code)
        return decode_created_subscription(envelope.data, plan, self._currency)

    async def verify_payment(self, subscription_id: str, proof: ProofOfPayment) -> VerificationResult:
        logger.info(
            {
                "event": "verification_submitted",
                "subscription_id": subscription_id,
                "payment_id": proof.gateway_payment_id,
                "order_id": proof.gateway_order_id,
                "signature": redact(proof.signature),
            }
        )
        envelope = await self._request(
            "POST",
            "/subscription/verify",
            endpoint="verify",
            json={
                "subscriptionId": subscription_id,
                "gatewayPaymentId": proof.gateway_payment_id,
                "gatewayOrderId": proof.gateway_order_id,
                "signature": proof.signature,
            },
        )
        return decode_verification(envelope)

    async def get_current_subscription(self) -> EntitlementSnapshot:
        envelope = await self._read("/subscription/current", endpoint="current")
        return decode_snapshot(envelope.data, datetime.now(tz=timezone.utc))

