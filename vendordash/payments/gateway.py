"""Adapter around the gateway's callback-based checkout widget."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Mapping, Optional, Protocol, Set, Tuple

from vendordash.logging_config import redact
from vendordash.subscription.errors import GatewayError, GatewayRuntimeUnavailable, PaymentCancelled
from vendordash.subscription.models import PayerHint, ProofOfPayment

logger = logging.getLogger(__name__)

SuccessCallback = Callable[[Mapping[str, Any]], None]
DismissCallback = Callable[[], None]
ErrorCallback = Callable[[str], None]

_PAYMENT_ID_KEYS = ("gatewayPaymentId", "razorpay_payment_id", "payment_id")
_ORDER_ID_KEYS = ("gatewayOrderId", "razorpay_order_id", "order_id")
_SIGNATURE_KEYS = ("signature", "razorpay_signature")

# Placeholders the dialog shows when the vendor profile lacks a field.
_PREFILL_DEFAULTS = {"name": "Vendor User", "email": "vendor@example.com", "contact": "+919999999999"}


@dataclass(frozen=True)
class CheckoutOptions:
    """Parameters for one checkout dialog. Only the public key id is included."""

    key_id: str
    order_id: str
    amount_minor_units: int
    currency: str
    display_name: str
    description: str = ""
    prefill: Mapping[str, str] = field(default_factory=dict)

    def as_widget_options(self) -> Dict[str, Any]:
        return {
            "key": self.key_id,
            "order_id": self.order_id,
            "amount": self.amount_minor_units,
            "currency": self.currency,
            "name": self.display_name,
            "description": self.description,
            "prefill": dict(self.prefill),
        }


class CheckoutHandle(Protocol):
    def close(self) -> None:
        """Close the dialog if it is still open. Must be idempotent."""


class CheckoutWidget(Protocol):
    def open(
        self,
        options: CheckoutOptions,
        *,
        on_success: SuccessCallback,
        on_dismiss: DismissCallback,
        on_error: ErrorCallback,
    ) -> CheckoutHandle:
        """Present the dialog; exactly one callback fires when it settles."""


class CheckoutRuntime(Protocol):
    def load(self) -> None:
        """Start loading the gateway runtime."""

    def is_ready(self) -> bool:
        """Return ``True`` once the runtime can open dialogs."""

    def widget(self) -> CheckoutWidget:
        """Return the widget factory of a ready runtime."""


def _first(payload: Mapping[str, Any], keys: Tuple[str, ...]) -> Optional[str]:
    for key in keys:
        value = payload.get(key)
        if value:
            return str(value)
    return None


class PaymentGatewayClient:
    """Collects one payment per order through the checkout widget.

    The runtime is loaded lazily behind a single shared readiness task, so
    concurrent and repeated purchases never trigger a second load. Signature
    verification is deliberately absent: the proof is forwarded to the
    backend, which holds the gateway secret.
    """

    def __init__(
        self,
        runtime: CheckoutRuntime,
        *,
        key_id: str,
        merchant_name: str = "VendorPro",
        ready_timeout: float = 10.0,
        poll_interval: float = 0.1,
    ) -> None:
        if not key_id:
            raise ValueError("a public gateway key id is required")
        self._runtime = runtime
        self._key_id = key_id
        self._merchant_name = merchant_name
        self._ready_timeout = ready_timeout
        self._poll_interval = poll_interval
        self._ready_task: Optional[asyncio.Task[CheckoutWidget]] = None
        self._presented_orders: Set[str] = set()
        self._starting: Dict[str, asyncio.Future[None]] = {}
        self._open: Dict[str, Tuple[CheckoutHandle, asyncio.Future[Mapping[str, Any]]]] = {}

    async def _wait_until_ready(self) -> CheckoutWidget:
        runtime = self._runtime
        if not runtime.is_ready():
            logger.info({"event": "gateway_runtime_loading"})
            try:
                runtime.load()
            except Exception as exc:
                raise GatewayRuntimeUnavailable(f"checkout runtime failed to load: {exc}") from exc
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._ready_timeout
        while not runtime.is_ready():
            if loop.time() >= deadline:
                raise GatewayRuntimeUnavailable(
                    f"checkout runtime not ready after {self._ready_timeout:.1f}s"
                )
            await asyncio.sleep(self._poll_interval)
        logger.info({"event": "gateway_runtime_ready"})
        return runtime.widget()

    async def ensure_runtime_ready(self) -> CheckoutWidget:
        """Wait for the runtime, sharing one readiness task between callers.

        A failed wait is forgotten so a later purchase may try again.
        """

        task = self._ready_task
        if task is None or (task.done() and (task.cancelled() or task.exception() is not None)):
            task = asyncio.ensure_future(self._wait_until_ready())
            self._ready_task = task
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            if task.cancelled():
                self._ready_task = None
            raise
        except GatewayError:
            if self._ready_task is task:
                self._ready_task = None
            raise

    def _build_options(
        self,
        order_id: str,
        amount: int,
        currency: str,
        payer_hint: Optional[PayerHint],
        description: str,
    ) -> CheckoutOptions:
        prefill = dict(_PREFILL_DEFAULTS)
        if payer_hint is not None:
            if payer_hint.name:
                prefill["name"] = payer_hint.name
            if payer_hint.email:
                prefill["email"] = payer_hint.email
            if payer_hint.phone:
                prefill["contact"] = payer_hint.phone
        return CheckoutOptions(
            key_id=self._key_id,
            order_id=order_id,
            amount_minor_units=amount,
            currency=currency.upper(),
            display_name=self._merchant_name,
            description=description,
            prefill=prefill,
        )

    async def collect_payment(
        self,
        order_id: str,
        amount: int,
        currency: str,
        payer_hint: Optional[PayerHint] = None,
        *,
        description: str = "",
    ) -> ProofOfPayment:
        """Present the dialog for ``order_id`` and wait until it settles.

        Raises :class:`PaymentCancelled` when the payer dismisses the dialog
        and :class:`GatewayError` when the gateway reports a failure.
        """

        if order_id in self._presented_orders:
            raise GatewayError(f"order {order_id} was already presented to the gateway")
        self._presented_orders.add(order_id)

        loop = asyncio.get_running_loop()
        cancel_signal: asyncio.Future[None] = loop.create_future()
        self._starting[order_id] = cancel_signal
        ready = asyncio.ensure_future(self.ensure_runtime_ready())
        try:
            await asyncio.wait({ready, cancel_signal}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            self._starting.pop(order_id, None)
            if not ready.done():
                ready.cancel()
        if cancel_signal.done():
            if ready.done() and not ready.cancelled():
                ready.exception()
            raise PaymentCancelled("Payment cancelled by user")
        widget = ready.result()
        future: asyncio.Future[Mapping[str, Any]] = loop.create_future()

        def _settle(result: Optional[Mapping[str, Any]], error: Optional[BaseException]) -> None:
            if future.done():
                return
            if error is not None:
                future.set_exception(error)
            else:
                future.set_result(result or {})

        def on_success(payload: Mapping[str, Any]) -> None:
            loop.call_soon_threadsafe(_settle, dict(payload), None)

        def on_dismiss() -> None:
            loop.call_soon_threadsafe(_settle, None, PaymentCancelled("Payment cancelled by user"))

        def on_error(description: str) -> None:
            loop.call_soon_threadsafe(_settle, None, GatewayError(description or "gateway error"))

        options = self._build_options(order_id, amount, currency, payer_hint, description)
        logger.info(
            {
                "event": "checkout_opened",
                "order_id": order_id,
                "amount": amount,
                "currency": options.currency,
            }
        )
        try:
            handle = widget.open(options, on_success=on_success, on_dismiss=on_dismiss, on_error=on_error)
        except Exception as exc:
            raise GatewayError(f"checkout dialog could not be opened: {exc}") from exc

        self._open[order_id] = (handle, future)
        try:
            payload = await future
        finally:
            self._open.pop(order_id, None)
            handle.close()

        return self._to_proof(order_id, payload)

    @staticmethod
    def _to_proof(order_id: str, payload: Mapping[str, Any]) -> ProofOfPayment:
        payment_id = _first(payload, _PAYMENT_ID_KEYS)
        gateway_order_id = _first(payload, _ORDER_ID_KEYS)
        signature = _first(payload, _SIGNATURE_KEYS)
        if not payment_id or not gateway_order_id or not signature:
            raise GatewayError("gateway returned an incomplete proof of payment")
        if gateway_order_id != order_id:
            logger.warning(
                {"event": "proof_order_mismatch", "order_id": order_id, "gateway_order_id": gateway_order_id}
            )
        logger.info(
            {
                "event": "checkout_paid",
                "order_id": gateway_order_id,
                "payment_id": payment_id,
                "signature": redact(signature),
            }
        )
        return ProofOfPayment(
            gateway_payment_id=payment_id,
            gateway_order_id=gateway_order_id,
            signature=signature,
        )

    def is_open(self, order_id: str) -> bool:
        return order_id in self._open

    def cancel(self, order_id: str) -> bool:
        """Close the dialog for ``order_id`` as if the payer dismissed it.

        An order still waiting for the runtime is cancelled before its
        dialog opens.
        """

        entry = self._open.get(order_id)
        if entry is None:
            cancel_signal = self._starting.get(order_id)
            if cancel_signal is None:
                return False
            if not cancel_signal.done():
                cancel_signal.set_result(None)
            return True
        handle, future = entry
        handle.close()
        if not future.done():
            future.set_exception(PaymentCancelled("Payment cancelled by user"))
        return True

    async def close(self) -> None:
        """Release open dialogs and the readiness task on teardown."""

        for cancel_signal in self._starting.values():
            if not cancel_signal.done():
                cancel_signal.set_result(None)
        for order_id in list(self._open):
            handle, future = self._open.pop(order_id)
            handle.close()
            if not future.done():
                future.set_exception(PaymentCancelled("checkout closed"))
        task = self._ready_task
        self._ready_task = None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except (asyncio.CancelledError, GatewayError):
                pass
