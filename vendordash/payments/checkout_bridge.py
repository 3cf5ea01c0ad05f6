"""Checkout runtime whose dialogs are rendered by the dashboard browser.

The browser fetches the options of an open dialog, runs the gateway's
hosted widget, and reports back through the checkout routes. Each report
fires the matching callback registered by :class:`PaymentGatewayClient`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping

from .gateway import CheckoutOptions, DismissCallback, ErrorCallback, SuccessCallback

logger = logging.getLogger(__name__)


@dataclass
class PendingCheckout:
    options: CheckoutOptions
    on_success: SuccessCallback
    on_dismiss: DismissCallback
    on_error: ErrorCallback


class _BridgeHandle:
    def __init__(self, bridge: "BridgeCheckoutRuntime", order_id: str) -> None:
        self._bridge = bridge
        self._order_id = order_id

    def close(self) -> None:
        self._bridge._discard(self._order_id)


class BridgeCheckoutRuntime:
    """In-process checkout runtime fed by HTTP callbacks from the browser."""

    def __init__(self) -> None:
        self._loaded = False
        self._load_calls = 0
        self._pending: Dict[str, PendingCheckout] = {}

    @property
    def load_calls(self) -> int:
        return self._load_calls

    def load(self) -> None:
        self._load_calls += 1
        self._loaded = True

    def is_ready(self) -> bool:
        return self._loaded

    def widget(self) -> "BridgeCheckoutRuntime":
        return self

    def open(
        self,
        options: CheckoutOptions,
        *,
        on_success: SuccessCallback,
        on_dismiss: DismissCallback,
        on_error: ErrorCallback,
    ) -> _BridgeHandle:
        if options.order_id in self._pending:
            raise RuntimeError(f"a checkout dialog is already open for order {options.order_id}")
        self._pending[options.order_id] = PendingCheckout(options, on_success, on_dismiss, on_error)
        return _BridgeHandle(self, options.order_id)

    def _discard(self, order_id: str) -> None:
        self._pending.pop(order_id, None)

    def pending_orders(self) -> List[str]:
        return list(self._pending)

    def options_for(self, order_id: str) -> Dict[str, Any]:
        pending = self._pending.get(order_id)
        if pending is None:
            raise KeyError(order_id)
        return pending.options.as_widget_options()

    def _take(self, order_id: str) -> PendingCheckout:
        pending = self._pending.pop(order_id, None)
        if pending is None:
            raise KeyError(order_id)
        return pending

    def complete(self, order_id: str, payload: Mapping[str, Any]) -> None:
        self._take(order_id).on_success(payload)

    def dismiss(self, order_id: str) -> None:
        logger.info({"event": "checkout_dismissed", "order_id": order_id})
        self._take(order_id).on_dismiss()

    def fail(self, order_id: str, description: str) -> None:
        logger.warning({"event": "checkout_failed", "order_id": order_id, "description": description})
        self._take(order_id).on_error(description)
