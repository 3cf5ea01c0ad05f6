"""Error taxonomy for the subscription purchase workflow.

Every error carries whether the user may retry the purchase and which next
action the dashboard should offer. The UI renders the classification and
never has to inspect backend messages itself.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional


class NextAction(str, Enum):
    retry = "retry"
    contact_support = "contact_support"
    manage_existing = "manage_existing"
    none = "none"


class SubscriptionFlowError(RuntimeError):
    """Base class for classified workflow errors."""

    code = "subscription_error"
    retryable = True
    next_action = NextAction.retry

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "message": str(self),
            "retryable": self.retryable,
            "next_action": self.next_action.value,
        }


class CatalogUnavailable(SubscriptionFlowError):
    """The plan catalog could not be loaded or was empty."""

    code = "catalog_unavailable"


class CreationFailed(SubscriptionFlowError):
    """The backend could not create the pending subscription."""

    code = "creation_failed"


class OrderConflict(CreationFailed):
    """The vendor already holds an active or pending subscription."""

    code = "order_conflict"
    retryable = False
    next_action = NextAction.manage_existing


class GatewayError(SubscriptionFlowError):
    """The payment gateway reported a transport or processing error."""

    code = "gateway_error"


class GatewayRuntimeUnavailable(GatewayError):
    """The checkout runtime did not become ready within the allowed wait."""

    code = "gateway_runtime_unavailable"


class PaymentCancelled(SubscriptionFlowError):
    """The payer dismissed the checkout dialog."""

    code = "payment_cancelled"


class VerificationFailed(SubscriptionFlowError):
    """The gateway may have captured the payment but activation was not confirmed.

    The identifiers are surfaced so the vendor can quote them to support.
    """

    code = "verification_failed"
    retryable = False
    next_action = NextAction.contact_support

    def __init__(
        self,
        message: str,
        *,
        subscription_id: str,
        gateway_payment_id: str,
        gateway_order_id: str,
    ) -> None:
        super().__init__(
            f"{message} (payment_id={gateway_payment_id}, order_id={gateway_order_id})"
        )
        self.reason = message
        self.subscription_id = subscription_id
        self.gateway_payment_id = gateway_payment_id
        self.gateway_order_id = gateway_order_id

    def to_dict(self) -> Dict[str, Any]:
        payload = super().to_dict()
        payload.update(
            subscription_id=self.subscription_id,
            payment_id=self.gateway_payment_id,
            order_id=self.gateway_order_id,
        )
        return payload


class RefreshFailed(SubscriptionFlowError):
    """The entitlement snapshot could not be refreshed."""

    code = "refresh_failed"


class PurchaseInProgress(SubscriptionFlowError):
    """Another purchase attempt is still running for this session."""

    code = "purchase_in_progress"
    retryable = False
    next_action = NextAction.none


class VerificationAlreadySubmitted(SubscriptionFlowError):
    """A verification request was already sent for this order."""

    code = "verification_already_submitted"
    retryable = False
    next_action = NextAction.contact_support

    def __init__(self, order_id: str) -> None:
        super().__init__(f"verification already submitted for order {order_id}")
        self.order_id = order_id


class CancellationRefused(SubscriptionFlowError):
    """The attempt is past the point where it can be cancelled."""

    code = "cancellation_refused"
    retryable = False
    next_action = NextAction.none


def describe(error: Optional[BaseException]) -> Optional[Dict[str, Any]]:
    """Serialise an error for the dashboard, classifying unknown errors as retryable."""

    if error is None:
        return None
    if isinstance(error, SubscriptionFlowError):
        return error.to_dict()
    return {
        "code": "unexpected_error",
        "message": str(error) or error.__class__.__name__,
        "retryable": True,
        "next_action": NextAction.retry.value,
    }
