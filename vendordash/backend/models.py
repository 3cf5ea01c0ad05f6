"""Wire models for the vendor backend and their decoding into domain types.

Responses are decoded exactly once here. Both the documented field names
(``paymentOrder``, ``paymentLink``, ``durationDays``) and the names used by
the deployed backend (``razorpayOrder``, ``razorpaySubscription.payment_link``,
``duration``) are accepted.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

from vendordash.subscription.models import (
    CreatedSubscription,
    EntitlementSnapshot,
    HostedLink,
    NoInstrument,
    Order,
    PayableOrder,
    PaymentInstrument,
    Plan,
    Subscription,
    SubscriptionStatus,
)

logger = logging.getLogger(__name__)

FeatureMap = Dict[str, Union[bool, int]]


class _WireModel(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class Envelope(_WireModel):
    """Standard ``{success, message, data}`` response wrapper."""

    success: bool = True
    message: str = ""
    data: Any = None
    code: Optional[str] = None


class PlanPayload(_WireModel):
    key: Optional[str] = None
    display_name: str = Field(validation_alias=AliasChoices("displayName", "name"))
    price: int = Field(validation_alias=AliasChoices("price", "amount"))
    duration_days: int = Field(validation_alias=AliasChoices("durationDays", "duration"))
    feature_set: FeatureMap = Field(default_factory=dict, validation_alias=AliasChoices("featureSet", "features"))


class SubscriptionPayload(_WireModel):
    id: str = Field(validation_alias=AliasChoices("_id", "id", "subscriptionId"))
    status: SubscriptionStatus
    plan: Optional[str] = Field(default=None, validation_alias=AliasChoices("plan", "planKey"))
    plan_name: Optional[str] = Field(default=None, validation_alias=AliasChoices("planName", "displayName"))
    start_date: Optional[datetime] = Field(default=None, validation_alias=AliasChoices("startDate", "start_date"))
    end_date: Optional[datetime] = Field(default=None, validation_alias=AliasChoices("endDate", "end_date"))
    amount: Optional[int] = None
    feature_set: FeatureMap = Field(default_factory=dict, validation_alias=AliasChoices("featureSet", "features"))
    remaining_days: Optional[int] = Field(default=None, validation_alias=AliasChoices("remainingDays"))
    is_expiring_soon: bool = Field(default=False, validation_alias=AliasChoices("isExpiringSoon"))
    can_renew: bool = Field(default=False, validation_alias=AliasChoices("canRenew"))

    @field_validator("status", mode="before")
    @classmethod
    def lowercase_status(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    def to_domain(self) -> Subscription:
        return Subscription(
            id=self.id,
            status=self.status,
            plan_key=self.plan,
            start_date=self.start_date,
            end_date=self.end_date,
            amount=self.amount,
            feature_set=self.feature_set,
        )


class OrderPayload(_WireModel):
    id: Optional[str] = Field(default=None, validation_alias=AliasChoices("id", "orderId"))
    amount: Optional[int] = None
    currency: Optional[str] = None


class HostedSubscriptionPayload(_WireModel):
    payment_link: Optional[str] = Field(default=None, validation_alias=AliasChoices("payment_link", "paymentLink"))


class CreateSubscriptionPayload(_WireModel):
    subscription: SubscriptionPayload
    payment_order: Optional[OrderPayload] = Field(
        default=None, validation_alias=AliasChoices("paymentOrder", "razorpayOrder")
    )
    payment_link: Optional[str] = Field(default=None, validation_alias=AliasChoices("paymentLink"))
    hosted_subscription: Optional[HostedSubscriptionPayload] = Field(
        default=None, validation_alias=AliasChoices("razorpaySubscription")
    )

    def instrument(self, plan: Plan, default_currency: str) -> PaymentInstrument:
        order = self.payment_order
        if order is not None and order.id:
            return PayableOrder(
                order=Order(
                    order_id=order.id,
                    subscription_id=self.subscription.id,
                    amount=order.amount if order.amount and order.amount > 0 else plan.price,
                    currency=(order.currency or default_currency).upper(),
                    plan_key=plan.key,
                )
            )
        link = self.payment_link
        if not link and self.hosted_subscription is not None:
            link = self.hosted_subscription.payment_link
        if link:
            return HostedLink(url=link)
        return NoInstrument()


class VerificationPayload(_WireModel):
    success: bool = True
    message: str = ""
    subscription: Optional[SubscriptionPayload] = None


@dataclass(frozen=True)
class VerificationResult:
    """Outcome of the backend verification call."""

    success: bool
    message: str = ""
    subscription: Optional[Subscription] = None


class WireDecodeError(ValueError):
    """Raised when a backend payload does not match the expected contract."""


def decode_plans(data: Any) -> List[Plan]:
    """Decode the catalog, accepting a mapping keyed by plan key or a list.

    Entries that fail validation are skipped with a warning.
    """

    if isinstance(data, Mapping) and isinstance(data.get("plans"), (list, Mapping)):
        data = data["plans"]
    items: List[tuple[Optional[str], Any]]
    if isinstance(data, Mapping):
        items = list(data.items())
    elif isinstance(data, list):
        items = [(None, entry) for entry in data]
    else:
        raise WireDecodeError("plan catalog must be a mapping or a list")

    plans: List[Plan] = []
    for key, raw in items:
        try:
            payload = PlanPayload.model_validate(raw)
            plan_key = payload.key or key
            if not plan_key:
                raise ValueError("plan entry has no key")
            plans.append(
                Plan(
                    key=plan_key,
                    display_name=payload.display_name,
                    price=payload.price,
                    duration_days=payload.duration_days,
                    feature_set=payload.feature_set,
                )
            )
        except (ValidationError, ValueError) as exc:
            logger.warning({"event": "plan_skipped", "key": key, "reason": str(exc)})
    return plans


def decode_created_subscription(data: Any, plan: Plan, default_currency: str) -> CreatedSubscription:
    try:
        payload = CreateSubscriptionPayload.model_validate(data)
    except ValidationError as exc:
        raise WireDecodeError(f"invalid create-subscription response: {exc}") from exc
    return CreatedSubscription(
        subscription=payload.subscription.to_domain(),
        instrument=payload.instrument(plan, default_currency),
    )


def decode_verification(envelope: Envelope) -> VerificationResult:
    data = envelope.data if isinstance(envelope.data, Mapping) else {}
    try:
        payload = VerificationPayload.model_validate(data)
    except ValidationError as exc:
        raise WireDecodeError(f"invalid verification response: {exc}") from exc
    return VerificationResult(
        success=envelope.success and payload.success,
        message=payload.message or envelope.message,
        subscription=payload.subscription.to_domain() if payload.subscription else None,
    )


def decode_snapshot(data: Any, fetched_at: datetime) -> EntitlementSnapshot:
    """Build a snapshot from the current-subscription payload.

    The payload is either the subscription itself, ``null``, or a details
    object holding ``currentSubscription``.
    """

    if isinstance(data, Mapping) and "currentSubscription" in data:
        data = data["currentSubscription"]
    elif isinstance(data, Mapping) and "subscription" in data:
        data = data["subscription"]
    if not data:
        return EntitlementSnapshot(fetched_at=fetched_at)
    try:
        payload = SubscriptionPayload.model_validate(data)
    except ValidationError as exc:
        raise WireDecodeError(f"invalid current-subscription response: {exc}") from exc
    return EntitlementSnapshot(
        subscription=payload.to_domain(),
        plan_name=payload.plan_name,
        remaining_days=payload.remaining_days,
        is_expiring_soon=payload.is_expiring_soon,
        can_renew=payload.can_renew,
        fetched_at=fetched_at,
    )
