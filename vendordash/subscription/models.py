"""Domain models for plans, orders, proofs of payment and entitlements."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Mapping, Optional, Union
from uuid import uuid4

FeatureValue = Union[int, bool]


def _freeze(features: Optional[Mapping[str, FeatureValue]]) -> Mapping[str, FeatureValue]:
    return MappingProxyType(dict(features or {}))


class SubscriptionStatus(str, Enum):
    """Lifecycle status of the backend-owned subscription record."""

    pending = "pending"
    active = "active"
    cancelled = "cancelled"
    expired = "expired"


@dataclass(frozen=True)
class Plan:
    """Immutable catalog entry. ``price`` is in the smallest currency unit."""

    key: str
    display_name: str
    price: int
    duration_days: int
    feature_set: Mapping[str, FeatureValue] = field(default_factory=dict)
    popular: bool = False

    def __post_init__(self) -> None:
        if self.price <= 0:
            raise ValueError(f"plan {self.key!r} price must be positive")
        if self.duration_days <= 0:
            raise ValueError(f"plan {self.key!r} duration must be positive")
        object.__setattr__(self, "feature_set", _freeze(self.feature_set))


@dataclass(frozen=True)
class Order:
    """Payment-collection handle for one purchase attempt."""

    order_id: str
    subscription_id: str
    amount: int
    currency: str
    plan_key: str


@dataclass(frozen=True)
class ProofOfPayment:
    """Gateway-issued evidence of payment. Only the backend can verify it."""

    gateway_payment_id: str
    gateway_order_id: str
    signature: str


@dataclass(frozen=True)
class PayerHint:
    """Prefill values for the checkout dialog."""

    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None


@dataclass(frozen=True)
class Subscription:
    """Read-only view of the backend subscription record."""

    id: str
    status: SubscriptionStatus
    plan_key: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    amount: Optional[int] = None
    feature_set: Mapping[str, FeatureValue] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "feature_set", _freeze(self.feature_set))


@dataclass(frozen=True)
class EntitlementSnapshot:
    """The dashboard's working copy of the vendor's current subscription."""

    subscription: Optional[Subscription] = None
    plan_name: Optional[str] = None
    remaining_days: Optional[int] = None
    is_expiring_soon: bool = False
    can_renew: bool = False
    fetched_at: Optional[datetime] = None

    @property
    def has_active_subscription(self) -> bool:
        return self.subscription is not None and self.subscription.status is SubscriptionStatus.active

    @property
    def feature_set(self) -> Mapping[str, FeatureValue]:
        if self.subscription is None:
            return MappingProxyType({})
        return self.subscription.feature_set

    @classmethod
    def empty(cls) -> "EntitlementSnapshot":
        return cls()


@dataclass(frozen=True)
class PayableOrder:
    """The backend issued an order payable through the checkout dialog."""

    order: Order


@dataclass(frozen=True)
class HostedLink:
    """The backend issued a hosted payment page for the vendor to open."""

    url: str


@dataclass(frozen=True)
class NoInstrument:
    """No payment instrument; activation happens manually or offline."""


PaymentInstrument = Union[PayableOrder, HostedLink, NoInstrument]


@dataclass(frozen=True)
class CreatedSubscription:
    """Decoded result of the create-subscription call."""

    subscription: Subscription
    instrument: PaymentInstrument


class PurchaseState(str, Enum):
    """States of one purchase attempt."""

    idle = "idle"
    order_creating = "order_creating"
    awaiting_payment = "awaiting_payment"
    verifying = "verifying"
    reconciling = "reconciling"
    complete = "complete"
    pending_external_action = "pending_external_action"
    manual_activation = "manual_activation"
    creation_failed = "creation_failed"
    payment_abandoned = "payment_abandoned"
    verification_failed = "verification_failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES

    @property
    def is_active(self) -> bool:
        return self is not PurchaseState.idle and self not in TERMINAL_STATES


TERMINAL_STATES = frozenset(
    {
        PurchaseState.complete,
        PurchaseState.pending_external_action,
        PurchaseState.manual_activation,
        PurchaseState.creation_failed,
        PurchaseState.payment_abandoned,
        PurchaseState.verification_failed,
    }
)


@dataclass
class PurchaseAttempt:
    """Mutable record of one purchase attempt driven by the orchestrator."""

    plan: Plan
    attempt_id: str = field(default_factory=lambda: uuid4().hex)
    state: PurchaseState = PurchaseState.idle
    subscription: Optional[Subscription] = None
    order: Optional[Order] = None
    proof: Optional[ProofOfPayment] = None
    payment_link: Optional[str] = None
    error: Optional[Exception] = None
    refresh_error: Optional[Exception] = None
    session_ended: bool = False
    started_at: datetime = field(default_factory=lambda: datetime.now(tz=timezone.utc))
    finished_at: Optional[datetime] = None

    @property
    def plan_key(self) -> str:
        return self.plan.key
