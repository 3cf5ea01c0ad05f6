import asyncio
import inspect
from typing import Any, Dict, List, Optional

import pytest

from vendordash.backend import VerificationResult
from vendordash.payments import CheckoutOptions
from vendordash.subscription.errors import RefreshFailed
from vendordash.subscription.models import (
    CreatedSubscription,
    EntitlementSnapshot,
    HostedLink,
    NoInstrument,
    Order,
    PayableOrder,
    Plan,
    Subscription,
    SubscriptionStatus,
)


@pytest.hookimpl(tryfirst=True)
def pytest_pyfunc_call(pyfuncitem):
    """Run async test functions without requiring pytest-asyncio plugin."""

    test_func = pyfuncitem.obj
    if inspect.iscoroutinefunction(test_func):
        argnames = pyfuncitem._fixtureinfo.argnames
        kwargs = {name: pyfuncitem.funcargs[name] for name in argnames}
        loop = asyncio.new_event_loop()
        try:
            loop.run_until_complete(test_func(**kwargs))
        finally:
            loop.close()
        return True
    return None


YEAR_PLAN = Plan(
    key="1year",
    display_name="Annual Plan",
    price=4999,
    duration_days=365,
    feature_set={"maxProducts": 100, "prioritySupport": True},
)


class _Handle:
    def __init__(self, widget: "ScriptedWidget", order_id: str) -> None:
        self._widget = widget
        self._order_id = order_id

    def close(self) -> None:
        self._widget.closed.append(self._order_id)


class ScriptedWidget:
    """Checkout widget double that settles according to ``mode``.

    ``hold`` keeps the dialog open until the test calls ``pay``/``dismiss``.
    """

    def __init__(self, mode: str = "success") -> None:
        self.mode = mode
        self.opened: List[CheckoutOptions] = []
        self.closed: List[str] = []
        self._callbacks: Dict[str, Any] = {}

    def open(self, options, *, on_success, on_dismiss, on_error):
        self.opened.append(options)
        self._callbacks[options.order_id] = (on_success, on_dismiss, on_error)
        if self.mode == "success":
            self.pay(options.order_id)
        elif self.mode == "dismiss":
            self.dismiss(options.order_id)
        elif self.mode == "error":
            on_error("network unreachable")
        return _Handle(self, options.order_id)

    def pay(self, order_id: str) -> None:
        on_success, _, _ = self._callbacks[order_id]
        suffix = order_id.split("_")[-1]
        on_success(
            {
                "razorpay_payment_id": f"pay_{suffix}",
                "razorpay_order_id": order_id,
                "razorpay_signature": f"sig_{suffix}",
            }
        )

    def dismiss(self, order_id: str) -> None:
        _, on_dismiss, _ = self._callbacks[order_id]
        on_dismiss()


class ScriptedRuntime:
    """Checkout runtime double that becomes ready after ``ready_after`` polls."""

    def __init__(self, widget: Optional[ScriptedWidget] = None, ready_after: int = 0) -> None:
        self.checkout = widget or ScriptedWidget()
        self.ready_after = ready_after
        self.load_calls = 0
        self.polls = 0

    def load(self) -> None:
        self.load_calls += 1

    def is_ready(self) -> bool:
        if self.load_calls == 0:
            return False
        self.polls += 1
        return self.polls > self.ready_after

    def widget(self) -> ScriptedWidget:
        return self.checkout


def pending_subscription(subscription_id: str = "sub_1") -> Subscription:
    return Subscription(id=subscription_id, status=SubscriptionStatus.pending, plan_key="1year", amount=4999)


def active_snapshot(subscription_id: str = "sub_1") -> EntitlementSnapshot:
    return EntitlementSnapshot(
        subscription=Subscription(
            id=subscription_id,
            status=SubscriptionStatus.active,
            plan_key="1year",
            amount=4999,
            feature_set={"maxProducts": 100},
        ),
        plan_name="Annual Plan",
        remaining_days=365,
    )


class FakeBackend:
    """In-memory stand-in for :class:`vendordash.backend.BackendClient`."""

    def __init__(self) -> None:
        self.plans: List[Plan] = [YEAR_PLAN]
        self.instrument = "order"
        self.create_error: Optional[Exception] = None
        self.verify_error: Optional[Exception] = None
        self.verify_success = True
        self.refresh_error: Optional[Exception] = None
        self.snapshot = EntitlementSnapshot.empty()
        self.create_calls: List[str] = []
        self.verify_calls: List[Dict[str, str]] = []
        self.current_calls = 0
        self._orders = 0

    async def get_plans(self) -> List[Plan]:
        return list(self.plans)

    async def create_subscription(self, plan: Plan) -> CreatedSubscription:
        self.create_calls.append(plan.key)
        if self.create_error is not None:
            raise self.create_error
        self._orders += 1
        subscription = pending_subscription(f"sub_{self._orders}")
        if self.instrument == "order":
            instrument = PayableOrder(
                order=Order(
                    order_id=f"order_{self._orders}",
                    subscription_id=subscription.id,
                    amount=plan.price,
                    currency="INR",
                    plan_key=plan.key,
                )
            )
        elif self.instrument == "link":
            instrument = HostedLink(url="https://pay.example/link/1")
        else:
            instrument = NoInstrument()
        return CreatedSubscription(subscription=subscription, instrument=instrument)

    async def verify_payment(self, subscription_id, proof) -> VerificationResult:
        self.verify_calls.append(
            {
                "subscriptionId": subscription_id,
                "gatewayPaymentId": proof.gateway_payment_id,
                "gatewayOrderId": proof.gateway_order_id,
                "signature": proof.signature,
            }
        )
        if self.verify_error is not None:
            raise self.verify_error
        if self.verify_success:
            self.snapshot = active_snapshot(subscription_id)
            return VerificationResult(success=True, subscription=self.snapshot.subscription)
        return VerificationResult(success=False, message="Invalid payment signature")

    async def get_current_subscription(self) -> EntitlementSnapshot:
        self.current_calls += 1
        if self.refresh_error is not None:
            raise self.refresh_error
        return self.snapshot


class CountingCache:
    """Entitlement cache double that records refreshes."""

    def __init__(self, backend: FakeBackend, fail: bool = False) -> None:
        self.backend = backend
        self.fail = fail
        self.refreshes = 0
        self.fresh_calls = 0

    async def refresh(self, *, fresh: bool = False) -> EntitlementSnapshot:
        self.refreshes += 1
        if fresh:
            self.fresh_calls += 1
        if self.fail:
            raise RefreshFailed("backend unavailable")
        return await self.backend.get_current_subscription()


@pytest.fixture()
def year_plan() -> Plan:
    return YEAR_PLAN


@pytest.fixture()
def fake_backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture()
def widget() -> ScriptedWidget:
    return ScriptedWidget()


@pytest.fixture()
def runtime(widget) -> ScriptedRuntime:
    return ScriptedRuntime(widget)
