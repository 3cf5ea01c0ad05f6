"""State machine driving one subscription purchase attempt at a time.

Idle -> OrderCreating -> AwaitingPayment -> Verifying -> Reconciling -> Complete

Creation may also end the attempt in PendingExternalAction (hosted payment
link), ManualActivation (no instrument) or CreationFailed. Payment may end in
PaymentAbandoned, verification in VerificationFailed.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional, Protocol, Set

from vendordash.backend import BackendAPIError, SessionExpired, VerificationResult, WireDecodeError
from vendordash.metrics import record_purchase_outcome, record_purchase_transition, record_verification_failure

from .errors import (
    CancellationRefused,
    CreationFailed,
    GatewayError,
    OrderConflict,
    PaymentCancelled,
    PurchaseInProgress,
    RefreshFailed,
    VerificationAlreadySubmitted,
    VerificationFailed,
)
from .models import (
    CreatedSubscription,
    EntitlementSnapshot,
    HostedLink,
    NoInstrument,
    Order,
    PayableOrder,
    PayerHint,
    Plan,
    ProofOfPayment,
    PurchaseAttempt,
    PurchaseState,
)

logger = logging.getLogger(__name__)


class SubscriptionBackend(Protocol):
    async def create_subscription(self, plan: Plan) -> CreatedSubscription:
        ...

    async def verify_payment(self, subscription_id: str, proof: ProofOfPayment) -> VerificationResult:
        ...


class PaymentCollector(Protocol):
    async def collect_payment(
        self,
        order_id: str,
        amount: int,
        currency: str,
        payer_hint: Optional[PayerHint] = None,
        *,
        description: str = "",
    ) -> ProofOfPayment:
        ...

    def cancel(self, order_id: str) -> bool:
        ...


class EntitlementCache(Protocol):
    async def refresh(self, *, fresh: bool = False) -> EntitlementSnapshot:
        ...


class SubscriptionOrderOrchestrator:
    """Creates the order, collects payment, verifies it and reconciles entitlements.

    One orchestrator serves one vendor session. Outcomes, including failures,
    are reported on the returned :class:`PurchaseAttempt`; only starting a
    second attempt while one is active raises.
    """

    def __init__(
        self,
        backend: SubscriptionBackend,
        gateway: PaymentCollector,
        cache: EntitlementCache,
    ) -> None:
        self._backend = backend
        self._gateway = gateway
        self._cache = cache
        self._attempt: Optional[PurchaseAttempt] = None
        self._presented_orders: Set[str] = set()
        self._verified_orders: Set[str] = set()

    @property
    def attempt(self) -> Optional[PurchaseAttempt]:
        return self._attempt

    @property
    def state(self) -> PurchaseState:
        if self._attempt is None:
            return PurchaseState.idle
        return self._attempt.state

    @property
    def is_busy(self) -> bool:
        return self.state.is_active

    def _transition(self, attempt: PurchaseAttempt, state: PurchaseState) -> None:
        previous = attempt.state
        attempt.state = state
        record_purchase_transition(state.value)
        logger.info(
            {
                "event": "purchase_transition",
                "attempt_id": attempt.attempt_id,
                "plan": attempt.plan_key,
                "from": previous.value,
                "to": state.value,
            }
        )

    def _finish(
        self,
        attempt: PurchaseAttempt,
        state: PurchaseState,
        error: Optional[Exception] = None,
    ) -> PurchaseAttempt:
        attempt.error = error
        attempt.finished_at = datetime.now(tz=timezone.utc)
        self._transition(attempt, state)
        record_purchase_outcome(state.value)
        if isinstance(error, VerificationFailed):
            record_verification_failure()
            logger.critical(
                {
                    "event": "verification_failed",
                    "attempt_id": attempt.attempt_id,
                    "subscription_id": error.subscription_id,
                    "payment_id": error.gateway_payment_id,
                    "order_id": error.gateway_order_id,
                    "reason": error.reason,
                }
            )
        elif error is not None:
            logger.warning(
                {
                    "event": "purchase_failed",
                    "attempt_id": attempt.attempt_id,
                    "state": state.value,
                    "error": str(error),
                }
            )
        return attempt

    async def select_plan(self, plan: Plan, payer_hint: Optional[PayerHint] = None) -> PurchaseAttempt:
        """Run a full purchase attempt for ``plan``.

        Raises :class:`PurchaseInProgress` if another attempt is active.
        Cancelling the calling task while payment is awaited abandons the
        attempt; once verification has started the attempt runs to
        completion in the background.
        """

        if self.is_busy:
            raise PurchaseInProgress("A purchase is already in progress")

        attempt = PurchaseAttempt(plan=plan)
        self._attempt = attempt
        self._transition(attempt, PurchaseState.order_creating)

        try:
            created = await self._backend.create_subscription(plan)
        except asyncio.CancelledError:
            self._finish(attempt, PurchaseState.creation_failed, CreationFailed("Purchase was cancelled"))
            raise
        except BackendAPIError as exc:
            return self._finish(attempt, PurchaseState.creation_failed, self._classify_creation_error(exc))
        except WireDecodeError as exc:
            return self._finish(
                attempt, PurchaseState.creation_failed, CreationFailed(f"Unexpected subscription response: {exc}")
            )
        except Exception as exc:
            self._finish(attempt, PurchaseState.creation_failed, exc)
            raise

        attempt.subscription = created.subscription
        if attempt.session_ended:
            return self._finish(
                attempt,
                PurchaseState.payment_abandoned,
                PaymentCancelled("Vendor session ended before payment was collected"),
            )
        instrument = created.instrument

        if isinstance(instrument, HostedLink):
            attempt.payment_link = instrument.url
            logger.info({"event": "payment_link_issued", "attempt_id": attempt.attempt_id})
            return self._finish(attempt, PurchaseState.pending_external_action)
        if isinstance(instrument, NoInstrument):
            return self._finish(attempt, PurchaseState.manual_activation)
        if not isinstance(instrument, PayableOrder):
            return self._finish(
                attempt, PurchaseState.creation_failed, CreationFailed("Unsupported payment instrument")
            )

        order = instrument.order
        if order.order_id in self._presented_orders:
            return self._finish(
                attempt,
                PurchaseState.creation_failed,
                CreationFailed(f"Backend reissued order {order.order_id}; start a new purchase"),
            )
        self._presented_orders.add(order.order_id)
        attempt.order = order

        proof = await self._collect(attempt, order, payer_hint)
        if proof is None:
            return attempt

        await asyncio.shield(self._verify_and_reconcile(attempt, order, proof))
        return attempt

    @staticmethod
    def _classify_creation_error(exc: BackendAPIError) -> CreationFailed:
        if exc.is_conflict:
            return OrderConflict(
                "You already have an active or pending subscription. "
                "Manage the existing subscription instead of purchasing a new one."
            )
        if isinstance(exc, SessionExpired):
            return CreationFailed("Your session has expired. Please log in again.")
        return CreationFailed(f"Failed to create subscription: {exc.message}")

    async def _collect(
        self,
        attempt: PurchaseAttempt,
        order: Order,
        payer_hint: Optional[PayerHint],
    ) -> Optional[ProofOfPayment]:
        self._transition(attempt, PurchaseState.awaiting_payment)
        try:
            proof = await self._gateway.collect_payment(
                order.order_id,
                order.amount,
                order.currency,
                payer_hint,
                description=f"{attempt.plan.display_name} Subscription",
            )
        except asyncio.CancelledError:
            self._finish(attempt, PurchaseState.payment_abandoned, PaymentCancelled("Checkout was closed"))
            raise
        except (PaymentCancelled, GatewayError) as exc:
            self._finish(attempt, PurchaseState.payment_abandoned, exc)
            return None
        except Exception as exc:
            self._finish(attempt, PurchaseState.payment_abandoned, exc)
            raise
        attempt.proof = proof
        return proof

    async def _verify_and_reconcile(self, attempt: PurchaseAttempt, order: Order, proof: ProofOfPayment) -> None:
        self._transition(attempt, PurchaseState.verifying)
        subscription_id = order.subscription_id
        failure: Optional[str] = None
        if order.order_id in self._verified_orders:
            failure = f"Verification was already submitted for order {order.order_id}"
        else:
            self._verified_orders.add(order.order_id)
            failure = await self._submit_verification(subscription_id, proof)

        if failure is not None:
            self._finish(
                attempt,
                PurchaseState.verification_failed,
                VerificationFailed(
                    failure,
                    subscription_id=subscription_id,
                    gateway_payment_id=proof.gateway_payment_id,
                    gateway_order_id=proof.gateway_order_id,
                ),
            )
            return

        self._transition(attempt, PurchaseState.reconciling)
        try:
            # A refresh sent before verification may predate the activation.
            await self._cache.refresh(fresh=True)
        except RefreshFailed as exc:
            attempt.refresh_error = exc
            logger.warning(
                {
                    "event": "reconciliation_refresh_failed",
                    "attempt_id": attempt.attempt_id,
                    "reason": str(exc),
                }
            )
        self._finish(attempt, PurchaseState.complete)

    async def _submit_verification(self, subscription_id: str, proof: ProofOfPayment) -> Optional[str]:
        try:
            result = await self._backend.verify_payment(subscription_id, proof)
        except (BackendAPIError, WireDecodeError) as exc:
            return f"Payment verification failed: {exc}"
        if not result.success:
            return f"Payment verification failed: {result.message or 'rejected by backend'}"
        return None

    def cancel(self) -> bool:
        """Dismiss the checkout dialog of the active attempt.

        Returns ``False`` when nothing is cancellable. Raises
        :class:`CancellationRefused` once the order exists but payment is no
        longer being awaited.
        """

        attempt = self._attempt
        if attempt is None or not attempt.state.is_active:
            return False
        if attempt.state is not PurchaseState.awaiting_payment or attempt.order is None:
            raise CancellationRefused(
                f"Purchase cannot be cancelled while {attempt.state.value.replace('_', ' ')}"
            )
        return self._gateway.cancel(attempt.order.order_id)

    def resubmit_verification(self) -> None:
        """Refuse a second verification for the current order.

        Verification is never retried automatically or on request: a
        captured payment that failed verification must be reconciled by
        support using the identifiers on the attempt's error.
        """

        attempt = self._attempt
        if attempt is None or attempt.order is None or attempt.order.order_id not in self._verified_orders:
            raise LookupError("No payment has been submitted for verification")
        raise VerificationAlreadySubmitted(attempt.order.order_id)

    def reset(self) -> None:
        """Forget the finished attempt so the dashboard returns to Idle."""

        if self.is_busy:
            raise PurchaseInProgress("A purchase is still in progress")
        self._attempt = None

    def end_session(self) -> None:
        """Wind down purchase state when the vendor logs out.

        An attempt still creating its order is abandoned once the backend
        answers, and an open or pending checkout dialog is dismissed. An
        attempt already verifying runs to completion.
        """

        attempt = self._attempt
        if attempt is not None and attempt.state.is_active:
            attempt.session_ended = True
            if attempt.state is PurchaseState.awaiting_payment and attempt.order is not None:
                self._gateway.cancel(attempt.order.order_id)
            logger.info(
                {"event": "purchase_session_ended", "attempt_id": attempt.attempt_id, "state": attempt.state.value}
            )
        else:
            self._attempt = None
        self._presented_orders.clear()
        self._verified_orders.clear()

