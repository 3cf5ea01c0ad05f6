"""FastAPI routes exposing the purchase workflow to the dashboard UI."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel, Field

from vendordash.auth import VendorSession
from vendordash.backend import SessionExpired

from .catalog import PlanCatalogLoader
from .errors import (
    CancellationRefused,
    CatalogUnavailable,
    PurchaseInProgress,
    RefreshFailed,
    VerificationAlreadySubmitted,
    describe,
)
from .models import EntitlementSnapshot, PayerHint, Plan, PurchaseAttempt, PurchaseState
from .orchestrator import SubscriptionOrderOrchestrator
from .session_cache import SubscriptionSessionCache

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", tags=["subscription"])


class PlanResponse(BaseModel):
    key: str
    display_name: str
    price: int
    duration_days: int
    feature_set: Dict[str, Union[bool, int]]
    popular: bool

    @classmethod
    def from_plan(cls, plan: Plan) -> "PlanResponse":
        return cls(
            key=plan.key,
            display_name=plan.display_name,
            price=plan.price,
            duration_days=plan.duration_days,
            feature_set=dict(plan.feature_set),
            popular=plan.popular,
        )


class PayerPayload(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None


class PurchaseRequest(BaseModel):
    plan_key: str = Field(..., min_length=1, description="Catalog key of the plan to purchase")
    payer: Optional[PayerPayload] = None


class PurchaseStatusResponse(BaseModel):
    state: PurchaseState
    attempt_id: Optional[str] = None
    plan_key: Optional[str] = None
    subscription_id: Optional[str] = None
    subscription_status: Optional[str] = None
    order_id: Optional[str] = None
    amount: Optional[int] = None
    currency: Optional[str] = None
    checkout_url: Optional[str] = None
    payment_link: Optional[str] = None
    error: Optional[Dict[str, Any]] = None
    refresh_error: Optional[Dict[str, Any]] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @classmethod
    def from_attempt(cls, attempt: Optional[PurchaseAttempt]) -> "PurchaseStatusResponse":
        if attempt is None:
            return cls(state=PurchaseState.idle)
        order = attempt.order
        checkout_url = None
        if order is not None and attempt.state is PurchaseState.awaiting_payment:
            checkout_url = f"/api/v1/checkout/{order.order_id}"
        return cls(
            state=attempt.state,
            attempt_id=attempt.attempt_id,
            plan_key=attempt.plan_key,
            subscription_id=attempt.subscription.id if attempt.subscription else None,
            subscription_status=attempt.subscription.status.value if attempt.subscription else None,
            order_id=order.order_id if order else None,
            amount=order.amount if order else attempt.plan.price,
            currency=order.currency if order else None,
            checkout_url=checkout_url,
            payment_link=attempt.payment_link,
            error=describe(attempt.error),
            refresh_error=describe(attempt.refresh_error),
            started_at=attempt.started_at,
            finished_at=attempt.finished_at,
        )


class EntitlementResponse(BaseModel):
    has_active_subscription: bool
    populated: bool
    subscription_id: Optional[str] = None
    status: Optional[str] = None
    plan_key: Optional[str] = None
    plan_name: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    remaining_days: Optional[int] = None
    is_expiring_soon: bool = False
    can_renew: bool = False
    feature_set: Dict[str, Union[bool, int]] = Field(default_factory=dict)
    fetched_at: Optional[datetime] = None

    @classmethod
    def from_snapshot(cls, snapshot: EntitlementSnapshot, *, populated: bool) -> "EntitlementResponse":
        subscription = snapshot.subscription
        return cls(
            has_active_subscription=snapshot.has_active_subscription,
            populated=populated,
            subscription_id=subscription.id if subscription else None,
            status=subscription.status.value if subscription else None,
            plan_key=subscription.plan_key if subscription else None,
            plan_name=snapshot.plan_name,
            start_date=subscription.start_date if subscription else None,
            end_date=subscription.end_date if subscription else None,
            remaining_days=snapshot.remaining_days,
            is_expiring_soon=snapshot.is_expiring_soon,
            can_renew=snapshot.can_renew,
            feature_set=dict(snapshot.feature_set),
            fetched_at=snapshot.fetched_at,
        )


class LoginRequest(BaseModel):
    token: str = Field(..., min_length=1)


class SessionHealthResponse(BaseModel):
    authenticated: bool
    expired: bool
    expires_at: Optional[datetime] = None


def _get_orchestrator(request: Request) -> SubscriptionOrderOrchestrator:
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise RuntimeError("Subscription orchestrator is not configured")
    return orchestrator


def _get_catalog(request: Request) -> PlanCatalogLoader:
    catalog = getattr(request.app.state, "catalog", None)
    if catalog is None:
        raise RuntimeError("Plan catalog is not configured")
    return catalog


def _get_cache(request: Request) -> SubscriptionSessionCache:
    cache = getattr(request.app.state, "session_cache", None)
    if cache is None:
        raise RuntimeError("Subscription session cache is not configured")
    return cache


def _get_session(request: Request) -> VendorSession:
    session = getattr(request.app.state, "vendor_session", None)
    if session is None:
        raise RuntimeError("Vendor session is not configured")
    return session


def _catalog_error(exc: CatalogUnavailable) -> HTTPException:
    if isinstance(exc.__cause__, SessionExpired):
        return HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="session_expired")
    return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=exc.to_dict())


def _purchase_in_progress() -> HTTPException:
    detail = PurchaseInProgress("A purchase is already in progress").to_dict()
    return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=detail)


def _log_purchase_result(task: "asyncio.Task[PurchaseAttempt]") -> None:
    if task.cancelled():
        logger.info({"event": "purchase_task_cancelled"})
        return
    exc = task.exception()
    if exc is not None:
        logger.error("Purchase task failed", exc_info=exc)


@router.get("/subscription/plans", response_model=List[PlanResponse])
async def list_plans(catalog: PlanCatalogLoader = Depends(_get_catalog)) -> List[PlanResponse]:
    try:
        plans = await catalog.list_plans()
    except CatalogUnavailable as exc:
        raise _catalog_error(exc) from exc
    return [PlanResponse.from_plan(plan) for plan in plans]


@router.post(
    "/subscription/purchase",
    response_model=PurchaseStatusResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def start_purchase(
    request: Request,
    payload: PurchaseRequest,
    orchestrator: SubscriptionOrderOrchestrator = Depends(_get_orchestrator),
    catalog: PlanCatalogLoader = Depends(_get_catalog),
) -> PurchaseStatusResponse:
    if orchestrator.is_busy:
        raise _purchase_in_progress()
    try:
        plan = await catalog.find_plan(payload.plan_key)
    except KeyError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="plan_not_found") from exc
    except CatalogUnavailable as exc:
        raise _catalog_error(exc) from exc

    running: Optional[asyncio.Task[PurchaseAttempt]] = getattr(request.app.state, "purchase_task", None)
    if orchestrator.is_busy or (running is not None and not running.done()):
        raise _purchase_in_progress()

    payer = payload.payer
    hint = PayerHint(name=payer.name, email=payer.email, phone=payer.phone) if payer else None
    task = asyncio.ensure_future(orchestrator.select_plan(plan, hint))
    task.add_done_callback(_log_purchase_result)
    request.app.state.purchase_task = task
    # Let the attempt leave Idle before reporting it.
    await asyncio.sleep(0)
    return PurchaseStatusResponse.from_attempt(orchestrator.attempt)


@router.get("/subscription/purchase", response_model=PurchaseStatusResponse)
async def purchase_status(
    orchestrator: SubscriptionOrderOrchestrator = Depends(_get_orchestrator),
) -> PurchaseStatusResponse:
    return PurchaseStatusResponse.from_attempt(orchestrator.attempt)


@router.post("/subscription/purchase/cancel")
async def cancel_purchase(
    orchestrator: SubscriptionOrderOrchestrator = Depends(_get_orchestrator),
) -> Dict[str, bool]:
    try:
        cancelled = orchestrator.cancel()
    except CancellationRefused as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=exc.to_dict()) from exc
    return {"cancelled": cancelled}


@router.post("/subscription/purchase/verification/retry")
async def retry_verification(
    orchestrator: SubscriptionOrderOrchestrator = Depends(_get_orchestrator),
) -> Dict[str, Any]:
    try:
        orchestrator.resubmit_verification()
    except VerificationAlreadySubmitted as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=exc.to_dict()) from exc
    except LookupError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="no_verification") from exc
    return {}


@router.post("/subscription/purchase/reset", response_model=PurchaseStatusResponse)
async def reset_purchase(
    orchestrator: SubscriptionOrderOrchestrator = Depends(_get_orchestrator),
) -> PurchaseStatusResponse:
    try:
        orchestrator.reset()
    except PurchaseInProgress as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=exc.to_dict()) from exc
    return PurchaseStatusResponse.from_attempt(None)


@router.get("/subscription/entitlements", response_model=EntitlementResponse)
async def current_entitlements(cache: SubscriptionSessionCache = Depends(_get_cache)) -> EntitlementResponse:
    return EntitlementResponse.from_snapshot(cache.current_snapshot(), populated=cache.is_populated)


@router.post("/subscription/entitlements/refresh", response_model=EntitlementResponse)
async def refresh_entitlements(cache: SubscriptionSessionCache = Depends(_get_cache)) -> EntitlementResponse:
    try:
        snapshot = await cache.refresh()
    except RefreshFailed as exc:
        if isinstance(exc.__cause__, SessionExpired):
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="session_expired") from exc
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=exc.to_dict()) from exc
    return EntitlementResponse.from_snapshot(snapshot, populated=cache.is_populated)


@router.post("/session/login", response_model=EntitlementResponse)
async def login(
    payload: LoginRequest,
    session: VendorSession = Depends(_get_session),
    cache: SubscriptionSessionCache = Depends(_get_cache),
) -> EntitlementResponse:
    session.login(payload.token)
    try:
        await cache.refresh()
    except RefreshFailed as exc:
        logger.warning({"event": "login_refresh_failed", "reason": str(exc)})
    return EntitlementResponse.from_snapshot(cache.current_snapshot(), populated=cache.is_populated)


@router.post("/session/logout")
async def logout(
    session: VendorSession = Depends(_get_session),
    cache: SubscriptionSessionCache = Depends(_get_cache),
    orchestrator: SubscriptionOrderOrchestrator = Depends(_get_orchestrator),
) -> Dict[str, str]:
    orchestrator.end_session()
    cache.clear()
    session.clear()
    return {"status": "logged_out"}


@router.get("/session/health", response_model=SessionHealthResponse)
async def session_health(session: VendorSession = Depends(_get_session)) -> SessionHealthResponse:
    health = session.session_health()
    return SessionHealthResponse(
        authenticated=health.authenticated,
        expired=health.expired,
        expires_at=health.expires_at,
    )
