"""Callback routes used by the browser-hosted checkout widget."""

from __future__ import annotations

from typing import Any, Dict, List

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel

from .checkout_bridge import BridgeCheckoutRuntime

router = APIRouter(prefix="/api/v1/checkout", tags=["checkout"])


class CheckoutFailure(BaseModel):
    description: str = "gateway error"


def _get_bridge(request: Request) -> BridgeCheckoutRuntime:
    bridge = getattr(request.app.state, "checkout_runtime", None)
    if not isinstance(bridge, BridgeCheckoutRuntime):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="checkout_bridge_disabled")
    return bridge


def _not_found(exc: KeyError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="checkout_not_found")


@router.get("")
async def pending_checkouts(bridge: BridgeCheckoutRuntime = Depends(_get_bridge)) -> Dict[str, List[str]]:
    return {"orders": bridge.pending_orders()}


@router.get("/{order_id}")
async def checkout_options(
    order_id: str,
    bridge: BridgeCheckoutRuntime = Depends(_get_bridge),
) -> Dict[str, Any]:
    try:
        return bridge.options_for(order_id)
    except KeyError as exc:
        raise _not_found(exc) from exc


@router.post("/{order_id}/complete")
async def complete_checkout(
    order_id: str,
    payload: Dict[str, str],
    bridge: BridgeCheckoutRuntime = Depends(_get_bridge),
) -> Dict[str, str]:
    try:
        bridge.complete(order_id, payload)
    except KeyError as exc:
        raise _not_found(exc) from exc
    return {"status": "received", "order_id": order_id}


@router.post("/{order_id}/dismiss")
async def dismiss_checkout(
    order_id: str,
    bridge: BridgeCheckoutRuntime = Depends(_get_bridge),
) -> Dict[str, str]:
    try:
        bridge.dismiss(order_id)
    except KeyError as exc:
        raise _not_found(exc) from exc
    return {"status": "dismissed", "order_id": order_id}


@router.post("/{order_id}/fail")
async def fail_checkout(
    order_id: str,
    payload: CheckoutFailure,
    bridge: BridgeCheckoutRuntime = Depends(_get_bridge),
) -> Dict[str, str]:
    try:
        bridge.fail(order_id, payload.description)
    except KeyError as exc:
        raise _not_found(exc) from exc
    return {"status": "failed", "order_id": order_id}
