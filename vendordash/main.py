"""Application factory wiring the purchase workflow into FastAPI.

Run with ``uvicorn vendordash.main:create_app --factory``.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from fastapi import FastAPI, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from vendordash import __version__
from vendordash.api.v1.health import router as health_router
from vendordash.auth import VendorSession
from vendordash.backend import BackendClient
from vendordash.config import Settings
from vendordash.logging_config import configure_logging
from vendordash.payments import BridgeCheckoutRuntime, CheckoutRuntime, PaymentGatewayClient
from vendordash.payments.routes import router as checkout_router
from vendordash.subscription.catalog import PlanCatalogLoader
from vendordash.subscription.errors import RefreshFailed
from vendordash.subscription.orchestrator import SubscriptionOrderOrchestrator
from vendordash.subscription.routes import router as subscription_router
from vendordash.subscription.session_cache import SubscriptionSessionCache

logger = logging.getLogger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    *,
    session: Optional[VendorSession] = None,
    backend: Optional[BackendClient] = None,
    checkout_runtime: Optional[CheckoutRuntime] = None,
) -> FastAPI:
    settings = settings or Settings.load_from_env()
    configure_logging(settings.log_level)

    session = session or VendorSession()
    backend = backend or BackendClient.from_settings(settings, session)
    runtime = checkout_runtime if checkout_runtime is not None else BridgeCheckoutRuntime()
    gateway = PaymentGatewayClient(
        runtime,
        key_id=settings.gateway_key_id,
        merchant_name=settings.merchant_name,
        ready_timeout=settings.gateway_ready_timeout,
        poll_interval=settings.gateway_ready_poll_interval,
    )
    cache = SubscriptionSessionCache(backend)
    catalog = PlanCatalogLoader(backend)
    orchestrator = SubscriptionOrderOrchestrator(backend, gateway, cache)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if session.bearer_token():
            try:
                await cache.refresh()
            except RefreshFailed as exc:
                logger.warning({"event": "startup_refresh_failed", "reason": str(exc)})
        try:
            yield
        finally:
            task: Optional[asyncio.Task] = getattr(app.state, "purchase_task", None)
            await gateway.close()
            if task is not None and not task.done():
                try:
                    await asyncio.wait_for(asyncio.shield(task), timeout=settings.http_timeout)
                except asyncio.TimeoutError:
                    logger.warning({"event": "purchase_task_abandoned_on_shutdown"})
                    task.cancel()
            await backend.close()
            logger.info({"event": "shutdown_complete"})

    app = FastAPI(title="Vendor Dashboard Subscriptions", version=__version__, lifespan=lifespan)
    app.state.settings = settings
    app.state.vendor_session = session
    app.state.backend = backend
    app.state.checkout_runtime = runtime
    app.state.gateway = gateway
    app.state.session_cache = cache
    app.state.catalog = catalog
    app.state.orchestrator = orchestrator
    app.state.purchase_task = None

    session.on_expired(cache.clear)

    app.include_router(health_router)
    app.include_router(subscription_router)
    app.include_router(checkout_router)

    @app.get("/metrics")
    async def metrics() -> Response:
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    return app
