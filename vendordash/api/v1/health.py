from datetime import datetime, timezone
import sys

from fastapi import APIRouter, Request, status
from pydantic import BaseModel

from vendordash import __version__

router = APIRouter(prefix="/api/v1", tags=["health"])


class HealthResponse(BaseModel):
    status: str
    version: str
    timestamp: str
    service: str
    python_version: str


class ReadinessResponse(BaseModel):
    ready: bool
    checks: dict


@router.get("/health", status_code=status.HTTP_200_OK)
async def health_check() -> HealthResponse:
    return HealthResponse(
        status="healthy",
        version=__version__,
        timestamp=datetime.now(tz=timezone.utc).isoformat(),
        service="vendordash",
        python_version=f"{sys.version_info.major}.{sys.version_info.minor}.{sys.version_info.micro}"
    )


@router.get("/ready", status_code=status.HTTP_200_OK)
async def readiness_check(request: Request) -> ReadinessResponse:
    session = getattr(request.app.state, "vendor_session", None)
    runtime = getattr(request.app.state, "checkout_runtime", None)
    checks = {
        "session": "ok" if session is not None and session.session_health().authenticated else "not_authenticated",
        "checkout_runtime": "ok" if runtime is not None else "missing",
    }
    ready = all(value == "ok" for value in checks.values())
    # The runtime loads on the first purchase, so this one does not gate readiness.
    checks["checkout_loaded"] = runtime is not None and runtime.is_ready()
    return ReadinessResponse(ready=ready, checks=checks)
