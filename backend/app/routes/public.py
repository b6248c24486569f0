# /app/routes/public.py

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import PlainTextResponse
from prometheus_client import generate_latest

from app.config.settings import settings
from app.models.session import utcnow
from app.utils.dependencies import verify_api_key

# This file defines public-facing endpoints that do not require a key, such
# as health checks and the root endpoint. The /metrics endpoint is protected
# by the API key when one is configured.

router = APIRouter()


@router.get("/")
async def root():
    """Root endpoint."""
    return {
        "service": "Onboarding Flow Engine",
        "version": "1.0.0",
        "status": "operational",
        "environment": settings.environment
    }


@router.get("/health", summary="Basic Health Check")
async def health_check():
    """Basic health check for load balancers."""
    return {"status": "healthy", "timestamp": utcnow()}


@router.get("/health/ready", summary="Readiness Probe")
async def readiness_check(request: Request):
    """Readiness probe: the store answers and the flow catalog has a default flow."""
    components = getattr(request.app.state, "components", None)
    if components is None:
        raise HTTPException(status_code=503, detail="Service not ready: still starting")
    if not await components.store.ping():
        raise HTTPException(status_code=503, detail="Service not ready: store unavailable")
    if await components.catalog.default_flow() is None:
        raise HTTPException(status_code=503, detail="Service not ready: no default flow")
    return {"status": "ready"}


@router.get("/health/live", summary="Liveness Probe")
async def liveness_check():
    """Liveness probe."""
    return {"status": "alive"}


@router.get("/metrics", tags=["Monitoring"])
async def metrics(_: bool = Depends(verify_api_key)):
    """Prometheus metrics endpoint."""
    return PlainTextResponse(generate_latest(), media_type="text/plain")
