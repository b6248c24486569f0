# /app/main.py

import os
import time
import uvicorn
import asyncio
import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from app.config.settings import settings
from app.models.session import new_id
from app.utils.lifecycle import lifespan
from app.utils.metrics import response_time_histogram
from app.utils.rate_limiter import limiter
from app.routes import agent, flows, public

API_PREFIX = f"/api/{settings.api_version}"
SHOW_DOCS = settings.environment != "production"

app = FastAPI(
    title="Onboarding Flow Engine",
    version="1.0.0",
    description="Conversational onboarding driven by configurable multi-stage flows",
    lifespan=lifespan,
    openapi_url=f"{API_PREFIX}/openapi.json" if SHOW_DOCS else None,
    docs_url=f"{API_PREFIX}/docs" if SHOW_DOCS else None,
    redoc_url=f"{API_PREFIX}/redoc" if SHOW_DOCS else None,
)

log = structlog.get_logger(__name__)

# --- Rate Limiting ---
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# --- Middleware ---
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# TestClient sends "testserver" as its host
if settings.environment != "test":
    allowed_hosts = [host.strip() for host in settings.allowed_hosts.split(",") if host.strip()]
    if allowed_hosts:
        app.add_middleware(TrustedHostMiddleware, allowed_hosts=allowed_hosts)

app.add_middleware(SlowAPIMiddleware)


@app.middleware("http")
async def request_context_middleware(request: Request, call_next):
    """Tags every log line of a request with its id and reports how long it took."""
    request_id = request.headers.get("X-Request-ID") or new_id()
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(request_id=request_id, path=request.url.path)

    start_time = time.perf_counter()
    response = await call_next(request)
    process_time = time.perf_counter() - start_time

    route = request.scope.get("route")
    response_time_histogram.labels(endpoint=getattr(route, "path", "unmatched")).observe(process_time)
    response.headers["X-Request-ID"] = request_id
    response.headers["X-Process-Time"] = f"{process_time:.4f}"
    return response


@app.middleware("http")
async def timeout_middleware(request: Request, call_next):
    try:
        return await asyncio.wait_for(call_next(request), timeout=settings.request_timeout_seconds)
    except asyncio.TimeoutError:
        log.error("Request timed out", path=request.url.path, timeout=settings.request_timeout_seconds)
        return JSONResponse({"detail": "Request timed out"}, status_code=504)


# --- API Routers ---
app.include_router(public.router)
app.include_router(agent.router, prefix=API_PREFIX)
app.include_router(flows.router, prefix=API_PREFIX)

# --- Main Entry Point for Uvicorn (for local development) ---
if __name__ == "__main__":
    port = int(os.getenv("PORT", "8000"))
    host = os.getenv("HOST", "127.0.0.1")

    uvicorn.run(
        "app.main:app",
        host=host,
        port=port,
        reload=settings.environment == "development",
        workers=settings.workers if settings.environment == "production" else 1
    )
