# /app/utils/dependencies.py

import secrets
import structlog
from fastapi import Request, HTTPException

from app.config.settings import settings
from app.services.flow_catalog import FlowCatalog
from app.services.flow_store import FlowStore
from app.services.tool_service import ToolService
from app.workflows.engine import FlowEngine

log = structlog.get_logger(__name__)


def get_engine(request: Request) -> FlowEngine:
    return request.app.state.components.engine


def get_catalog(request: Request) -> FlowCatalog:
    return request.app.state.components.catalog


def get_tool_service(request: Request) -> ToolService:
    return request.app.state.components.tools


def get_store(request: Request) -> FlowStore:
    return request.app.state.components.store


async def verify_api_key(request: Request):
    """Requires X-API-KEY when an API key is configured; open otherwise."""
    if settings.api_key:
        provided_key = request.headers.get("X-API-KEY")
        if not (provided_key and secrets.compare_digest(provided_key, settings.api_key)):
            log.warning("Rejected request with invalid or missing API key", path=request.url.path)
            raise HTTPException(status_code=403, detail="Invalid or missing API key")
