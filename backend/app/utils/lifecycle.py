# /app/utils/lifecycle.py

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Optional

from fastapi import FastAPI

from app.config.settings import Settings, settings
from app.services.ai_service import AIService
from app.services.flow_catalog import FlowCatalog
from app.services.flow_store import FlowStore, InMemoryFlowStore, MongoFlowStore
from app.services.tool_service import ToolDependencies, ToolService
from app.utils.alerting import alerting_service
from app.utils.logging import setup_logging
from app.workflows.engine import FlowEngine
from app.workflows.router import FlowRouter

# This file is the composition root: it builds the store, flow catalog, tool
# registry, router and engine once at startup, hangs them on app.state, and
# releases their connections on shutdown.

logger = logging.getLogger(__name__)


@dataclass
class FlowComponents:
    store: FlowStore
    catalog: FlowCatalog
    tools: ToolService
    router: FlowRouter
    engine: FlowEngine


def build_store(settings_obj: Settings = settings) -> FlowStore:
    if settings_obj.storage_backend == "mongo":
        return MongoFlowStore(
            settings_obj.mongo_uri,
            max_pool_size=settings_obj.max_pool_size,
            min_pool_size=settings_obj.min_pool_size,
            tls=settings_obj.mongo_ssl,
        )
    logger.warning("Using the in-memory flow store; data is lost on restart.")
    return InMemoryFlowStore()


async def build_components(
    store: FlowStore,
    ai: Optional[AIService] = None,
    settings_obj: Settings = settings,
    tool_dependencies: Optional[ToolDependencies] = None,
) -> FlowComponents:
    """Wire every flow-engine collaborator together and seed the catalog."""
    catalog = FlowCatalog(store, settings_obj.default_flow_slug)
    dependencies = tool_dependencies or ToolDependencies()
    dependencies.store = store
    dependencies.catalog = catalog
    tools = ToolService(dependencies)

    if settings_obj.seed_built_in_flows:
        seeded = await catalog.ensure_built_in_flows(tools.tool_names())
        logger.info(f"Seeded built-in flows: {seeded}")
    else:
        await catalog.load()

    ai = ai or AIService()
    router = FlowRouter(store, catalog, tools, extractor=ai, classifier=ai, settings_obj=settings_obj)
    engine = FlowEngine(store, catalog, router, composer=ai, settings_obj=settings_obj)
    return FlowComponents(store=store, catalog=catalog, tools=tools, router=router, engine=engine)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup and shutdown events."""
    setup_logging()
    logger.info("Application starting up...")

    store = build_store()
    if isinstance(store, MongoFlowStore):
        await store.create_indexes()
    app.state.components = await build_components(store)

    logger.info("Application startup complete. Ready to accept requests.")

    yield  # Application is now running

    logger.info("Application shutting down...")
    await alerting_service.cleanup()
    await store.close()
