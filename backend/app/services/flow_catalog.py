# /app/services/flow_catalog.py

import logging
from typing import Dict, Iterable, List, Optional, Set

from app.models.flow import FlowDefinition
from app.services.flow_store import FlowStore
from app.workflows.definitions import BUILT_IN_FLOWS
from app.workflows.schema import validate_flow_payload, validate_flow_set

# This service keeps the parsed flow definitions in memory. It is owned by the
# composition root (one instance per app) and exposes explicit
# load/invalidate/reload operations instead of module-level state.

logger = logging.getLogger(__name__)


class FlowCatalog:
    def __init__(self, store: FlowStore, default_flow_slug: str = "welcome"):
        self.store = store
        self.default_flow_slug = default_flow_slug
        self._flows_cache: Dict[str, FlowDefinition] = {}
        self._loaded = False
        logger.info("FlowCatalog initialized.")

    async def load(self) -> int:
        """Loads all flows from the store into the in-memory cache."""
        logger.info("Loading flows from store into cache...")
        flows = await self.store.list_flows()
        self._flows_cache = {flow.slug: flow for flow in flows}
        self._loaded = True
        logger.info(f"Successfully loaded {len(self._flows_cache)} flows into cache.")
        return len(self._flows_cache)

    def invalidate(self, slug: Optional[str] = None) -> None:
        if slug is None:
            self._flows_cache = {}
            self._loaded = False
        else:
            self._flows_cache.pop(slug, None)

    async def reload(self) -> int:
        self.invalidate()
        return await self.load()

    async def _ensure_loaded(self):
        if not self._loaded:
            await self.load()

    async def get(self, slug: Optional[str]) -> Optional[FlowDefinition]:
        if not slug:
            return None
        await self._ensure_loaded()
        flow = self._flows_cache.get(slug)
        if flow is None:
            flow = await self.store.get_flow(slug)
            if flow is not None:
                self._flows_cache[slug] = flow
        return flow

    async def all(self) -> List[FlowDefinition]:
        await self._ensure_loaded()
        return list(self._flows_cache.values())

    async def default_flow(self) -> Optional[FlowDefinition]:
        """The flow new users start in: the configured slug if it is a default, else any default."""
        flows = await self.all()
        defaults = [flow for flow in flows if flow.config.default_for_new_users]
        for flow in defaults:
            if flow.slug == self.default_flow_slug:
                return flow
        if defaults:
            return defaults[0]
        return self._flows_cache.get(self.default_flow_slug)

    async def save(self, flow: FlowDefinition) -> FlowDefinition:
        """Persist a flow and refresh its cache entry. Only one flow may be the default."""
        if flow.config.default_for_new_users:
            for other in await self.all():
                if other.slug != flow.slug and other.config.default_for_new_users:
                    logger.warning(f"Flow '{other.slug}' is no longer the default for new users; '{flow.slug}' replaces it")
                    other.config.default_for_new_users = False
                    await self.store.upsert_flow(other)
        await self.store.upsert_flow(flow)
        self._flows_cache[flow.slug] = flow
        return flow

    async def ensure_built_in_flows(self, known_tools: Optional[Set[str]] = None, documents: Optional[Iterable[dict]] = None) -> List[str]:
        """
        Validate and upsert the built-in flows. Invalid documents are skipped
        with an error log. When more than one flow claims defaultForNewUsers,
        the configured default slug keeps it and the rest are downgraded.
        """
        parsed: List[FlowDefinition] = []
        for document in (BUILT_IN_FLOWS if documents is None else documents):
            result = validate_flow_payload(document, known_tools)
            if not result["is_valid"]:
                logger.error(f"Built-in flow '{document.get('slug')}' is invalid: {result['errors']}")
                continue
            parsed.append(result["flow"])

        for error in validate_flow_set(parsed):
            logger.error(f"Built-in flow set problem: {error}")

        for flow in parsed:
            await self.store.upsert_flow(flow)
        await self.reload()
        await self._enforce_single_default()
        return [flow.slug for flow in parsed]

    async def _enforce_single_default(self):
        defaults = [flow for flow in self._flows_cache.values() if flow.config.default_for_new_users]
        if len(defaults) <= 1:
            return
        keeper = next((flow for flow in defaults if flow.slug == self.default_flow_slug), defaults[0])
        for flow in defaults:
            if flow is keeper:
                continue
            logger.warning(f"Multiple default flows found; downgrading '{flow.slug}' in favour of '{keeper.slug}'")
            flow.config.default_for_new_users = False
            await self.store.upsert_flow(flow)
