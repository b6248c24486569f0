# backend/tests/unit/test_flow_catalog.py
import copy

import pytest

from app.services.flow_catalog import FlowCatalog
from app.services.tool_service import BUILT_IN_TOOLS
from app.workflows.definitions import BUSINESS_REGISTRATION_FLOW, WELCOME_FLOW
from conftest import make_flow


@pytest.fixture
def catalog(store):
    return FlowCatalog(store, default_flow_slug="welcome")


@pytest.mark.asyncio
async def test_built_in_flows_are_seeded(catalog, store):
    seeded = await catalog.ensure_built_in_flows(set(BUILT_IN_TOOLS))
    assert seeded == ["welcome", "business_registration"]
    assert {flow.slug for flow in await store.list_flows()} == {"welcome", "business_registration"}
    assert (await catalog.default_flow()).slug == "welcome"


@pytest.mark.asyncio
async def test_invalid_built_in_is_skipped(catalog):
    seeded = await catalog.ensure_built_in_flows(documents=[WELCOME_FLOW, {"slug": "broken"}])
    assert seeded == ["welcome"]


@pytest.mark.asyncio
async def test_flows_with_unregistered_tools_are_skipped(catalog):
    assert await catalog.ensure_built_in_flows(known_tools={"flow.handoff"}) == []


@pytest.mark.asyncio
async def test_only_one_default_survives_seeding(catalog, store):
    second_default = copy.deepcopy(BUSINESS_REGISTRATION_FLOW)
    second_default["definition"]["config"]["defaultForNewUsers"] = True

    await catalog.ensure_built_in_flows(documents=[second_default, WELCOME_FLOW])

    assert (await catalog.default_flow()).slug == "welcome"
    stored = await store.get_flow("business_registration")
    assert stored.config.default_for_new_users is False


@pytest.mark.asyncio
async def test_saving_a_new_default_downgrades_the_old_one(catalog, store):
    await catalog.ensure_built_in_flows()
    await catalog.save(make_flow("intake", {"start": {}}, defaultForNewUsers=True))

    defaults = [flow.slug for flow in await catalog.all() if flow.config.default_for_new_users]
    assert defaults == ["intake"]
    assert (await store.get_flow("welcome")).config.default_for_new_users is False
    assert (await catalog.default_flow()).slug == "intake"


@pytest.mark.asyncio
async def test_get_reads_through_to_store(catalog, store):
    await catalog.load()
    await store.upsert_flow(make_flow("late", {"start": {}}))
    assert (await catalog.get("late")).slug == "late"
    assert await catalog.get("missing") is None
    assert await catalog.get(None) is None


@pytest.mark.asyncio
async def test_invalidate_and_reload(catalog, store):
    await catalog.ensure_built_in_flows()
    updated = make_flow("welcome", {"hello": {}}, defaultForNewUsers=True)
    await store.upsert_flow(updated)
    assert (await catalog.get("welcome")).initial_stage == "collectBasics"

    catalog.invalidate("welcome")
    assert (await catalog.get("welcome")).initial_stage == "hello"

    assert await catalog.reload() == 2


@pytest.mark.asyncio
async def test_default_flow_without_any_default(catalog, store):
    await store.upsert_flow(make_flow("welcome", {"start": {}}))
    assert (await catalog.default_flow()).slug == "welcome"
    catalog.default_flow_slug = "other"
    await catalog.reload()
    assert await catalog.default_flow() is None
