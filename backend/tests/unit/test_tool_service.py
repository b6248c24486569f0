# backend/tests/unit/test_tool_service.py
import pytest

from app.models.session import new_id
from app.models.tool import ToolExecutionContext, ToolResult
from app.services.flow_store import InMemoryFlowStore
from app.services.tool_service import ToolDependencies, ToolService
from app.services.tools import flow_handoff, welcome_route
from conftest import make_flow

CONTEXT = ToolExecutionContext(conversation_id="c1", user_id="u1", flow_slug="welcome", stage="intent")


@pytest.fixture
def tool_service():
    return ToolService(built_ins={})


@pytest.mark.asyncio
async def test_unknown_tool(tool_service):
    result = await tool_service.execute("crm.push", {}, CONTEXT)
    assert not result.success
    assert result.error_code == "TOOL_NOT_FOUND"
    assert result.error == "Tool not found: crm.push"


@pytest.mark.asyncio
async def test_executor_exception_becomes_failure(tool_service):
    async def explode(payload, context):
        raise KeyError("email")

    tool_service.register("explode", explode)
    result = await tool_service.execute("explode", {}, CONTEXT)
    assert result.error_code == "TOOL_EXCEPTION"
    assert result.error.startswith("Tool execution exception:")


@pytest.mark.asyncio
async def test_dict_results_are_validated(tool_service):
    async def camel(payload, context):
        return {"success": True, "saveResults": {"score": 7}}

    async def broken(payload, context):
        return {"data": {"score": 7}}

    tool_service.register("camel", camel)
    tool_service.register("broken", broken)
    assert (await tool_service.execute("camel", {}, CONTEXT)).save_results == {"score": 7}
    assert (await tool_service.execute("broken", {}, CONTEXT)).error_code == "INVALID_TOOL_RESULT"


@pytest.mark.asyncio
async def test_executor_gets_a_copy_of_the_payload(tool_service):
    async def mutate(payload, context):
        payload["email"] = "changed"
        return ToolResult.ok()

    tool_service.register("mutate", mutate)
    payload = {"email": "dana@gmail.com"}
    await tool_service.execute("mutate", payload, CONTEXT)
    assert payload == {"email": "dana@gmail.com"}


@pytest.mark.asyncio
async def test_built_ins_load_lazily_and_can_be_overridden():
    service = ToolService(ToolDependencies(store=InMemoryFlowStore()))
    listing = {tool["name"]: tool for tool in service.registered_tools()}
    assert listing["flow.handoff"]["loaded"] is False
    assert service.has_tool("lookup.registry")

    await service.execute("flow.handoff", {}, CONTEXT)
    listing = {tool["name"]: tool for tool in service.registered_tools()}
    assert listing["flow.handoff"]["loaded"] is True
    assert listing["flow.handoff"]["built_in"] is True

    async def fake_lookup(payload, context):
        return ToolResult.ok(data={"fake": True})

    service.register("lookup.registry", fake_lookup, "Test double")
    assert (await service.execute("lookup.registry", {}, CONTEXT)).data == {"fake": True}


@pytest.mark.asyncio
async def test_broken_built_in_reports_load_failure():
    service = ToolService(built_ins={"broken": "app.services.tools.does_not_exist:create_tool"})
    result = await service.execute("broken", {}, CONTEXT)
    assert result.error_code == "TOOL_LOAD_FAILED"


def test_tool_result_requires_consistent_error():
    with pytest.raises(ValueError):
        ToolResult(success=True, error="nope")


def test_failed_result_with_only_an_error_code_gets_a_default_error():
    result = ToolResult.model_validate({"success": False, "errorCode": "NOT_FOUND"})
    assert result.error_code == "NOT_FOUND"
    assert result.error == "Tool failed (NOT_FOUND)"
    assert ToolResult(success=False).error == "Tool failed (unknown)"


@pytest.mark.asyncio
async def test_error_code_only_failure_passes_through_execute(tool_service):
    async def not_found(payload, context):
        return {"success": False, "errorCode": "NOT_FOUND"}

    tool_service.register("crm.lookup", not_found)
    result = await tool_service.execute("crm.lookup", {}, CONTEXT)

    assert result.success is False
    assert result.error_code == "NOT_FOUND"


# --- flow.handoff / welcome.route ---

class _Catalog:
    def __init__(self, *flows):
        self.flows = {flow.slug: flow for flow in flows}

    async def get(self, slug):
        return self.flows.get(slug)


@pytest.fixture
def handoff_deps():
    target = make_flow("business_registration", {"collectContact": {}, "collectRegistration": {}})
    return ToolDependencies(store=InMemoryFlowStore(), catalog=_Catalog(target))


@pytest.mark.asyncio
async def test_handoff_validates_target(handoff_deps):
    handoff = flow_handoff.create_tool(handoff_deps)
    assert (await handoff({}, CONTEXT)).error_code == "MISSING_TARGET"
    missing_flow = await handoff({"targetFlowSlug": "billing"}, CONTEXT)
    assert missing_flow.error_code == "FLOW_NOT_FOUND"
    assert missing_flow.error == "Target flow configuration not found: billing"
    missing_stage = await handoff({"targetFlowSlug": "business_registration", "targetStage": "ghost"}, CONTEXT)
    assert missing_stage.error_code == "STAGE_NOT_FOUND"


@pytest.mark.asyncio
async def test_handoff_defaults_to_initial_stage_and_carries_fields(handoff_deps):
    handoff = flow_handoff.create_tool(handoff_deps)
    result = await handoff(
        {"targetFlowSlug": "business_registration", "preserveFields": ["email", "phone"], "email": "dana@gmail.com"},
        CONTEXT,
    )
    assert result.target_flow_slug == "business_registration"
    assert result.target_stage == "collectContact"
    assert result.data["preservedFields"] == ["email"]
    stored = await handoff_deps.store.get_flow_user_data("u1", "business_registration")
    assert stored == {"email": "dana@gmail.com"}


@pytest.mark.asyncio
async def test_welcome_route(handoff_deps):
    route = welcome_route.create_tool(handoff_deps)
    unrouted = await route({"intent_type": "support"}, CONTEXT)
    assert unrouted.success and unrouted.data == {"routed": False}
    assert unrouted.target_flow_slug is None

    user_id = new_id()
    context = CONTEXT.model_copy(update={"user_id": user_id})
    routed = await route({"intent_type": "Register", "first_name": "Dana", "email": "dana@gmail.com"}, context)
    assert routed.target_flow_slug == "business_registration"
    assert await handoff_deps.store.get_flow_user_data(user_id, "business_registration") == {"first_name": "Dana"}
