# backend/tests/unit/test_engine.py
import httpx
import pytest

from app.config import strings
from app.config.settings import settings
from app.services.flow_catalog import FlowCatalog
from app.services.flow_store import InMemoryFlowStore
from app.services.tool_service import ToolService
from app.workflows.engine import FlowEngine, mask_sensitive
from app.workflows.router import FlowRouter
from conftest import make_flow, start_session


@pytest.mark.asyncio
async def test_first_message_creates_conversation_and_asks_for_basics(components, fake_ai):
    result = await components.engine.process_message(None, "hi")

    assert result["flow_slug"] == "welcome"
    assert result["stage"] == "collectBasics"
    assert result["error_kind"] is None
    assert result["reply"].startswith("To continue, please share:")
    conversation = await components.store.get_conversation(result["conversation_id"])
    assert conversation.user_id
    request = fake_ai.compose_requests[-1]
    assert [field.slug for field in request.missing_fields] == ["first_name", "last_name", "phone"]
    assert request.stage_prompt


@pytest.mark.asyncio
async def test_unknown_conversation_id_is_created(components):
    result = await components.engine.process_message("chat-42", "hi", channel="whatsapp")
    conversation = await components.store.get_conversation("chat-42")
    assert result["conversation_id"] == "chat-42"
    assert conversation.channel == "whatsapp"


@pytest.mark.asyncio
async def test_registration_path_hands_off_from_welcome(components, fake_ai):
    engine = components.engine
    fake_ai.extractions["I'm Dana Levi, 052-123-4567"] = {"first_name": "Dana", "last_name": "Levi"}
    fake_ai.extractions["I want to register my business"] = {"intent_type": "register"}

    first = await engine.process_message(None, "I'm Dana Levi, 052-123-4567")
    assert first["stage"] == "intent"

    second = await engine.process_message(first["conversation_id"], "I want to register my business")
    assert second["flow_slug"] == "business_registration"
    assert second["stage"] == "collectContact"
    assert "Contact email" in second["reply"]

    conversation = await components.store.get_conversation(first["conversation_id"])
    carried = await components.store.get_flow_user_data(conversation.user_id, "business_registration")
    assert carried == {"first_name": "Dana", "last_name": "Levi", "phone": "0521234567"}


@pytest.mark.asyncio
async def test_invalid_value_hint_reaches_composer(components, fake_ai):
    conversation = await start_session(components.store, "business_registration", "collectContact")

    result = await components.engine.process_message(conversation.id, "sure, dana@gmail.con")

    assert result["stage"] == "collectContact"
    request = fake_ai.compose_requests[-1]
    assert [hint.slug for hint in request.invalid_fields] == ["email"]
    assert request.invalid_fields[0].suggestion == "dana@gmail.com"
    assert 'Did you mean "dana@gmail.com"?' in result["reply"]


@pytest.mark.asyncio
async def test_technical_error_reply_hides_details(components, fake_registry, fake_ai):
    fake_registry.error = httpx.ConnectError("connection refused")
    conversation = await start_session(components.store, "business_registration", "collectRegistration", {"email": "dana@gmail.com"})
    composed_before = len(fake_ai.compose_requests)

    result = await components.engine.process_message(conversation.id, "510000003")

    assert result["error_kind"] == "technical"
    assert result["stage"] == "lookupRegistry"
    assert result["reply"] == f"{strings.TECHNICAL_ERROR_REPLY} {strings.RETRY_HINT}"
    assert "connection refused" not in result["reply"]
    assert len(fake_ai.compose_requests) == composed_before


@pytest.mark.asyncio
async def test_unregistered_tool_name_never_reaches_the_user(components, fake_ai):
    await components.catalog.save(make_flow("ghost_tool", {"check": {"action": {"toolName": "crm.push"}}}))
    conversation = await start_session(components.store, "ghost_tool", "check")

    result = await components.engine.process_message(conversation.id, "go")

    assert result["error_kind"] == "technical"
    assert "crm.push" not in result["reply"]
    assert result["reply"].startswith(strings.TECHNICAL_ERROR_REPLY)

@pytest.mark.asyncio
async def test_user_actionable_error_is_passed_to_composer(components, fake_ai):
    from app.models.tool import ToolResult

    async def rejecting_tool(payload, context):
        return ToolResult.fail("That company is closed", "CLOSED")

    components.tools.register("test.reject", rejecting_tool)
    await components.catalog.save(make_flow(
        "reject",
        {"check": {"fieldsToCollect": ["company"], "action": {"toolName": "test.reject", "onError": {"behavior": "pause"}}}},
        {"company": {"description": "Company name"}},
    ))
    conversation = await start_session(components.store, "reject", "check", {"company": "Acme"})

    result = await components.engine.process_message(conversation.id, "go")

    assert result["error_kind"] == "user"
    assert fake_ai.compose_requests[-1].error_context == "That company is closed"
    assert "That company is closed" in result["reply"]


@pytest.mark.asyncio
async def test_finished_flow_still_gets_a_reply(components, fake_ai):
    conversation = await start_session(components.store, "welcome", "support")
    fake_ai.extractions["billing question"] = {"support_topic": "billing question"}

    result = await components.engine.process_message(conversation.id, "billing question")

    assert result["stage"] == "supportReceived"
    assert result["error_kind"] is None
    assert await components.store.get_user_flow(conversation.user_id) is None
    assert fake_ai.compose_requests[-1].stage_slug == "supportReceived"


@pytest.mark.asyncio
async def test_composer_failure_falls_back_to_template(components, fake_ai):
    fake_ai.compose_error = RuntimeError("model unavailable")
    result = await components.engine.process_message(None, "hi")
    assert result["reply"].startswith("To continue, please share:")


@pytest.mark.asyncio
async def test_no_flow_configured(fake_ai):
    store = InMemoryFlowStore()
    catalog = FlowCatalog(store)
    router = FlowRouter(store, catalog, ToolService(), extractor=fake_ai, classifier=fake_ai)
    engine = FlowEngine(store, catalog, router, composer=fake_ai)

    result = await engine.process_message(None, "hello")

    assert result["reply"] == strings.NO_FLOW_CONFIGURED
    assert result["flow_slug"] is None


@pytest.mark.asyncio
async def test_kill_flow_ending_gives_technical_reply(components):
    from app.models.tool import ToolResult

    async def failing_tool(payload, context):
        return ToolResult.fail("Upstream server error", "UPSTREAM", status=502)

    components.tools.register("test.fail", failing_tool)
    await components.catalog.save(make_flow("ender", {
        "check": {"action": {"toolName": "test.fail", "onError": {"behavior": "endFlow"}}},
    }))
    conversation = await start_session(components.store, "ender", "check")

    result = await components.engine.process_message(conversation.id, "go")

    assert result["stage"] is None
    assert result["error_kind"] == "technical"
    assert result["reply"] == strings.TECHNICAL_ERROR_REPLY


# --- Silent stages ---

@pytest.mark.asyncio
async def test_walk_passes_silent_stages_and_persists(components):
    flow = make_flow("silent", {
        "a": {"nextStage": "b"},
        "b": {"nextStage": "c"},
        "c": {"prompt": "Ask something."},
    })
    conversation = await start_session(components.store, "silent", "a")
    engine = components.engine

    stage = await engine._walk_silent_stages(conversation.user_id, flow, "a", {}, {}, has_session=True)

    assert stage == "c"
    assert (await components.store.get_user_flow(conversation.user_id)).stage == "c"


@pytest.mark.asyncio
async def test_walk_stops_at_actions_and_missing_fields(components):
    flow = make_flow("silent", {
        "a": {"nextStage": "b"},
        "b": {"action": {"toolName": "flow.handoff"}, "nextStage": "c"},
        "c": {},
    })
    assert await components.engine._walk_silent_stages("u1", flow, "a", {}, {}, has_session=False) == "b"

    flow = make_flow("silent", {"a": {"fieldsToCollect": ["x"], "nextStage": "b"}, "b": {}}, {"x": {}})
    assert await components.engine._walk_silent_stages("u1", flow, "a", {}, {}, has_session=False) == "a"
    assert await components.engine._walk_silent_stages("u1", flow, "a", {"x": "1"}, {}, has_session=False) == "b"


@pytest.mark.asyncio
async def test_walk_is_bounded(components):
    flow = make_flow("spin", {"a": {"nextStage": "b"}, "b": {"nextStage": "a"}})
    stage = await components.engine._walk_silent_stages("u1", flow, "a", {}, {}, has_session=False)
    assert stage == ("b" if settings.max_silent_stage_walk % 2 else "a")


# --- Masking ---

def test_mask_sensitive_hides_values_and_drops_unknown_keys():
    flow = make_flow(
        "kyc",
        {"a": {}},
        {"id_number": {"sensitive": True}, "first_name": {}, "email": {}},
    )
    masked = mask_sensitive({"id_number": "000000018", "first_name": "Dana", "email": None, "internal": "x"}, flow)
    assert masked == {"id_number": strings.MASKED_VALUE, "first_name": "Dana"}


@pytest.mark.asyncio
async def test_sensitive_values_never_reach_composer(components, fake_ai):
    await components.catalog.save(make_flow(
        "kyc",
        {"ask": {"fieldsToCollect": ["id_number", "first_name"], "prompt": "Ask for ID."}},
        {"id_number": {"sensitive": True}, "first_name": {"minLength": 2}},
    ))
    conversation = await start_session(components.store, "kyc", "ask", {"id_number": "000000018"})

    await components.engine.process_message(conversation.id, "123456789")

    request = fake_ai.compose_requests[-1]
    assert request.collected["id_number"] == strings.MASKED_VALUE
    assert "000000018" not in request.model_dump_json()
