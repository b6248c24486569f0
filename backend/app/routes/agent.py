# /app/routes/agent.py

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request

from app.config.settings import settings
from app.models.api import AgentMessageData, AgentMessageRequest, APIResponse, ConversationState
from app.services.flow_catalog import FlowCatalog
from app.services.flow_store import FlowStore
from app.utils.dependencies import get_catalog, get_engine, get_store, verify_api_key
from app.utils.metrics import response_time_histogram
from app.utils.rate_limiter import limiter
from app.workflows.engine import FlowEngine, mask_sensitive

# This file defines the conversational endpoints: posting a user message to
# the flow engine and inspecting where a conversation currently stands.

router = APIRouter(
    prefix="/agent",
    tags=["Agent"],
    dependencies=[Depends(verify_api_key)]
)

log = structlog.get_logger(__name__)


@router.post("/messages", response_model=APIResponse)
@limiter.limit(f"{settings.rate_limit_per_minute}/minute")
async def post_message(
    request: Request,
    body: AgentMessageRequest,
    engine: FlowEngine = Depends(get_engine),
):
    """Process one user message and return the assistant's reply."""
    with response_time_histogram.labels(endpoint="agent_message").time():
        result = await engine.process_message(body.conversation_id, body.message, body.channel)
    data = AgentMessageData(
        conversation_id=result["conversation_id"],
        reply=result["reply"],
        flow=result["flow_slug"],
        stage=result["stage"],
        error_kind=result["error_kind"],
    )
    return APIResponse(
        success=True,
        message="Message processed",
        data=data.model_dump(),
        version=settings.api_version
    )


@router.get("/conversations/{conversation_id}/state", response_model=APIResponse)
async def get_conversation_state(
    conversation_id: str,
    store: FlowStore = Depends(get_store),
    catalog: FlowCatalog = Depends(get_catalog),
):
    """Current flow, stage, collected data (sensitive values masked) and diagnostics."""
    conversation = await store.get_conversation(conversation_id)
    if conversation is None:
        raise HTTPException(status_code=404, detail="Conversation not found")

    state = ConversationState(conversation_id=conversation.id, user_id=conversation.user_id)
    if conversation.user_id:
        session = await store.get_user_flow(conversation.user_id)
        if session is not None:
            state.flow = session.flow_slug
            state.stage = session.stage
            flow = await catalog.get(session.flow_slug)
            if flow is not None:
                user_data = await store.get_user_data(conversation.user_id, flow.slug)
                state.user_data = mask_sensitive(user_data, flow)
            diagnostics = await store.get_diagnostics(conversation.user_id, session.flow_slug)
            state.invalid_fields = {
                slug: marker.model_dump(mode="json") for slug, marker in diagnostics.invalid_fields.items()
            }
            if diagnostics.last_action_error:
                state.last_action_error = diagnostics.last_action_error.model_dump(mode="json")
        history = await store.list_history(conversation.user_id)
        state.history = [entry.model_dump(mode="json") for entry in history]

    return APIResponse(
        success=True,
        message="Conversation state retrieved",
        data=state.model_dump(),
        version=settings.api_version
    )
