# /app/workflows/engine.py

"""
The per-message pipeline.

``FlowEngine.process_message`` wraps one router turn: it resolves (or
creates) the conversation, lets the router settle the flow, reloads the
authoritative session because handoffs may have moved it, walks forward
through silent stages and finally decides what to say:

- technical errors get a short apology (plus a retry hint when the stage has
  everything it needs), never the underlying details;
- otherwise the response composer gets the missing fields, fresh invalid-value
  hints and any user-actionable error, with sensitive values masked.
"""

from typing import Any, Dict, List, Literal, Mapping, Optional, Tuple, TypedDict

import structlog

from app.config import strings
from app.config.settings import settings as default_settings
from app.models.flow import FlowDefinition, StageDefinition
from app.models.session import ComposeRequest, Conversation, FieldPrompt, InvalidFieldHint, InvalidFieldMarker
from app.services.ai_service import render_template_reply
from app.utils.metrics import message_counter
from app.workflows.aliases import AliasGraph, alias_graph
from app.workflows.router import FlowError, FlowRouter, ProceedResult, get_next_stage
from app.workflows.validator import is_present, is_present_and_valid

log = structlog.get_logger(__name__)


class EngineResult(TypedDict):
    reply: str
    conversation_id: str
    flow_slug: Optional[str]
    stage: Optional[str]
    error_kind: Optional[Literal["technical", "user"]]


def mask_sensitive(data: Mapping[str, Any], flow: FlowDefinition) -> Dict[str, Any]:
    """Present values of the flow's fields, with sensitive ones masked."""
    masked: Dict[str, Any] = {}
    for slug, definition in flow.field_definitions.items():
        value = data.get(slug)
        if not is_present(value):
            continue
        masked[slug] = strings.MASKED_VALUE if definition.sensitive else value
    return masked


class FlowEngine:
    def __init__(self, store, catalog, router: FlowRouter, composer, settings_obj=None, aliases: AliasGraph = alias_graph):
        self.store = store
        self.catalog = catalog
        self.router = router
        self.composer = composer
        self.settings = settings_obj or default_settings
        self.aliases = aliases

    async def get_or_create_conversation(self, conversation_id: Optional[str], channel: str = "web") -> Conversation:
        if conversation_id:
            conversation = await self.store.get_conversation(conversation_id)
            if conversation is not None:
                return conversation
            return await self.store.create_conversation(Conversation(id=conversation_id, channel=channel))
        return await self.store.create_conversation(Conversation(channel=channel))

    async def process_message(self, conversation_id: Optional[str], message: str, channel: str = "web") -> EngineResult:
        conversation = await self.get_or_create_conversation(conversation_id, channel)
        logger = log.bind(conversation_id=conversation.id)

        determined = await self.router.determine_flow_and_collect_data(conversation, message)
        if determined is None:
            message_counter.labels(status="no_flow").inc()
            logger.warning("No flow available for message")
            return self._result(conversation, strings.NO_FLOW_CONFIGURED, None, None, None)

        proceed = await self.router.proceed_flow(determined, conversation, message)
        logger = logger.bind(user_id=conversation.user_id)
        flow, stage_slug, has_session = await self._settled_position(conversation.user_id, proceed)
        error = proceed["error"]

        if flow is None or stage_slug is None:
            if error is not None:
                message_counter.labels(status="technical_error").inc()
                return self._result(conversation, strings.TECHNICAL_ERROR_REPLY, proceed["flow_slug"], None, "technical")
            message_counter.labels(status="flow_ended").inc()
            return self._result(conversation, strings.FLOW_ENDED, proceed["flow_slug"], None, None)

        user_data = await self.store.get_user_data(conversation.user_id, flow.slug)
        diagnostics = await self.store.get_diagnostics(conversation.user_id, flow.slug)
        fresh_invalid = diagnostics.fresh_invalid_fields(self.settings.invalid_marker_window_minutes)

        if error is None:
            stage_slug = await self._walk_silent_stages(conversation.user_id, flow, stage_slug, user_data, fresh_invalid, has_session)
        stage = flow.get_stage(stage_slug)
        logger.info("Turn settled", flow=flow.slug, stage=stage_slug, error=bool(error))

        if error is not None and error["is_technical"]:
            reply = strings.TECHNICAL_ERROR_REPLY
            if stage is not None and not self._missing_fields(flow, stage, user_data):
                reply = f"{reply} {strings.RETRY_HINT}"
            message_counter.labels(status="technical_error").inc()
            return self._result(conversation, reply, flow.slug, stage_slug, "technical")

        request = self._build_compose_request(conversation, message, flow, stage_slug, stage, user_data, fresh_invalid, error)
        try:
            reply = await self.composer.compose_reply(request)
        except Exception as e:
            logger.error("Response composer failed; using template reply", error=str(e), exc_info=e)
            reply = render_template_reply(request)
        if not (reply or "").strip():
            reply = strings.EMPTY_REPLY_FALLBACK

        message_counter.labels(status="user_error" if error else "success").inc()
        return self._result(conversation, reply, flow.slug, stage_slug, "user" if error else None)

    @staticmethod
    def _result(conversation: Conversation, reply: str, flow_slug, stage, error_kind) -> EngineResult:
        return {
            "reply": reply,
            "conversation_id": conversation.id,
            "flow_slug": flow_slug,
            "stage": stage,
            "error_kind": error_kind,
        }

    async def _settled_position(self, user_id: str, proceed: ProceedResult) -> Tuple[Optional[FlowDefinition], Optional[str], bool]:
        """Where the user actually is now: the live session if any, else where the router stopped."""
        state = await self.store.get_user_flow(user_id)
        if state is not None:
            flow = await self.catalog.get(state.flow_slug)
            if flow is not None and flow.get_stage(state.stage) is not None:
                return flow, state.stage, True
        if not proceed["current_stage"]:
            return None, None, False
        flow = await self.catalog.get(proceed["flow_slug"])
        return flow, proceed["current_stage"], False

    def _missing_fields(self, flow: FlowDefinition, stage: StageDefinition, user_data: Mapping[str, Any]) -> List[str]:
        return [
            slug
            for slug in stage.fields_to_collect
            if not is_present_and_valid(slug, flow.field_definitions.get(slug), self.aliases.lookup(user_data, slug))
        ]

    def _stage_invalid_markers(self, stage: StageDefinition, fresh_invalid: Mapping[str, InvalidFieldMarker]) -> Dict[str, InvalidFieldMarker]:
        stage_fields = self.aliases.expand_slugs(stage.fields_to_collect)
        return {slug: marker for slug, marker in fresh_invalid.items() if slug in stage_fields}

    def _needs_reply(self, flow: FlowDefinition, stage: StageDefinition, user_data, fresh_invalid) -> bool:
        if stage.prompt or stage.action is not None:
            return True
        return bool(self._missing_fields(flow, stage, user_data) or self._stage_invalid_markers(stage, fresh_invalid))

    async def _walk_silent_stages(self, user_id, flow: FlowDefinition, stage_slug: str, user_data, fresh_invalid, has_session: bool) -> str:
        """
        Advance past stages that have nothing to say: no prompt, no missing or
        rejected fields. Unlike a plain silent stage, an action-only stage stops
        the walk; moving past it here would skip its tool call, so the router
        runs it on the next turn.
        """
        for _ in range(self.settings.max_silent_stage_walk):
            stage = flow.get_stage(stage_slug)
            if stage is None or self._needs_reply(flow, stage, user_data, fresh_invalid):
                break
            next_slug = get_next_stage(stage, user_data, stage_slug)
            if not next_slug or next_slug == stage_slug or flow.get_stage(next_slug) is None:
                break
            if has_session:
                await self.store.save_user_flow(user_id, flow.slug, next_slug)
            log.info("Walked past silent stage", flow=flow.slug, stage=stage_slug, next_stage=next_slug)
            stage_slug = next_slug
        return stage_slug

    def _build_compose_request(
        self,
        conversation: Conversation,
        message: str,
        flow: FlowDefinition,
        stage_slug: str,
        stage: Optional[StageDefinition],
        user_data: Mapping[str, Any],
        fresh_invalid: Mapping[str, InvalidFieldMarker],
        error: Optional[FlowError],
    ) -> ComposeRequest:
        definitions = flow.field_definitions
        missing: List[FieldPrompt] = []
        hints: List[InvalidFieldHint] = []
        if stage is not None:
            missing = [
                FieldPrompt(slug=slug, description=definitions[slug].description if slug in definitions else "")
                for slug in self._missing_fields(flow, stage, user_data)
            ]
            for slug, marker in self._stage_invalid_markers(stage, fresh_invalid).items():
                definition = definitions.get(slug)
                sensitive = bool(definition and definition.sensitive)
                hints.append(InvalidFieldHint(
                    slug=slug,
                    description=definition.description if definition else "",
                    reason=marker.reason,
                    suggestion=None if sensitive else marker.suggestion,
                ))
        return ComposeRequest(
            conversation_id=conversation.id,
            message=message,
            flow_slug=flow.slug,
            stage_slug=stage_slug,
            stage_description=stage.description if stage else "",
            stage_prompt=stage.prompt if stage else None,
            missing_fields=missing,
            invalid_fields=hints,
            collected=mask_sensitive(user_data, flow),
            error_context=error["message"] if error else None,
        )
