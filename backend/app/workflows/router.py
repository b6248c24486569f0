# /app/workflows/router.py

"""
The flow router: the per-turn state machine.

``determine_flow_and_collect_data`` resolves which flow and stage a
conversation is in and extracts candidate field values from the message.
``proceed_flow`` then persists those values and drives the stage graph:
completion check, action execution with structured error handling, next-stage
resolution and cross-flow handoff / onComplete chaining.

Stage-to-stage continuation runs as a work loop rather than recursion. Each
transition pushes a guard recording how to recover if something below it
raises, and how its result is reported upward:

- ``advance``: normal move to the next stage. Exceptions put the user back on
  the origin stage with a technical error.
- ``new_stage``: an error handler's redirect. Exceptions revert the persisted
  stage, or delete the session when the flow's policy is ``killFlow``.
- ``handoff``: a tool switched the session to another flow. Exceptions settle
  on the target stage without an error.
- ``on_complete``: the flow finished and chains into its successor. Errors
  from the successor are never reported upward.
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict, FrozenSet, List, Literal, Mapping, Optional, Set, Tuple, TypedDict, Union

import structlog

from app.config import strings
from app.config.settings import settings as default_settings
from app.models.flow import (
    ConditionalNextStage,
    ErrorBehavior,
    ErrorCodeHandler,
    ErrorHandlingConfig,
    FieldDefinition,
    FlowDefinition,
    StageDefinition,
)
from app.models.session import Conversation, FlowHistoryEntry, InvalidFieldMarker, LastActionError, utcnow
from app.models.tool import ToolExecutionContext, ToolResult
from app.utils.alerting import alerting_service
from app.utils.metrics import field_validation_counter, stage_transition_counter
from app.workflows.aliases import AliasGraph, alias_graph
from app.workflows.derivations import derive_fields
from app.workflows.error_handler import analyze_error, render_error_message
from app.workflows.errors import ExpressionError
from app.workflows.expressions import build_scope, evaluate_condition, evaluate_value
from app.workflows.extraction import collect_field_values
from app.workflows.validator import is_present, is_present_and_valid, validate_field_value

logger = logging.getLogger(__name__)
log = structlog.get_logger(__name__)

RETRY_PATTERN = re.compile(r"(^|\b)(retry|try again|re-try|again|נסה שוב|תנסה שוב)(\b|$)", re.IGNORECASE)

TransitionKind = Literal["advance", "new_stage", "handoff", "on_complete"]


class DeterminedFlow(TypedDict):
    kind: Literal["initial", "assigned", "guessed"]
    flow: FlowDefinition
    stage: str
    collected_data: Dict[str, Any]
    session_id: Optional[str]


class FlowError(TypedDict):
    tool_name: Optional[str]
    message: str
    stage: Optional[str]
    stage_description: str
    is_technical: bool
    error_code: Optional[str]
    http_status: Optional[int]


class ProceedResult(TypedDict):
    current_stage: Optional[str]
    flow_slug: Optional[str]
    error: Optional[FlowError]


@dataclass
class _Step:
    """A pending move into ``flow``/``stage``, produced by the stage just run."""
    flow: FlowDefinition
    stage: str
    kind: TransitionKind
    origin_flow: FlowDefinition
    origin_stage: str


@dataclass
class _Turn:
    conversation_id: str
    user_id: str
    message: str
    retry_requested: bool
    session_id: Optional[str] = None
    visited: Set[Tuple[str, str]] = field(default_factory=set)


def _result(stage: Optional[str], flow_slug: Optional[str], error: Optional[FlowError] = None) -> ProceedResult:
    return {"current_stage": stage, "flow_slug": flow_slug, "error": error}


def _flow_error(
    message: str,
    stage: Optional[str],
    stage_definition: Optional[StageDefinition] = None,
    tool_name: Optional[str] = None,
    is_technical: bool = True,
    error_code: Optional[str] = None,
    http_status: Optional[int] = None,
) -> FlowError:
    return {
        "tool_name": tool_name,
        "message": message,
        "stage": stage,
        "stage_description": stage_definition.description if stage_definition else "",
        "is_technical": is_technical,
        "error_code": error_code,
        "http_status": http_status,
    }


def stage_scope(stage_slug: str, stage: StageDefinition) -> Dict[str, Any]:
    return {
        "slug": stage_slug,
        "name": stage.name,
        "description": stage.description,
        "fieldsToCollect": list(stage.fields_to_collect),
    }


def is_stage_completed(
    stage: StageDefinition,
    user_data: Mapping[str, Any],
    field_definitions: Mapping[str, FieldDefinition],
    stage_slug: str = "",
    aliases: AliasGraph = alias_graph,
) -> bool:
    """
    Decide whether a stage has everything it needs.

    Precedence:
    1. ``orchestration.customCompletionCheck``: when its condition holds, the
       stage is complete, or, if ``requiredFields`` is declared, complete once
       those are all present and valid. The condition alone can complete a stage
       whose ``fieldsToCollect`` are still empty.
    2. ``completionCondition``: must hold, and all ``fieldsToCollect`` must be
       present and valid.
    3. Otherwise all ``fieldsToCollect`` must be present and valid.

    A stage with no fields and no conditions is always complete.
    """
    scope = build_scope(user_data, stage=stage_scope(stage_slug, stage))

    def collected(slug: str) -> bool:
        return is_present_and_valid(slug, field_definitions.get(slug), aliases.lookup(user_data, slug))

    custom = stage.orchestration.custom_completion_check if stage.orchestration else None
    if custom and evaluate_condition(custom.condition, scope):
        if custom.required_fields:
            if all(collected(slug) for slug in custom.required_fields):
                return True
        else:
            return True

    all_fields = all(collected(slug) for slug in stage.fields_to_collect)
    if stage.completion_condition:
        return all_fields and evaluate_condition(stage.completion_condition, scope)
    return all_fields


def get_next_stage(stage: StageDefinition, user_data: Mapping[str, Any], stage_slug: str = "") -> Optional[str]:
    """
    Resolve a stage's successor. Conditionals are tried in order: the first
    true condition wins with its ``ifTrue``; a false condition that declares
    ``ifFalse`` also wins. A condition that fails to evaluate is skipped.
    """
    next_stage = stage.next_stage
    if next_stage is None or isinstance(next_stage, str):
        return next_stage or None
    if isinstance(next_stage, ConditionalNextStage):
        scope = build_scope(user_data, stage=stage_scope(stage_slug, stage))
        for rule in next_stage.conditional:
            try:
                matched = bool(evaluate_value(rule.condition, scope))
            except ExpressionError as e:
                logger.error(f"Error evaluating next-stage condition for stage '{stage_slug}': {e}")
                continue
            if matched:
                return rule.if_true
            if rule.if_false:
                return rule.if_false
        return next_stage.fallback
    return None


class FlowRouter:
    def __init__(
        self,
        store,
        catalog,
        tools,
        extractor=None,
        classifier=None,
        settings_obj=None,
        aliases: AliasGraph = alias_graph,
    ):
        self.store = store
        self.catalog = catalog
        self.tools = tools
        self.extractor = extractor
        self.classifier = classifier
        self.settings = settings_obj or default_settings
        self.aliases = aliases

    is_stage_completed = staticmethod(is_stage_completed)
    get_next_stage = staticmethod(get_next_stage)

    # ==================== Flow resolution ====================

    async def _guess_flow(self, message: str) -> Optional[FlowDefinition]:
        if self.classifier is None:
            return None
        candidates = [flow for flow in await self.catalog.all() if not flow.config.default_for_new_users]
        if not candidates:
            return None
        try:
            slug = await self.classifier.guess_flow(message, candidates)
        except Exception as e:
            logger.error(f"Flow classification failed: {e}", exc_info=True)
            return None
        return next((flow for flow in candidates if flow.slug == slug), None)

    async def determine_flow_and_collect_data(self, conversation: Conversation, message: str) -> Optional[DeterminedFlow]:
        """
        Resolve the flow/stage for this turn and extract in-scope field values.
        Returns None when there is no flow to run.
        """
        flow: Optional[FlowDefinition] = None
        stage: Optional[str] = None
        session_id: Optional[str] = None
        kind = "initial"

        if conversation.user_id:
            state = await self.store.get_user_flow(conversation.user_id)
            if state:
                flow = await self.catalog.get(state.flow_slug)
                if flow and flow.get_stage(state.stage):
                    stage, session_id, kind = state.stage, state.id, "assigned"
                else:
                    log.warning("Session points at a missing flow or stage", flow=state.flow_slug, stage=state.stage)
                    flow = None
            if flow is None:
                flow = await self._guess_flow(message)
                if flow is not None:
                    kind = "guessed"

        if flow is None:
            flow = await self.catalog.default_flow()
            if flow is None:
                logger.error("No default flow is configured")
                return None
            kind = "initial"

        stage = stage or flow.initial_stage
        collected = await collect_field_values(self.extractor, message, flow, flow.get_stage(stage))
        return {
            "kind": kind,
            "flow": flow,
            "stage": stage,
            "collected_data": collected,
            "session_id": session_id,
        }

    # ==================== Persistence of collected values ====================

    async def _ensure_user_and_session(self, conversation: Conversation, flow: FlowDefinition, stage: str) -> Tuple[str, str]:
        user_id = conversation.user_id
        if not user_id:
            user_id = await self.store.create_user()
            await self.store.assign_user(conversation.id, user_id)
            conversation.user_id = user_id
            log.info("Created user for conversation", conversation_id=conversation.id, user_id=user_id)

        state = await self.store.get_user_flow(user_id)
        if state is None or (state.flow_slug, state.stage) != (flow.slug, stage):
            state = await self.store.save_user_flow(user_id, flow.slug, stage)
        return user_id, state.id

    async def persist_collected_data(self, user_id: str, flow: FlowDefinition, stage_slug: str, collected: Mapping[str, Any]) -> None:
        """
        Validate and store this turn's values. Invalid values for the current
        stage's fields clear any stored value under that field and its
        aliases; every invalid value leaves a timestamped marker, and markers
        go away once a valid value arrives.
        """
        valid: Dict[str, Any] = {}
        invalid: Dict[str, InvalidFieldMarker] = {}
        for slug, raw in collected.items():
            if not is_present(raw):
                continue
            result = validate_field_value(slug, flow.field_definitions.get(slug), raw)
            if result["is_valid"]:
                valid[slug] = result["normalized_value"]
                field_validation_counter.labels(status="valid").inc()
            else:
                invalid[slug] = InvalidFieldMarker(reason=result["error_code"], suggestion=result["suggestion"])
                field_validation_counter.labels(status="invalid").inc()

        known = await self.store.get_user_data(user_id, flow.slug)
        to_write = self.aliases.fan_out(valid) if valid else {}
        to_write.update(derive_fields({**known, **to_write}, flow.field_definitions))

        stage = flow.get_stage(stage_slug)
        stage_fields: FrozenSet[str] = self.aliases.expand_slugs(stage.fields_to_collect) if stage else frozenset()
        cleared: Dict[str, Any] = {}
        for slug in invalid:
            if slug in stage_fields:
                for alias in self.aliases.group(slug):
                    if alias not in to_write:
                        cleared[alias] = None

        if to_write or cleared:
            await self.store.set_user_data(user_id, flow.slug, {**cleared, **to_write})
        if cleared:
            log.info("Cleared stale values after invalid input", user_id=user_id, fields=sorted(cleared))

        diagnostics = await self.store.get_diagnostics(user_id, flow.slug)
        changed = False
        for slug in to_write:
            for alias in self.aliases.group(slug):
                if diagnostics.invalid_fields.pop(alias, None) is not None:
                    changed = True
        for slug, marker in invalid.items():
            diagnostics.invalid_fields[slug] = marker
            changed = True
        if changed:
            await self.store.save_diagnostics(user_id, flow.slug, diagnostics)

    # ==================== State updates ====================

    async def update_flow_state(self, turn: _Turn, flow_slug: str, completed_stage: str, next_stage: Optional[str]) -> None:
        """Record the completed stage, then move the session forward or end it."""
        if next_stage != completed_stage:
            await self.store.append_history(FlowHistoryEntry(
                user_id=turn.user_id, flow_slug=flow_slug, stage=completed_stage, session_id=turn.session_id,
            ))
        if next_stage:
            state = await self.store.save_user_flow(turn.user_id, flow_slug, next_stage)
            turn.session_id = state.id
        else:
            await self.store.delete_user_flow(turn.user_id)
            log.info("Flow finished; session closed", user_id=turn.user_id, flow=flow_slug, stage=completed_stage)

    # ==================== Turn driver ====================

    async def proceed_flow(self, determined: DeterminedFlow, conversation: Conversation, message: str) -> ProceedResult:
        """
        Persist this turn's values and advance through as many stages (and
        flows) as the data allows. Always returns the resting stage; failures
        come back as a structured error rather than an exception.
        """
        flow = determined["flow"]
        stage = determined["stage"]
        user_id, session_id = await self._ensure_user_and_session(conversation, flow, stage)
        turn = _Turn(
            conversation_id=conversation.id,
            user_id=user_id,
            message=message or "",
            retry_requested=bool(RETRY_PATTERN.search(message or "")),
            session_id=session_id,
        )

        guards: List[_Step] = []
        try:
            await self.persist_collected_data(user_id, flow, stage, determined["collected_data"])
            turn.visited.add((flow.slug, stage))
            outcome: Union[ProceedResult, _Step] = await self._run_stage(turn, flow, stage)
            while isinstance(outcome, _Step):
                step = outcome
                if not self._may_enter(turn, step, len(guards)):
                    outcome = _result(step.stage, step.flow.slug)
                    break
                guards.append(step)
                stage_transition_counter.labels(kind=step.kind).inc()
                log.info(
                    "Stage transition",
                    kind=step.kind,
                    from_flow=step.origin_flow.slug,
                    from_stage=step.origin_stage,
                    to_flow=step.flow.slug,
                    to_stage=step.stage,
                )
                outcome = await self._run_stage(turn, step.flow, step.stage)
        except Exception as e:
            return await self._recover(turn, guards, e, flow, stage)
        return self._unwind(guards, outcome)

    def _may_enter(self, turn: _Turn, step: _Step, depth: int) -> bool:
        key = (step.flow.slug, step.stage)
        if key in turn.visited:
            log.warning("Stage already visited this turn; stopping", flow=step.flow.slug, stage=step.stage)
            return False
        if depth >= self.settings.max_stage_transitions:
            log.error("Too many stage transitions in one turn; stopping", flow=step.flow.slug, stage=step.stage, depth=depth)
            return False
        turn.visited.add(key)
        return True

    @staticmethod
    def _unwind(guards: List[_Step], result: ProceedResult) -> ProceedResult:
        for step in reversed(guards):
            if step.kind == "on_complete" and result["error"] is not None:
                result = {**result, "error": None}
        return result

    async def _recover(self, turn: _Turn, guards: List[_Step], exc: Exception, entry_flow: FlowDefinition, entry_stage: str) -> ProceedResult:
        while guards:
            step = guards.pop()
            log.error(
                "Error while running stage; recovering",
                kind=step.kind,
                flow=step.flow.slug,
                stage=step.stage,
                error=str(exc),
                exc_info=exc,
            )
            try:
                result = await self._recover_step(turn, step, exc)
            except Exception as nested:
                exc = nested
                continue
            return self._unwind(guards, result)
        return await self._recover_unhandled(turn, entry_flow, entry_stage, exc)

    async def _recover_step(self, turn: _Turn, step: _Step, exc: Exception) -> ProceedResult:
        origin_definition = step.origin_flow.get_stage(step.origin_stage)
        if step.kind in ("handoff", "on_complete"):
            return _result(step.stage, step.flow.slug)
        if step.kind == "new_stage" and step.origin_flow.config.error_handling_strategy.on_unhandled_error == "killFlow":
            await self.store.delete_user_flow(turn.user_id)
            return _result(None, step.origin_flow.slug, _flow_error(str(exc), step.origin_stage, origin_definition))
        await self.store.save_user_flow(turn.user_id, step.origin_flow.slug, step.origin_stage)
        return _result(step.origin_stage, step.origin_flow.slug, _flow_error(str(exc), step.origin_stage, origin_definition))

    async def _recover_unhandled(self, turn: _Turn, flow: FlowDefinition, stage: str, exc: Exception) -> ProceedResult:
        policy = flow.config.error_handling_strategy.on_unhandled_error
        log.error("Unhandled error in flow", flow=flow.slug, stage=stage, policy=policy, error=str(exc), exc_info=exc)
        await alerting_service.send_critical_alert(
            f"Unhandled flow error: {exc}",
            {"conversation_id": turn.conversation_id, "flow": flow.slug, "stage": stage, "policy": policy},
        )
        error = _flow_error(str(exc), stage, flow.get_stage(stage))
        if policy == "killFlow":
            await self.store.delete_user_flow(turn.user_id)
            return _result(None, flow.slug, error)
        return _result(stage, flow.slug, error)

    # ==================== One stage ====================

    async def _run_stage(self, turn: _Turn, flow: FlowDefinition, stage_slug: str) -> Union[ProceedResult, _Step]:
        stage = flow.get_stage(stage_slug)
        if stage is None:
            log.error("Stage does not exist", flow=flow.slug, stage=stage_slug)
            return _result(stage_slug, flow.slug, _flow_error("Stage configuration not found", stage_slug))

        user_data = await self.store.get_user_data(turn.user_id, flow.slug)
        if not is_stage_completed(stage, user_data, flow.field_definitions, stage_slug, self.aliases):
            self._log_stage_incomplete(flow, stage_slug, stage, user_data)
            return _result(stage_slug, flow.slug)

        if stage.action:
            outcome = await self._execute_action(turn, flow, stage_slug, stage, user_data)
            if outcome is not None:
                return outcome
            user_data = await self.store.get_user_data(turn.user_id, flow.slug)

        next_stage = get_next_stage(stage, user_data, stage_slug)
        if next_stage and flow.get_stage(next_stage) is None:
            log.error("Next stage does not exist; staying in current stage", flow=flow.slug, stage=stage_slug, next_stage=next_stage)
            return _result(stage_slug, flow.slug)

        on_complete = flow.config.on_complete
        if (not next_stage or next_stage == stage_slug) and on_complete:
            chained = await self._chain_on_complete(turn, flow, stage_slug, user_data)
            if chained is not None:
                return chained

        try:
            await self.update_flow_state(turn, flow.slug, stage_slug, next_stage)
        except Exception as e:
            log.error("Failed to update flow state", flow=flow.slug, stage=stage_slug, error=str(e), exc_info=e)
            return _result(stage_slug, flow.slug, _flow_error(f"Failed to update flow state: {e}", stage_slug, stage))

        if not next_stage or next_stage == stage_slug:
            return _result(stage_slug, flow.slug)
        return _Step(flow=flow, stage=next_stage, kind="advance", origin_flow=flow, origin_stage=stage_slug)

    def _log_stage_incomplete(self, flow: FlowDefinition, stage_slug: str, stage: StageDefinition, user_data: Mapping[str, Any]):
        incomplete = stage.orchestration.on_stage_incomplete if stage.orchestration else None
        if incomplete is None:
            return
        missing = [slug for slug in stage.fields_to_collect if not is_present(self.aliases.lookup(user_data, slug))]
        level = getattr(logging, incomplete.log_level.upper(), logging.INFO)
        logger.log(level, f"{incomplete.message} (flow={flow.slug}, stage={stage_slug}, missing={missing}, extra={incomplete.extra_data})")

    async def _chain_on_complete(self, turn: _Turn, flow: FlowDefinition, stage_slug: str, user_data: Mapping[str, Any]) -> Optional[_Step]:
        on_complete = flow.config.on_complete
        next_flow = await self.catalog.get(on_complete.start_flow_slug)
        if next_flow is None or next_flow.get_stage(next_flow.initial_stage) is None:
            log.error("onComplete target flow does not exist", flow=flow.slug, target=on_complete.start_flow_slug)
            return None

        await self.store.append_history(FlowHistoryEntry(
            user_id=turn.user_id, flow_slug=flow.slug, stage=stage_slug, session_id=turn.session_id,
        ))
        preserved = {
            slug: self.aliases.lookup(user_data, slug)
            for slug in on_complete.preserve_fields
            if is_present(self.aliases.lookup(user_data, slug))
        }
        if preserved:
            await self.store.set_user_data(turn.user_id, next_flow.slug, preserved)
            log.info("Preserved fields across flows", from_flow=flow.slug, to_flow=next_flow.slug, fields=sorted(preserved))
        state = await self.store.save_user_flow(turn.user_id, next_flow.slug, next_flow.initial_stage)
        turn.session_id = state.id
        return _Step(flow=next_flow, stage=next_flow.initial_stage, kind="on_complete", origin_flow=flow, origin_stage=stage_slug)

    # ==================== Actions ====================

    def _should_skip_repeat(self, turn: _Turn, stage_slug: str, stage: StageDefinition, last: Optional[LastActionError]) -> bool:
        action = stage.action
        if turn.retry_requested or stage.fields_to_collect or action.allow_re_execution_on_error or last is None:
            return False
        if last.stage != stage_slug or last.tool_name != action.tool_name:
            return False
        return utcnow() - last.at <= timedelta(minutes=self.settings.action_error_window_minutes)

    async def _execute_action(
        self,
        turn: _Turn,
        flow: FlowDefinition,
        stage_slug: str,
        stage: StageDefinition,
        user_data: Dict[str, Any],
    ) -> Optional[Union[ProceedResult, _Step]]:
        """
        Run the stage's action. Returns None when the turn should go on to
        next-stage resolution, otherwise the outcome to report or follow.
        """
        action = stage.action
        scope = build_scope(user_data, stage=stage_scope(stage_slug, stage))
        if not evaluate_condition(action.condition or "true", scope):
            return None

        diagnostics = await self.store.get_diagnostics(turn.user_id, flow.slug)
        last = diagnostics.last_action_error
        if self._should_skip_repeat(turn, stage_slug, stage, last):
            log.info("Skipping repeat of a recently failed action", tool=action.tool_name, stage=stage_slug)
            return _result(stage_slug, flow.slug, _flow_error(
                last.message or strings.PREVIOUS_ATTEMPT_FAILED,
                stage_slug,
                stage,
                tool_name=action.tool_name,
                error_code=last.error_code,
            ))

        context = ToolExecutionContext(
            conversation_id=turn.conversation_id, user_id=turn.user_id, flow_slug=flow.slug, stage=stage_slug,
        )
        res = await self.tools.execute(action.tool_name, {**user_data, **action.params}, context)

        if res.success:
            return await self._on_action_success(turn, flow, stage_slug, stage, res, diagnostics)

        diagnostics.last_action_error = LastActionError(
            stage=stage_slug, tool_name=action.tool_name, message=res.error, error_code=res.error_code,
        )
        await self.store.save_diagnostics(turn.user_id, flow.slug, diagnostics)
        log.warning("Action failed", tool=action.tool_name, stage=stage_slug, error=res.error, error_code=res.error_code)
        return await self._on_action_failure(turn, flow, stage_slug, stage, res, user_data)

    async def _on_action_success(self, turn, flow, stage_slug, stage, res: ToolResult, diagnostics) -> Optional[Union[ProceedResult, _Step]]:
        if diagnostics.last_action_error is not None:
            diagnostics.last_action_error = None
            await self.store.save_diagnostics(turn.user_id, flow.slug, diagnostics)
        if res.save_results:
            await self.store.set_user_data(turn.user_id, flow.slug, self.aliases.fan_out(res.save_results))

        target_slug = res.target_flow_slug
        if not target_slug:
            return None

        target = await self.catalog.get(target_slug)
        target_stage = res.target_stage or (target.initial_stage if target else None)
        if target is None or target.get_stage(target_stage) is None:
            log.error("Handoff target does not exist", target_flow=target_slug, target_stage=target_stage)
            return _result(stage_slug, flow.slug, _flow_error(
                "Handoff target configuration not found", stage_slug, stage, tool_name=stage.action.tool_name,
            ))

        state = await self.store.save_user_flow(turn.user_id, target.slug, target_stage)
        turn.session_id = state.id
        return _Step(flow=target, stage=target_stage, kind="handoff", origin_flow=flow, origin_stage=stage_slug)

    def _resolve_error_handler(self, stage: StageDefinition, error_code: Optional[str]) -> Optional[ErrorHandlingConfig]:
        action = stage.action
        if error_code and error_code in action.on_error_code:
            return action.on_error_code[error_code]
        return action.on_error or stage.on_error

    async def _apply_error_updates(self, turn, flow, handler: ErrorCodeHandler, res: ToolResult, user_data: Dict[str, Any]):
        scope = {
            "userData": user_data,
            "errorCode": res.error_code,
            "res": res.model_dump(by_alias=True),
        }
        updates: Dict[str, Any] = {}
        for slug, expression in handler.update_user_data.items():
            try:
                updates[slug] = evaluate_value(expression, scope)
            except ExpressionError as e:
                logger.warning(f"Skipping updateUserData for '{slug}': {e}")
        if updates:
            await self.store.set_user_data(turn.user_id, flow.slug, self.aliases.fan_out(updates))

    async def _on_action_failure(self, turn, flow, stage_slug, stage, res: ToolResult, user_data) -> Optional[Union[ProceedResult, _Step]]:
        handler = self._resolve_error_handler(stage, res.error_code)
        if isinstance(handler, ErrorCodeHandler) and handler.update_user_data:
            await self._apply_error_updates(turn, flow, handler, res, user_data)

        analysis = analyze_error(res.error, res.status, res.error_code)
        message = render_error_message(handler.message if handler else None, res.error, stage_slug, turn.conversation_id)
        error = _flow_error(
            message,
            stage_slug,
            stage,
            tool_name=stage.action.tool_name,
            is_technical=analysis["is_technical"],
            error_code=res.error_code,
            http_status=res.status,
        )

        if handler is None:
            return _result(stage_slug, flow.slug, error)

        behavior = handler.behavior
        if behavior == ErrorBehavior.CONTINUE:
            log.warning("Continuing after action failure", tool=stage.action.tool_name, error_code=res.error_code)
            return None

        if behavior == ErrorBehavior.END_FLOW:
            await self.store.delete_user_flow(turn.user_id)
            log.info("Flow ended by error handler", flow=flow.slug, stage=stage_slug)
            return _result(None, flow.slug, {**error, "is_technical": True})

        if behavior == ErrorBehavior.NEW_STAGE and handler.next_stage:
            if flow.get_stage(handler.next_stage) is None:
                log.error("Error handler targets a missing stage", flow=flow.slug, target=handler.next_stage)
                return _result(stage_slug, flow.slug, {**error, "is_technical": True})
            await self.update_flow_state(turn, flow.slug, stage_slug, handler.next_stage)
            return _Step(flow=flow, stage=handler.next_stage, kind="new_stage", origin_flow=flow, origin_stage=stage_slug)

        # pause, or newStage without a target
        if behavior == ErrorBehavior.NEW_STAGE or not stage.fields_to_collect:
            error["is_technical"] = True
        return _result(stage_slug, flow.slug, error)
