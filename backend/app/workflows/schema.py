# /app/workflows/schema.py

"""
Pure validation functions for flow definitions.

A flow payload is first parsed structurally with pydantic, then checked for
references that must resolve: the initial stage, every collected/required
field, every transition target and every tool name.

All functions are:
- Pure (no side effects)
- Deterministic (same input = same output)
- No database access
- No logging
"""

from typing import Any, Dict, Iterable, List, Optional, Set, TypedDict

from pydantic import ValidationError

from app.models.flow import ConditionalNextStage, FlowDefinition, StageDefinition
from app.workflows.prohibited_words import known_word_lists


class FlowValidationResult(TypedDict):
    """Result of validating a flow payload."""
    is_valid: bool
    errors: List[str]
    flow: Optional[FlowDefinition]


def _loc_to_path(loc: Iterable[Any]) -> str:
    return ".".join(str(part) for part in loc)


def stage_targets(stage: StageDefinition) -> List[tuple]:
    """Every (path suffix, target stage) a stage can transition to."""
    targets = []
    if isinstance(stage.next_stage, str):
        targets.append(("nextStage", stage.next_stage))
    elif isinstance(stage.next_stage, ConditionalNextStage):
        for index, rule in enumerate(stage.next_stage.conditional):
            targets.append((f"nextStage.conditional.{index}.ifTrue", rule.if_true))
            if rule.if_false:
                targets.append((f"nextStage.conditional.{index}.ifFalse", rule.if_false))
        if stage.next_stage.fallback:
            targets.append(("nextStage.fallback", stage.next_stage.fallback))
    if stage.on_error and stage.on_error.next_stage:
        targets.append(("onError.nextStage", stage.on_error.next_stage))
    if stage.action:
        if stage.action.on_error and stage.action.on_error.next_stage:
            targets.append(("action.onError.nextStage", stage.action.on_error.next_stage))
        for code, handler in stage.action.on_error_code.items():
            if handler.next_stage:
                targets.append((f"action.onErrorCode.{code}.nextStage", handler.next_stage))
    return targets


def check_references(flow: FlowDefinition, known_tools: Optional[Set[str]] = None) -> List[str]:
    """
    Check that everything a flow points at exists.

    Args:
        flow: A structurally valid flow
        known_tools: Registered tool names; None skips the tool check

    Returns:
        Path-qualified error messages, empty when all references resolve
    """
    errors: List[str] = []
    stages = flow.stages
    fields = flow.field_definitions

    if not stages:
        errors.append("definition.stages: at least one stage is required")
        return errors

    if flow.initial_stage not in stages:
        errors.append(f"definition.config.initialStage: stage '{flow.initial_stage}' does not exist")

    word_lists = known_word_lists()
    for field_slug, definition in fields.items():
        list_id = definition.prohibited_words_list
        if list_id and list_id not in word_lists:
            errors.append(f"definition.fields.{field_slug}.prohibitedWordsList: list '{list_id}' does not exist")

    for slug, stage in stages.items():
        base = f"definition.stages.{slug}"
        for field_slug in stage.fields_to_collect:
            if field_slug not in fields:
                errors.append(f"{base}.fieldsToCollect: field '{field_slug}' is not defined")
        custom = stage.orchestration.custom_completion_check if stage.orchestration else None
        for field_slug in (custom.required_fields or []) if custom else []:
            if field_slug not in fields:
                errors.append(f"{base}.orchestration.customCompletionCheck.requiredFields: field '{field_slug}' is not defined")
        if isinstance(stage.next_stage, ConditionalNextStage) and not stage.next_stage.fallback:
            has_if_false = any(rule.if_false for rule in stage.next_stage.conditional)
            if not has_if_false:
                errors.append(f"{base}.nextStage.fallback: a fallback is required when no conditional matches")
        for suffix, target in stage_targets(stage):
            if target not in stages:
                errors.append(f"{base}.{suffix}: stage '{target}' does not exist")
        if stage.action and known_tools is not None and stage.action.tool_name not in known_tools:
            errors.append(f"{base}.action.toolName: tool '{stage.action.tool_name}' is not registered")

    on_complete = flow.config.on_complete
    if on_complete and on_complete.start_flow_slug == flow.slug:
        errors.append("definition.config.onComplete.startFlowSlug: a flow cannot chain into itself")

    return errors


def validate_flow_payload(payload: Dict[str, Any], known_tools: Optional[Set[str]] = None) -> FlowValidationResult:
    """
    Validate a flow JSON payload.

    Args:
        payload: The flow document (camelCase keys)
        known_tools: Registered tool names; None skips the tool check

    Returns:
        FlowValidationResult with the parsed flow when valid, or the list of
        path-qualified errors otherwise
    """
    if not isinstance(payload, dict):
        return {"is_valid": False, "errors": ["<root>: flow must be a JSON object"], "flow": None}

    try:
        flow = FlowDefinition.model_validate(payload)
    except ValidationError as e:
        errors = [f"{_loc_to_path(err['loc']) or '<root>'}: {err['msg']}" for err in e.errors()]
        return {"is_valid": False, "errors": errors, "flow": None}

    errors = check_references(flow, known_tools)
    if errors:
        return {"is_valid": False, "errors": errors, "flow": None}

    return {"is_valid": True, "errors": [], "flow": flow}


def validate_flow_set(flows: Iterable[FlowDefinition]) -> List[str]:
    """Cross-flow checks: unique slugs and resolvable onComplete targets."""
    errors: List[str] = []
    slugs: Set[str] = set()
    flow_list = list(flows)
    for flow in flow_list:
        if flow.slug in slugs:
            errors.append(f"{flow.slug}: duplicate flow slug")
        slugs.add(flow.slug)
    for flow in flow_list:
        on_complete = flow.config.on_complete
        if on_complete and on_complete.start_flow_slug not in slugs:
            errors.append(f"{flow.slug}.definition.config.onComplete.startFlowSlug: flow '{on_complete.start_flow_slug}' does not exist")
    return errors
