# /app/services/tools/flow_handoff.py

"""Hand the conversation over to another flow, carrying selected fields along."""

import logging
from typing import Any, Dict, Iterable

from app.models.tool import ToolExecutionContext, ToolResult
from app.workflows.validator import is_present

logger = logging.getLogger(__name__)


def _preserved(payload: Dict[str, Any], fields: Iterable[str]) -> Dict[str, Any]:
    return {slug: payload[slug] for slug in fields if is_present(payload.get(slug))}


def create_tool(deps):
    async def flow_handoff(payload: Dict[str, Any], context: ToolExecutionContext) -> ToolResult:
        target_slug = payload.get("targetFlowSlug")
        if not target_slug:
            return ToolResult.fail("No target flow was set for the handoff", "MISSING_TARGET")

        target = await deps.catalog.get(target_slug) if deps.catalog else None
        if target is None:
            return ToolResult.fail(f"Target flow configuration not found: {target_slug}", "FLOW_NOT_FOUND")

        target_stage = payload.get("targetStage") or target.initial_stage
        if target.get_stage(target_stage) is None:
            return ToolResult.fail(f"Target stage configuration not found: {target_stage}", "STAGE_NOT_FOUND")

        carried = _preserved(payload, payload.get("preserveFields") or [])
        if carried and deps.store and context.user_id:
            await deps.store.set_user_data(context.user_id, target_slug, carried)

        logger.info(
            f"Handoff from {context.flow_slug}/{context.stage} to {target_slug}/{target_stage} "
            f"carrying {sorted(carried)}"
        )
        return ToolResult.ok(data={
            "targetFlowSlug": target_slug,
            "targetStage": target_stage,
            "preservedFields": sorted(carried),
        })

    return flow_handoff
