# /app/services/tools/welcome_route.py

"""Route a user from the welcome flow to the flow matching their stated intent."""

from typing import Any, Dict

from app.models.tool import ToolExecutionContext, ToolResult
from app.services.tools import flow_handoff

INTENT_ROUTES: Dict[str, str] = {
    "register": "business_registration",
}

PRESERVED_FIELDS = ["first_name", "last_name", "phone"]


def create_tool(deps):
    handoff = flow_handoff.create_tool(deps)

    async def welcome_route(payload: Dict[str, Any], context: ToolExecutionContext) -> ToolResult:
        intent = str(payload.get("intent_type") or "").strip().lower()
        target = INTENT_ROUTES.get(intent)
        if not target:
            return ToolResult.ok(data={"routed": False})
        return await handoff(
            {**payload, "targetFlowSlug": target, "preserveFields": PRESERVED_FIELDS},
            context,
        )

    return welcome_route
