# /app/routes/flows.py

import logging
from typing import Any, Dict

from fastapi import APIRouter, Body, Depends, HTTPException

from app.config.settings import settings
from app.models.api import APIResponse, FlowSummary, FlowValidationResponse
from app.models.flow import FlowDefinition
from app.services.flow_catalog import FlowCatalog
from app.services.tool_service import ToolService
from app.utils.dependencies import get_catalog, get_tool_service, verify_api_key
from app.workflows.schema import validate_flow_payload

# This file defines the flow administration endpoints: listing, validating and
# publishing flow definitions, reloading the catalog cache and listing tools.

logger = logging.getLogger(__name__)

router = APIRouter(
    tags=["Flows"],
    dependencies=[Depends(verify_api_key)]
)


def _summary(flow: FlowDefinition) -> Dict[str, Any]:
    return FlowSummary(
        slug=flow.slug,
        name=flow.name,
        description=flow.description,
        version=flow.version,
        initial_stage=flow.initial_stage,
        default_for_new_users=flow.config.default_for_new_users,
        stages=list(flow.stages),
    ).model_dump()


@router.get("/flows", response_model=APIResponse)
async def list_flows(catalog: FlowCatalog = Depends(get_catalog)):
    flows = await catalog.all()
    return APIResponse(
        success=True,
        message=f"Retrieved {len(flows)} flows",
        data={"flows": [_summary(flow) for flow in flows]},
        version=settings.api_version
    )


@router.get("/flows/{slug}", response_model=APIResponse)
async def get_flow(slug: str, catalog: FlowCatalog = Depends(get_catalog)):
    flow = await catalog.get(slug)
    if flow is None:
        raise HTTPException(status_code=404, detail=f"Flow '{slug}' not found")
    return APIResponse(
        success=True,
        message="Flow retrieved",
        data={"flow": flow.to_document()},
        version=settings.api_version
    )


@router.post("/flows/validate", response_model=APIResponse)
async def validate_flow(
    payload: Dict[str, Any] = Body(...),
    tools: ToolService = Depends(get_tool_service),
):
    """Validate a flow document without saving it."""
    result = validate_flow_payload(payload, tools.tool_names())
    return APIResponse(
        success=result["is_valid"],
        message="Flow is valid" if result["is_valid"] else "Flow is invalid",
        data=FlowValidationResponse(is_valid=result["is_valid"], errors=result["errors"]).model_dump(),
        version=settings.api_version
    )


@router.put("/flows/{slug}", response_model=APIResponse)
async def upsert_flow(
    slug: str,
    payload: Dict[str, Any] = Body(...),
    catalog: FlowCatalog = Depends(get_catalog),
    tools: ToolService = Depends(get_tool_service),
):
    """Validate and publish a flow. The slug in the path wins over the body."""
    result = validate_flow_payload({**payload, "slug": slug}, tools.tool_names())
    if not result["is_valid"]:
        raise HTTPException(status_code=422, detail={"message": "Flow is invalid", "errors": result["errors"]})

    flow = result["flow"]
    on_complete = flow.config.on_complete
    if on_complete and await catalog.get(on_complete.start_flow_slug) is None:
        raise HTTPException(
            status_code=422,
            detail={"message": "Flow is invalid", "errors": [
                f"definition.config.onComplete.startFlowSlug: flow '{on_complete.start_flow_slug}' does not exist"
            ]},
        )

    await catalog.save(flow)
    logger.info(f"Flow '{slug}' published (version {flow.version})")
    return APIResponse(
        success=True,
        message=f"Flow '{slug}' saved",
        data={"flow": _summary(flow)},
        version=settings.api_version
    )


@router.post("/flows/reload", response_model=APIResponse)
async def reload_flows(catalog: FlowCatalog = Depends(get_catalog)):
    count = await catalog.reload()
    return APIResponse(
        success=True,
        message=f"Reloaded {count} flows",
        data={"count": count},
        version=settings.api_version
    )


@router.get("/tools", response_model=APIResponse)
async def list_tools(tools: ToolService = Depends(get_tool_service)):
    return APIResponse(
        success=True,
        message="Registered tools retrieved",
        data={"tools": tools.registered_tools()},
        version=settings.api_version
    )
