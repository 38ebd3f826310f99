# /convoflow/routes/flows.py

import structlog
from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException

from convoflow.config.settings import settings
from convoflow.dependencies.tenant import get_tenant_id
from convoflow.flows.errors import FlowDefinitionError
from convoflow.flows.validator import validate_flow_definition, validate_node_payloads
from convoflow.models.api import (
    APIResponse,
    CreateFlowRequest,
    ExecuteFlowRequest,
    FlowValidationResponse,
    UpdateFlowRequest,
    ValidateFlowRequest,
)
from convoflow.models.conversation import ChatbotFlow
from convoflow.models.flow import FlowDefinition
from convoflow.services.db_service import db_service
from convoflow.services.flow_service import build_engine

# Flow endpoints used by the editor and by agents: CRUD, validation,
# publishing, manual execution and resetting a conversation's flow position.

router = APIRouter(
    prefix="/flows",
    tags=["Flows"]
)

log = structlog.get_logger(__name__)


def _validate(definition) -> FlowValidationResponse:
    result = validate_flow_definition(definition)
    warnings = []
    if result["is_valid"]:
        try:
            warnings = validate_node_payloads(FlowDefinition.parse(definition))
        except FlowDefinitionError:
            warnings = []
    return FlowValidationResponse(**result, warnings=warnings)


def _check_storable(definition: Dict[str, Any]) -> None:
    """Drafts may hold unfinished graphs, but every node must parse."""
    try:
        FlowDefinition.parse(definition)
    except FlowDefinitionError as e:
        raise HTTPException(status_code=422, detail=str(e))


def _flow_response(message: str, flow: ChatbotFlow) -> APIResponse:
    return APIResponse(
        success=True,
        message=message,
        data=flow.model_dump(mode="json", exclude={"deleted_at"}),
        version=settings.api_version
    )


@router.get("", response_model=APIResponse)
async def list_flows(tenant_id: str = Depends(get_tenant_id)):
    flows = await db_service.list_flows(tenant_id)
    return APIResponse(
        success=True,
        message=f"{len(flows)} flow(s).",
        data={"flows": [flow.model_dump(mode="json", exclude={"deleted_at"}) for flow in flows]},
        version=settings.api_version
    )


@router.post("", response_model=APIResponse, status_code=201)
async def create_flow(body: CreateFlowRequest, tenant_id: str = Depends(get_tenant_id)):
    _check_storable(body.definition)
    flow = await db_service.create_flow(tenant_id, body.model_dump())
    log.info("Flow created.", tenant_id=tenant_id, flow_id=flow.id)
    return _flow_response("Flow created.", flow)


@router.post("/validate", response_model=FlowValidationResponse)
async def validate_flow(body: ValidateFlowRequest, tenant_id: str = Depends(get_tenant_id)):
    """Checks a definition without storing it."""
    return _validate(body.definition)


@router.get("/{flow_id}", response_model=APIResponse)
async def get_flow(flow_id: str, tenant_id: str = Depends(get_tenant_id)):
    flow = await db_service.get_flow(tenant_id, flow_id)
    if flow is None:
        raise HTTPException(status_code=404, detail="Flow not found")
    return _flow_response("Flow found.", flow)


@router.patch("/{flow_id}", response_model=APIResponse)
async def update_flow(flow_id: str, body: UpdateFlowRequest, tenant_id: str = Depends(get_tenant_id)):
    # description and trigger_type may be cleared; the other fields are never null.
    fields = {
        key: value for key, value in body.model_dump(exclude_unset=True).items()
        if value is not None or key in ("description", "trigger_type")
    }
    if "definition" in fields:
        _check_storable(fields["definition"])

    if fields:
        flow = await db_service.update_flow(tenant_id, flow_id, fields)
    else:
        flow = await db_service.get_flow(tenant_id, flow_id)
    if flow is None:
        raise HTTPException(status_code=404, detail="Flow not found")
    log.info("Flow updated.", tenant_id=tenant_id, flow_id=flow_id, fields=sorted(fields))
    return _flow_response("Flow updated.", flow)


@router.delete("/{flow_id}", response_model=APIResponse)
async def delete_flow(flow_id: str, tenant_id: str = Depends(get_tenant_id)):
    if not await db_service.delete_flow(tenant_id, flow_id):
        raise HTTPException(status_code=404, detail="Flow not found")
    log.info("Flow deleted.", tenant_id=tenant_id, flow_id=flow_id)
    return APIResponse(
        success=True,
        message="Flow deleted.",
        data={"flow_id": flow_id},
        version=settings.api_version
    )


@router.post("/{flow_id}/publish", response_model=APIResponse)
async def publish_flow(flow_id: str, tenant_id: str = Depends(get_tenant_id)):
    flow = await db_service.get_flow(tenant_id, flow_id)
    if flow is None:
        raise HTTPException(status_code=404, detail="Flow not found")

    validation = _validate(flow.definition)
    if not validation.is_valid:
        log.warning("Flow publish rejected.", flow_id=flow_id, error_code=validation.error_code)
        raise HTTPException(status_code=422, detail=validation.model_dump())

    await db_service.publish_flow(tenant_id, flow_id)
    log.info("Flow published.", tenant_id=tenant_id, flow_id=flow_id)
    return APIResponse(
        success=True,
        message="Flow published.",
        data={"flow_id": flow_id, "warnings": validation.warnings},
        version=settings.api_version
    )


@router.post("/{flow_id}/execute", response_model=APIResponse)
async def execute_flow(flow_id: str, body: ExecuteFlowRequest, tenant_id: str = Depends(get_tenant_id)):
    """Runs a published flow for a conversation, e.g. when an agent hands over to the bot."""
    channel = await db_service.get_active_channel(tenant_id)
    engine = build_engine(tenant_id, channel)
    outcome = await engine.execute_flow(body.conversation_id, flow_id, body.message)
    return APIResponse(
        success=True,
        message="Flow execution triggered.",
        data={"flow_id": flow_id, "conversation_id": body.conversation_id, "outcome": outcome},
        version=settings.api_version
    )


@router.post("/conversations/{conversation_id}/reset", response_model=APIResponse)
async def reset_conversation_flow(conversation_id: str, tenant_id: str = Depends(get_tenant_id)):
    if not await db_service.reset_flow_state(tenant_id, conversation_id):
        raise HTTPException(status_code=404, detail="Conversation not found")
    log.info("Conversation flow state reset.", tenant_id=tenant_id, conversation_id=conversation_id)
    return APIResponse(
        success=True,
        message="Conversation flow state reset.",
        data={"conversation_id": conversation_id},
        version=settings.api_version
    )
