# /flowbot/routes/flows.py

import structlog
from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from flowbot.config.settings import settings
from flowbot.engine.errors import FlowEngineError
from flowbot.engine.validator import validate_flow
from flowbot.models.api import APIResponse, StartCampaignRequest, ValidateFlowRequest
from flowbot.models.flow import Flow, FlowMode
from flowbot.services.db_service import db_service
from flowbot.services.flow_service import campaign_executor, node_registry
from flowbot.utils.dependencies import verify_api_key

router = APIRouter(
    prefix="/flows",
    tags=["Flows"],
    dependencies=[Depends(verify_api_key)]
)

log = structlog.get_logger(__name__)


@router.post("/validate")
async def validate_flow_definition(request: ValidateFlowRequest):
    """Validate an unsaved flow definition and return the report."""
    try:
        flow = Flow(id="draft", nodes=request.nodes, edges=request.edges)
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=e.errors(include_url=False))
    report = validate_flow(flow, node_registry, treat_delay_as_break_point=request.treat_delay_as_break_point)
    return report.model_dump()


@router.post("/{flow_id}/publish", response_model=APIResponse)
async def publish_flow(flow_id: str):
    flow = await db_service.get_flow(flow_id)
    if flow is None:
        raise HTTPException(status_code=404, detail="Flow not found")

    report = validate_flow(flow, node_registry)
    if not report.valid:
        log.warning("Flow publish rejected", flow_id=flow_id, errors=len(report.errors))
        return JSONResponse(status_code=422, content={"detail": "Flow has validation errors", "report": report.model_dump()})

    published = await db_service.publish_flow(flow_id)
    log.info("Flow published", flow_id=flow_id, version=published.version if published else None)
    return APIResponse(
        success=True,
        message="Flow published",
        data={"flow_id": flow_id, "report": report.model_dump()},
        version=settings.api_version,
    )


@router.post("/{flow_id}/campaigns", response_model=APIResponse, status_code=202)
async def start_campaign(flow_id: str, request: StartCampaignRequest):
    flow = await db_service.get_flow(flow_id)
    if flow is None:
        raise HTTPException(status_code=404, detail="Flow not found")
    if flow.mode != FlowMode.CAMPAIGN:
        raise HTTPException(status_code=400, detail="Flow is not a campaign flow")

    try:
        execution = await campaign_executor.start(
            flow,
            request.contacts,
            credentials=settings.credentials_for(request.phone_number_id),
            batch_size=request.batch_size,
            rate_limit_ms=request.rate_limit_ms,
        )
    except FlowEngineError as e:
        log.warning("Campaign start rejected", flow_id=flow_id, error_type=e.error_type, error=e.message)
        raise HTTPException(status_code=422 if e.error_type == FlowEngineError.VALIDATION_ERROR else 400, detail=e.message)

    log.info("Campaign started", flow_id=flow_id, execution_id=execution.id, contacts=execution.total_contacts)
    return APIResponse(
        success=True,
        message="Campaign started",
        data=execution.model_dump(mode="json"),
        version=settings.api_version,
    )
