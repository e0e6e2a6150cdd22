# /flowbot/routes/campaigns.py

import structlog
from fastapi import APIRouter, Depends, HTTPException

from flowbot.config.settings import settings
from flowbot.models.api import APIResponse
from flowbot.services.db_service import db_service
from flowbot.services.flow_service import campaign_executor
from flowbot.utils.dependencies import verify_api_key

router = APIRouter(
    prefix="/campaigns",
    tags=["Campaigns"],
    dependencies=[Depends(verify_api_key)]
)

log = structlog.get_logger(__name__)


@router.get("/{execution_id}", response_model=APIResponse)
async def get_campaign(execution_id: str):
    execution = await db_service.get_campaign_execution(execution_id)
    if execution is None:
        raise HTTPException(status_code=404, detail="Campaign not found")
    return APIResponse(
        success=True,
        message="Campaign retrieved",
        data=execution.model_dump(mode="json"),
        version=settings.api_version,
    )


@router.post("/{execution_id}/cancel", response_model=APIResponse)
async def cancel_campaign(execution_id: str):
    if not await campaign_executor.cancel(execution_id):
        raise HTTPException(status_code=409, detail="Campaign not found or no longer running")
    log.info("Campaign cancelled", execution_id=execution_id)
    return APIResponse(success=True, message="Campaign cancelled", version=settings.api_version)
