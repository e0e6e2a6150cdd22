# /flowbot/routes/conversations.py

import structlog
from fastapi import APIRouter, Depends, HTTPException

from flowbot.config.settings import settings
from flowbot.models.api import APIResponse
from flowbot.services.flow_service import chatbot_executor
from flowbot.services.whatsapp_service import clean_phone
from flowbot.utils.dependencies import verify_api_key

router = APIRouter(
    prefix="/conversations",
    tags=["Conversations"],
    dependencies=[Depends(verify_api_key)]
)

log = structlog.get_logger(__name__)


def _state_data(state) -> dict:
    return {
        "flow_id": state.flow_id,
        "contact_id": state.contact_id,
        "status": state.status.value,
        "current_node_id": state.current_node_id,
    }


@router.post("/{contact_id}/takeover", response_model=APIResponse)
async def takeover_conversation(contact_id: str):
    """An operator takes over; the bot stops answering this contact."""
    state = await chatbot_executor.takeover(clean_phone(contact_id))
    if state is None:
        raise HTTPException(status_code=404, detail="No active conversation for this contact")
    log.info("Conversation taken over by operator", contact=state.contact_id, flow_id=state.flow_id)
    return APIResponse(success=True, message="Conversation paused", data=_state_data(state), version=settings.api_version)


@router.post("/{contact_id}/release", response_model=APIResponse)
async def release_conversation(contact_id: str):
    state = await chatbot_executor.release(clean_phone(contact_id))
    if state is None:
        raise HTTPException(status_code=404, detail="No paused conversation for this contact")
    log.info("Conversation released to the bot", contact=state.contact_id, flow_id=state.flow_id)
    return APIResponse(success=True, message="Conversation resumed", data=_state_data(state), version=settings.api_version)
