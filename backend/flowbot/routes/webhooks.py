# /flowbot/routes/webhooks.py

import json
import structlog
from datetime import datetime, timedelta, timezone
from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request, Query
from fastapi.responses import JSONResponse, PlainTextResponse
from pymongo.errors import ConnectionFailure

from flowbot.config.settings import settings
from flowbot.engine.errors import FlowEngineError
from flowbot.engine.modes.chatbot import INBOUND_JOB_KIND
from flowbot.models.execution import InboundMessage
from flowbot.services.cache_service import cache_service
from flowbot.services.flow_service import chatbot_executor
from flowbot.services.whatsapp_service import parse_inbound_messages
from flowbot.utils.dependencies import verify_webhook_signature
from flowbot.utils.metrics import response_time_histogram
from flowbot.utils.queue import RETRY_BASE_SECONDS, job_dispatcher
from flowbot.utils.rate_limiter import limiter

# WhatsApp Cloud API webhook. Inbound messages are acknowledged immediately
# and handed to the chatbot executor as background tasks.

router = APIRouter(
    tags=["Webhooks"]
)

log = structlog.get_logger(__name__)

DEDUP_TTL_SECONDS = 24 * 3600


async def retry_later(inbound: InboundMessage, error: Exception):
    """Hand a transiently failed message to the job dispatcher, which retries with backoff."""
    try:
        await job_dispatcher.enqueue(
            {"kind": INBOUND_JOB_KIND, "inbound": inbound.model_dump(mode="json")},
            not_before=datetime.now(timezone.utc) + timedelta(seconds=RETRY_BASE_SECONDS),
        )
        log.warning("Inbound message queued for retry", contact=inbound.contact_id, error=str(error))
    except Exception as e:
        # Let Meta's redelivery through instead.
        if inbound.message.message_id:
            await cache_service.delete(f"wamid:{inbound.message.message_id}")
        log.error("Could not queue inbound message for retry; released dedup key", contact=inbound.contact_id,
                  error=str(e), exc_info=True)


async def process_inbound_message(inbound: InboundMessage):
    """Runs after the 200 is sent, so failures are handled here and never reach Meta."""
    try:
        outcome = await chatbot_executor.handle_inbound(inbound)
        if outcome:
            log.info("Inbound message handled", contact=inbound.contact_id, status=outcome.status.value,
                     node=outcome.current_node_id)
    except FlowEngineError as e:
        if e.retryable:
            await retry_later(inbound, e)
            return
        log.error("Flow engine error while handling inbound message", contact=inbound.contact_id,
                  error_type=e.error_type, retryable=e.retryable, error=e.message)
    except ConnectionFailure as e:
        await retry_later(inbound, e)
    except Exception as e:
        log.error("Unexpected error while handling inbound message", contact=inbound.contact_id,
                  error=str(e), exc_info=True)


async def is_duplicate(message_id: str | None) -> bool:
    if not message_id:
        return False
    # None means the cache is down; process rather than drop.
    claimed = await cache_service.set_if_absent(f"wamid:{message_id}", "1", DEDUP_TTL_SECONDS)
    return claimed is False


@router.get("/whatsapp")
async def verify_whatsapp_webhook(
    hub_mode: str = Query(None, alias="hub.mode"),
    hub_verify_token: str = Query(None, alias="hub.verify_token"),
    hub_challenge: str = Query(None, alias="hub.challenge")
):
    """WhatsApp webhook verification (GET request)."""
    if hub_mode == "subscribe" and hub_verify_token == settings.whatsapp_verify_token:
        log.info("WhatsApp webhook verification successful.")
        return PlainTextResponse(hub_challenge)
    log.error("WhatsApp webhook verification failed.")
    raise HTTPException(status_code=403, detail="Forbidden")


@router.post("/whatsapp")
@limiter.limit(f"{settings.rate_limit_per_minute}/minute")
async def handle_whatsapp_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    verified_body: bytes = Depends(verify_webhook_signature)
):
    """Inbound messages; status updates are acknowledged and ignored."""
    with response_time_histogram.labels(endpoint="whatsapp_webhook").time():
        try:
            data = json.loads(verified_body.decode())
        except ValueError:
            log.warning("Webhook body is not valid JSON.")
            raise HTTPException(status_code=400, detail="Invalid JSON")

        queued = 0
        for inbound in parse_inbound_messages(data):
            if await is_duplicate(inbound.message.message_id):
                log.info("Duplicate webhook delivery dropped", message_id=inbound.message.message_id)
                continue
            background_tasks.add_task(process_inbound_message, inbound)
            queued += 1

        log.info("Webhook processing complete.", queued=queued)
        return JSONResponse({"status": "success", "queued": queued})
