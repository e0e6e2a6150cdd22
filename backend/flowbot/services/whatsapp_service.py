# /flowbot/services/whatsapp_service.py

import httpx
import logging
import re
import tenacity
from typing import Any, Dict, List, Optional

from flowbot.config.settings import settings, WhatsAppCredentials
from flowbot.models.execution import IncomingMessage, InboundMessage, OutboundMessage, SendResult
from flowbot.utils.circuit_breaker import CircuitBreaker
from flowbot.utils.metrics import message_counter

logger = logging.getLogger(__name__)


def clean_phone(phone: str) -> str:
    return re.sub(r"\D", "", phone or "")


class WhatsAppService:
    """
    Message sender for the WhatsApp Cloud API. `send` never raises: API
    errors come back as a failed SendResult carrying Meta's error code, and
    network failures (after retries) as a failed SendResult without one, so
    the engine's error classifier can decide what to do.
    """

    def __init__(self, api_version: str):
        self.http_client = httpx.AsyncClient(timeout=15.0)
        self.base_url = f"https://graph.facebook.com/{api_version}"
        self.circuit_breaker = CircuitBreaker("whatsapp")

    @tenacity.retry(
        retry=tenacity.retry_if_exception_type((httpx.RequestError, httpx.TimeoutException)),
        stop=tenacity.stop_after_attempt(3),
        wait=tenacity.wait_exponential(multiplier=2, min=1, max=10),
        before_sleep=tenacity.before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
    async def resilient_api_call(self, func, *args, **kwargs):
        return await self.circuit_breaker.call(func, *args, **kwargs)

    def build_payload(self, to: str, message: OutboundMessage) -> dict:
        payload = {"messaging_product": "whatsapp", "recipient_type": "individual", "to": clean_phone(to)}
        payload.update(message.payload)
        payload.setdefault("type", message.type)
        return payload

    async def send(self, to: str, message: OutboundMessage, credentials: WhatsAppCredentials) -> SendResult:
        if not clean_phone(to):
            logger.error(f"whatsapp_send_invalid_phone: {to!r}")
            return SendResult(success=False, error_code=131026, error_message="Invalid recipient phone number")

        url = f"{self.base_url}/{credentials.phone_number_id}/messages"
        headers = {"Authorization": f"Bearer {credentials.access_token}", "Content-Type": "application/json"}
        try:
            response = await self.resilient_api_call(self.http_client.post, url, json=self.build_payload(to, message), headers=headers)
        except Exception as e:
            message_counter.labels(status="network_error", message_type=message.type).inc()
            logger.error(f"whatsapp_send_error to {to}: {e}")
            return SendResult(success=False, error_message=str(e))

        try:
            response_data = response.json()
        except ValueError:
            response_data = {}

        if response.status_code == 200:
            message_id = (response_data.get("messages") or [{}])[0].get("id")
            message_counter.labels(status="success", message_type=message.type).inc()
            logger.info(f"WhatsApp {message.type} message sent to {to}, wamid: {message_id}")
            return SendResult(success=True, message_id=message_id)

        error = response_data.get("error") or {}
        error_code = error.get("code")
        error_message = error.get("message") or f"HTTP {response.status_code}"
        if isinstance(error.get("error_data"), dict) and error["error_data"].get("details"):
            error_message = f"{error_message}: {error['error_data']['details']}"
        message_counter.labels(status="failed", message_type=message.type).inc()
        logger.error(f"whatsapp_send_failed to {to}: {response.status_code} - {error_code} {error_message}")
        return SendResult(
            success=False,
            error_code=int(error_code) if error_code is not None else None,
            error_message=error_message,
        )

    async def close(self):
        await self.http_client.aclose()


def _incoming_message(message: Dict[str, Any]) -> IncomingMessage:
    message_type = message.get("type", "text")
    incoming = IncomingMessage(
        type=message_type,
        message_id=message.get("id"),
        context_message_id=(message.get("context") or {}).get("id"),
    )
    if message_type == "text":
        incoming.text = (message.get("text") or {}).get("body")
    elif message_type == "interactive":
        interactive = message.get("interactive") or {}
        if interactive.get("type") == "button_reply":
            reply = interactive.get("button_reply") or {}
            incoming.button_id, incoming.text = reply.get("id"), reply.get("title")
        elif interactive.get("type") == "list_reply":
            reply = interactive.get("list_reply") or {}
            incoming.list_id, incoming.text = reply.get("id"), reply.get("title")
    elif message_type == "button":
        # Template quick-reply buttons
        button = message.get("button") or {}
        incoming.button_id, incoming.text = button.get("payload"), button.get("text")
    elif message_type in ("image", "video", "audio", "document", "sticker"):
        media = message.get(message_type) or {}
        incoming.text = media.get("caption")
        incoming.media_url = media.get("link") or media.get("id")
    elif message_type == "location":
        location = message.get("location") or {}
        incoming.text = f"{location.get('latitude')},{location.get('longitude')}"
    return incoming


def parse_inbound_messages(payload: Dict[str, Any]) -> List[InboundMessage]:
    """Flatten a Cloud API webhook body into inbound messages. Status updates are ignored."""
    inbound = []
    for entry in payload.get("entry", []):
        for change in entry.get("changes", []):
            if change.get("field") != "messages":
                continue
            value = change.get("value", {})
            phone_number_id = (value.get("metadata") or {}).get("phone_number_id")
            names = {
                contact.get("wa_id"): (contact.get("profile") or {}).get("name")
                for contact in value.get("contacts", [])
            }
            for message in value.get("messages", []):
                sender = clean_phone(message.get("from", ""))
                if not sender:
                    continue
                inbound.append(InboundMessage(
                    contact_id=sender,
                    contact_name=names.get(message.get("from")),
                    phone_number_id=phone_number_id,
                    message=_incoming_message(message),
                ))
    return inbound


# Globally accessible instance
whatsapp_service = WhatsAppService(settings.whatsapp_api_version)
