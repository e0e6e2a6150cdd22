# /flowbot/engine/modes/chatbot.py

import logging
import re
import unicodedata
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

from flowbot.config.settings import Settings, WhatsAppCredentials, settings as default_settings
from flowbot.engine.errors import StateConflictError
from flowbot.engine.executor import FlowExecutor
from flowbot.models.conversation import ConversationState, ConversationStatus
from flowbot.models.execution import ExecutionOutcome, InboundMessage
from flowbot.models.flow import Flow, FlowMode, utcnow

logger = logging.getLogger(__name__)

ANY_MESSAGE = "any_message"
INBOUND_JOB_KIND = "inbound_message"


def normalize_text(text: Optional[str]) -> str:
    """`Olá, Mundo!` -> `ola_mundo`: lowercase, accents stripped, non-alphanumerics collapsed to `_`."""
    text = unicodedata.normalize("NFD", (text or "").lower())
    text = "".join(char for char in text if unicodedata.category(char) != "Mn")
    text = re.sub(r"[^a-z0-9]+", "_", text)
    return text.strip("_")


def trigger_for(flow: Flow) -> Dict[str, Any]:
    if flow.trigger:
        return flow.trigger
    start = flow.graph.start_node()
    if start and isinstance(start.data.get("trigger"), dict):
        return start.data["trigger"]
    return {"type": ANY_MESSAGE}


def _keywords(trigger: Dict[str, Any]) -> List[str]:
    keywords = trigger.get("keywords") or trigger.get("value") or []
    if isinstance(keywords, str):
        keywords = keywords.split(",")
    return [keyword for keyword in (str(k).strip() for k in keywords) if keyword]


def trigger_matches(trigger: Dict[str, Any], text: Optional[str]) -> bool:
    trigger_type = trigger.get("type", ANY_MESSAGE)
    if trigger_type == ANY_MESSAGE:
        return True
    if not text:
        return False

    if trigger_type == "regex":
        pattern = trigger.get("pattern") or trigger.get("value") or ""
        flags = 0 if trigger.get("case_sensitive") or trigger.get("caseSensitive") else re.IGNORECASE
        try:
            return re.search(pattern, text, flags) is not None
        except re.error as e:
            logger.warning(f"Ignoring invalid trigger regex {pattern!r}: {e}")
            return False

    if trigger_type == "exact":
        return any(text.strip().lower() == keyword.lower() for keyword in _keywords(trigger))

    normalized = normalize_text(text)
    keywords = [normalize_text(keyword) for keyword in _keywords(trigger)]
    keywords = [keyword for keyword in keywords if keyword]
    if trigger_type == "keyword":
        return normalized in keywords
    if trigger_type == "starts_with":
        return any(normalized.startswith(keyword) for keyword in keywords)
    if trigger_type == "contains":
        return any(keyword in normalized for keyword in keywords)
    return False


def select_flow(flows: Iterable[Flow], text: Optional[str]) -> Optional[Flow]:
    """Specific triggers win over catch-all flows; the first match of each kind is used."""
    catch_all = None
    for flow in flows:
        trigger = trigger_for(flow)
        if trigger.get("type", ANY_MESSAGE) == ANY_MESSAGE:
            catch_all = catch_all or flow
            continue
        if trigger_matches(trigger, text):
            return flow
    return catch_all


class ChatbotExecutor:
    """Routes inbound WhatsApp messages to the contact's conversation, starting one when a trigger matches."""

    def __init__(self, engine: FlowExecutor, store, lock, settings: Optional[Settings] = None):
        self.engine = engine
        self.state_manager = engine.state_manager
        self.store = store
        self.lock = lock
        self.settings = settings or default_settings

    async def handle_inbound(self, inbound: InboundMessage,
                             credentials: Optional[WhatsAppCredentials] = None) -> Optional[ExecutionOutcome]:
        credentials = credentials or self.settings.credentials_for(inbound.phone_number_id)
        contact = inbound.contact_id

        async with self.lock.hold(contact):
            state = await self.state_manager.find_active(contact)

            if state and state.is_expired(self.settings.session_timeout_minutes):
                logger.info(f"Session for {contact} in flow {state.flow_id} expired; starting over")
                await self.state_manager.reset(state.flow_id, contact)
                state = None

            if state and state.status == ConversationStatus.PAUSED:
                logger.info(f"Conversation with {contact} is with a human operator; bot stays silent")
                return None

            if state:
                if not state.awaiting_input:
                    logger.info(f"Conversation with {contact} is mid-flow at {state.current_node_id}; message ignored")
                    return None
                flow = await self.store.get_flow(state.flow_id)
                if flow is None:
                    logger.warning(f"Flow {state.flow_id} for {contact} no longer exists; resetting the conversation")
                    await self.state_manager.reset(state.flow_id, contact)
                else:
                    state.mode = FlowMode.CHATBOT.value
                    return await self.engine.run(flow, state, inbound.message, credentials)

            flow = select_flow(await self.store.list_active_chatbot_flows(), inbound.message.text)
            if flow is None:
                logger.info(f"No chatbot flow matches the message from {contact}")
                return None

            start = flow.graph.start_node()
            state = await self.state_manager.get_or_create(
                flow.id, contact, inbound.contact_name, start.id if start else None, mode=FlowMode.CHATBOT.value
            )
            logger.info(f"Starting flow {flow.id} for {contact}")
            return await self.engine.run(flow, state, inbound.message, credentials)

    async def handle_inbound_job(self, data: Dict[str, Any]):
        """Dispatcher handler for inbound messages whose first attempt hit a transient failure."""
        await self.handle_inbound(InboundMessage.model_validate(data["inbound"]))

    async def handle_resume_job(self, data: Dict[str, Any]):
        """Dispatcher handler for flows parked on a long delay."""
        flow_id, contact = data["flow_id"], data["contact_id"]
        async with self.lock.hold(contact):
            state = await self.state_manager.get(flow_id, contact)
            if (
                state is None
                or state.status != ConversationStatus.ACTIVE
                or state.awaiting_input
                or state.execution_id != data.get("execution_id")
                or state.current_node_id != data.get("node_id")
            ):
                logger.info(f"Resume of flow {flow_id} for {contact} is stale; skipping")
                return
            flow = await self.store.get_flow(flow_id)
            if flow is None:
                logger.warning(f"Cannot resume flow {flow_id} for {contact}: flow not found")
                return
            await self.engine.run(flow, state, None, self.settings.credentials_for(data.get("phone_number_id")))

    async def takeover(self, contact_id: str) -> Optional[ConversationState]:
        """Operator takes the conversation; the bot ignores the contact until `release`."""
        async with self.lock.hold(contact_id):
            state = await self.state_manager.find_active(contact_id)
            if state is None:
                return None
            return await self.state_manager.pause(state.flow_id, contact_id)

    async def release(self, contact_id: str) -> Optional[ConversationState]:
        async with self.lock.hold(contact_id):
            state = await self.state_manager.find_active(contact_id)
            if state is None or state.status != ConversationStatus.PAUSED:
                return None
            return await self.state_manager.resume(state.flow_id, contact_id)

    async def sweep_idle_sessions(self, now: Optional[datetime] = None) -> int:
        """End every live conversation idle for longer than the session timeout."""
        now = now or utcnow()
        cutoff = now - timedelta(minutes=self.settings.session_timeout_minutes)
        ended = 0
        for state in await self.store.find_idle_conversation_states(cutoff):
            try:
                await self.state_manager.end(state.flow_id, state.contact_id)
                ended += 1
            except StateConflictError:
                # Touched concurrently, so no longer idle.
                logger.debug(f"Skipping idle sweep of {state.contact_id} in flow {state.flow_id}: state changed")
        if ended:
            logger.info(f"Ended {ended} idle conversations (idle since before {cutoff.isoformat()})")
        return ended
