# /flowbot/engine/state.py

import logging
import uuid
from typing import Callable, Dict, Optional

from pydantic import ValidationError

from flowbot.config.settings import settings
from flowbot.engine.errors import FlowEngineError, StateConflictError
from flowbot.models.conversation import ConversationState, ConversationStatus
from flowbot.models.flow import utcnow

logger = logging.getLogger(__name__)

# Attempts for read-modify-write helpers before a conflict is surfaced.
MAX_UPDATE_ATTEMPTS = 3


def state_cache_key(flow_id: str, contact_id: str) -> str:
    return f"flow_state:{flow_id}:{contact_id}"


class StateManager:
    """
    Two-tier conversation state store.

    Reads try the Redis cache first and fall back to MongoDB, repopulating
    the cache. Writes go to MongoDB synchronously (compare-and-set on
    `version` when an expected version is given) and then to the cache on a
    best-effort basis. A cache outage only costs latency.
    """

    def __init__(self, store, cache, cache_ttl: Optional[int] = None):
        self.store = store
        self.cache = cache
        self.cache_ttl = cache_ttl or settings.state_cache_ttl

    async def _cache_put(self, state: ConversationState):
        await self.cache.set_json(state_cache_key(state.flow_id, state.contact_id), state.model_dump(mode="json"), self.cache_ttl)

    async def get(self, flow_id: str, contact_id: str) -> Optional[ConversationState]:
        key = state_cache_key(flow_id, contact_id)
        cached = await self.cache.get_json(key)
        if cached is not None:
            try:
                return ConversationState.model_validate(cached)
            except ValidationError as e:
                logger.warning(f"Discarding malformed cached state {key}: {e}")
                await self.cache.delete(key)

        state = await self.store.get_conversation_state(flow_id, contact_id)
        if state is not None:
            await self._cache_put(state)
        return state

    async def set(self, flow_id: str, contact_id: str, state: ConversationState,
                  expected_version: Optional[int] = None) -> ConversationState:
        if (state.flow_id, state.contact_id) != (flow_id, contact_id):
            raise ValueError(f"State belongs to ({state.flow_id}, {state.contact_id}), not ({flow_id}, {contact_id})")

        state.last_activity_at = utcnow()
        new_version = await self.store.save_conversation_state(state, expected_version)
        if new_version is None:
            await self.cache.delete(state_cache_key(flow_id, contact_id))
            raise StateConflictError(flow_id, contact_id, expected_version)

        state.version = new_version
        await self._cache_put(state)
        return state

    async def delete(self, flow_id: str, contact_id: str):
        await self.store.delete_conversation_state(flow_id, contact_id)
        await self.cache.delete(state_cache_key(flow_id, contact_id))

    async def _update(self, flow_id: str, contact_id: str, mutate: Callable[[ConversationState], None]) -> ConversationState:
        for attempt in range(1, MAX_UPDATE_ATTEMPTS + 1):
            state = await self.get(flow_id, contact_id)
            if state is None:
                raise FlowEngineError(FlowEngineError.EXECUTION_NOT_FOUND, f"No conversation state for {contact_id} in flow {flow_id}")
            mutate(state)
            try:
                return await self.set(flow_id, contact_id, state, expected_version=state.version)
            except StateConflictError:
                if attempt == MAX_UPDATE_ATTEMPTS:
                    raise
                logger.info(f"State conflict updating {contact_id} in flow {flow_id}, retrying ({attempt}/{MAX_UPDATE_ATTEMPTS})")

    async def get_variables(self, flow_id: str, contact_id: str) -> Dict[str, str]:
        state = await self.get(flow_id, contact_id)
        return dict(state.variables) if state else {}

    async def set_variable(self, flow_id: str, contact_id: str, name: str, value: str) -> ConversationState:
        def apply(state: ConversationState):
            state.variables[name] = str(value)
        return await self._update(flow_id, contact_id, apply)

    async def get_or_create(self, flow_id: str, contact_id: str, contact_name: Optional[str],
                            start_node_id: Optional[str], mode: str = "chatbot") -> ConversationState:
        existing = await self.get(flow_id, contact_id)
        if existing is not None and existing.status != ConversationStatus.ENDED:
            return existing

        state = ConversationState(
            flow_id=flow_id,
            contact_id=contact_id,
            contact_name=contact_name,
            execution_id=str(uuid.uuid4()),
            mode=mode,
            current_node_id=start_node_id,
            version=existing.version if existing else 0,
        )
        return await self.set(flow_id, contact_id, state, expected_version=state.version)

    async def find_active(self, contact_id: str) -> Optional[ConversationState]:
        return await self.store.find_active_conversation_state(contact_id)

    async def end(self, flow_id: str, contact_id: str) -> ConversationState:
        def apply(state: ConversationState):
            state.status = ConversationStatus.ENDED
            state.awaiting_input = False
            state.collect_input = None
        return await self._update(flow_id, contact_id, apply)

    async def reset(self, flow_id: str, contact_id: str):
        await self.delete(flow_id, contact_id)

    async def pause(self, flow_id: str, contact_id: str) -> ConversationState:
        """Operator takeover: the bot ignores the contact until `resume`."""
        def apply(state: ConversationState):
            state.status = ConversationStatus.PAUSED
        return await self._update(flow_id, contact_id, apply)

    async def resume(self, flow_id: str, contact_id: str) -> ConversationState:
        def apply(state: ConversationState):
            state.status = ConversationStatus.ACTIVE
        return await self._update(flow_id, contact_id, apply)
