# /flowbot/models/conversation.py

from enum import Enum
from datetime import datetime, timedelta
from typing import Optional, List, Dict
from pydantic import BaseModel, Field, ConfigDict

from flowbot.models.flow import utcnow


class ConversationStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    ENDED = "ended"


class CollectInput(BaseModel):
    """Directive from a node that expects the contact's next reply."""
    variable_name: Optional[str] = None
    validation_type: Optional[str] = None


class HistoryEntry(BaseModel):
    role: str = Field(..., description="'user' or 'assistant'")
    content: str


class ConversationState(BaseModel):
    """
    Persisted pointer + variable snapshot for one contact inside one flow.

    Stored in the `conversation_states` collection keyed by (flow_id, contact_id)
    and mirrored in Redis. `version` is bumped on every durable write and used
    as a compare-and-set guard so that two workers stepping the same
    conversation cannot both persist.
    """
    flow_id: str
    contact_id: str = Field(..., description="Contact phone number (E.164 digits)")
    contact_name: Optional[str] = None
    execution_id: str
    mode: str = "chatbot"
    current_node_id: Optional[str] = None
    previous_node_id: Optional[str] = None
    variables: Dict[str, str] = Field(default_factory=dict)
    status: ConversationStatus = ConversationStatus.ACTIVE
    awaiting_input: bool = False
    collect_input: Optional[CollectInput] = None
    conversation_history: List[HistoryEntry] = Field(default_factory=list)
    version: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    last_activity_at: datetime = Field(default_factory=utcnow)

    model_config = ConfigDict(populate_by_name=True)

    def is_expired(self, timeout_minutes: int, now: Optional[datetime] = None) -> bool:
        now = now or utcnow()
        last = self.last_activity_at
        if last.tzinfo is None:
            last = last.replace(tzinfo=now.tzinfo)
        return now - last > timedelta(minutes=timeout_minutes)

    def remember(self, role: str, content: str, limit: int):
        if not content:
            return
        self.conversation_history.append(HistoryEntry(role=role, content=content))
        if len(self.conversation_history) > limit:
            self.conversation_history = self.conversation_history[-limit:]
