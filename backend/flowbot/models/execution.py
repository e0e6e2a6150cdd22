# /flowbot/models/execution.py

from enum import Enum
from dataclasses import dataclass, field
from typing import Optional, List, Dict, Any, Callable, Awaitable, TypedDict
from pydantic import BaseModel, Field

from flowbot.config.settings import WhatsAppCredentials
from flowbot.models.conversation import CollectInput, ConversationState
from flowbot.models.flow import FlowGraph


class IncomingMessage(BaseModel):
    """The normalized inbound WhatsApp message that triggered a chatbot step."""
    type: str = "text"
    text: Optional[str] = None
    button_id: Optional[str] = None
    list_id: Optional[str] = None
    message_id: Optional[str] = None
    context_message_id: Optional[str] = None
    media_url: Optional[str] = None

    @property
    def reply_id(self) -> Optional[str]:
        return self.button_id or self.list_id


class InboundMessage(BaseModel):
    """An incoming message together with who sent it and to which business number."""
    contact_id: str
    contact_name: Optional[str] = None
    phone_number_id: Optional[str] = None
    message: IncomingMessage


class OutboundMessage(BaseModel):
    """
    Abstract message handed to the sender. `payload` is the Cloud API
    message body without `messaging_product` and `to`.
    """
    type: str
    payload: Dict[str, Any] = Field(default_factory=dict)


class SendResult(BaseModel):
    success: bool
    message_id: Optional[str] = None
    error_code: Optional[int] = None
    error_message: Optional[str] = None


class NodeValidation(TypedDict):
    """Result of a node executor's own configuration check."""
    valid: bool
    errors: List[str]
    warnings: List[str]


class ValidationIssue(BaseModel):
    node_id: Optional[str] = None
    message: str


class ValidationReport(BaseModel):
    valid: bool = True
    errors: List[ValidationIssue] = Field(default_factory=list)
    warnings: List[ValidationIssue] = Field(default_factory=list)


@dataclass
class NodeExecutionResult:
    """The only value a node executor hands back to the engine."""
    success: bool = True
    messages: List[OutboundMessage] = field(default_factory=list)
    next_node_id: Optional[str] = None
    collect_input: Optional[CollectInput] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    end_conversation: bool = False
    pause_execution: bool = False
    # Human takeover: the bot stops answering this contact.
    handoff: bool = False
    # The executor made the routing decision itself; a None next_node_id then
    # means "no branch", not "follow the default edge".
    routed: bool = False
    delay_ms: Optional[int] = None
    output: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def failure(cls, error: str, error_code: str = "NODE_CONFIG") -> "NodeExecutionResult":
        return cls(success=False, error=error, error_code=error_code)


SendCallable = Callable[[OutboundMessage], Awaitable[SendResult]]
SetVariableCallable = Callable[[str, str], None]
LogCallable = Callable[[str], None]


@dataclass
class ExecutionContext:
    """
    Per-step aggregate rebuilt from ConversationState + Flow on every step.
    Never persisted.
    """
    execution_id: str
    flow_id: str
    mode: str
    contact_phone: str
    graph: FlowGraph
    current_node_id: Optional[str]
    variables: Dict[str, str]
    credentials: Optional[WhatsAppCredentials] = None
    contact_name: Optional[str] = None
    previous_node_id: Optional[str] = None
    incoming_message: Optional[IncomingMessage] = None
    # Text of the message that started this pass; kept after the reply is consumed.
    last_message: Optional[str] = None
    conversation_history: List[Dict[str, str]] = field(default_factory=list)
    send_message: Optional[SendCallable] = None
    set_variable: Optional[SetVariableCallable] = None
    log: Optional[LogCallable] = None

    @property
    def reply_text(self) -> str:
        if not self.incoming_message:
            return ""
        return (self.incoming_message.text or "").strip()


class ExecutionStatus(str, Enum):
    ADVANCED = "advanced"
    AWAITING_INPUT = "awaiting_input"
    ENDED = "ended"
    PAUSED = "paused"
    SCHEDULED = "scheduled"
    HALTED_ERROR = "halted_error"
    NO_MATCH = "no_match"


@dataclass
class ExecutionOutcome:
    status: ExecutionStatus
    state: Optional[ConversationState] = None
    current_node_id: Optional[str] = None
    messages_sent: int = 0
    nodes_executed: int = 0
    error: Optional[str] = None
    error_category: Optional[str] = None
    skip_reason: Optional[str] = None
