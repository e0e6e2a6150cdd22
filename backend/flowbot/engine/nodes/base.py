# /flowbot/engine/nodes/base.py

"""
Contract every node type implements, plus the helpers executors share.

An executor is a pure function of (ExecutionContext, FlowNode): it reads the
node's data, substitutes variables, and returns a NodeExecutionResult with
the messages to send and where to go next. Executors never touch storage and
never raise for configuration problems; they return a failed result instead.
"""

import re
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Optional

from flowbot.config.settings import settings
from flowbot.engine.variables import SystemContext, resolve, resolve_mapping
from flowbot.models.execution import ExecutionContext, NodeExecutionResult, NodeValidation, OutboundMessage
from flowbot.models.flow import FlowEdge, FlowGraph, FlowNode

URL_PATTERN = re.compile(r"^https?://[^\s/$.?#][^\s]*$", re.IGNORECASE)

# Provider limits shared by several node types
MAX_TEXT_LENGTH = 4096
MAX_CAPTION_LENGTH = 1024
MAX_BUTTONS = 3
MAX_BUTTON_TITLE = 20
MAX_HEADER_LENGTH = 60
MAX_FOOTER_LENGTH = 60


def coalesce(data: Dict[str, Any], *keys: str, default: Any = None) -> Any:
    """First non-empty value among alias keys (e.g. `text` / `body`)."""
    for key in keys:
        value = data.get(key)
        if value is not None and value != "":
            return value
    return default


def validation_result(errors: Optional[List[str]] = None, warnings: Optional[List[str]] = None) -> NodeValidation:
    errors = errors or []
    return {"valid": not errors, "errors": errors, "warnings": warnings or []}


def is_valid_url(url: Optional[str]) -> bool:
    return bool(url) and URL_PATTERN.match(url) is not None


def system_context_for(context: ExecutionContext) -> SystemContext:
    last_message = context.incoming_message.text if context.incoming_message else context.last_message
    return SystemContext(
        contact_phone=context.contact_phone,
        contact_name=context.contact_name,
        execution_id=context.execution_id,
        flow_id=context.flow_id,
        last_message=last_message,
        bot_name=settings.bot_name,
        timezone=settings.timezone,
    )


def render(context: ExecutionContext, text: Optional[str]) -> str:
    return resolve(text, context.variables, system_context_for(context))


def render_all(context: ExecutionContext, value: Any) -> Any:
    return resolve_mapping(value, context.variables, system_context_for(context))


def text_message(body: str, preview_url: bool = False) -> OutboundMessage:
    return OutboundMessage(type="text", payload={"type": "text", "text": {"body": body, "preview_url": preview_url}})


def interactive_message(interactive: Dict[str, Any]) -> OutboundMessage:
    return OutboundMessage(type="interactive", payload={"type": "interactive", "interactive": interactive})


def header_block(context: ExecutionContext, data: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    header = coalesce(data, "header", "headerText")
    if not header:
        return None
    if isinstance(header, dict):
        return render_all(context, header)
    return {"type": "text", "text": render(context, header)[:MAX_HEADER_LENGTH]}


def footer_block(context: ExecutionContext, data: Dict[str, Any]) -> Optional[Dict[str, str]]:
    footer = coalesce(data, "footer", "footerText")
    if not footer:
        return None
    return {"text": render(context, footer)[:MAX_FOOTER_LENGTH]}


class NodeExecutor(ABC):
    """
    A node type. Subclasses set `node_type` and implement `execute`;
    `validate` and `process_response` are optional.
    """

    node_type: str = ""
    # Node types that always stop and wait for the contact's reply.
    pauses: bool = False

    @abstractmethod
    async def execute(self, context: ExecutionContext, node: FlowNode) -> NodeExecutionResult:
        ...

    def validate(self, node: FlowNode, edges: List[FlowEdge], graph: Optional[FlowGraph] = None) -> NodeValidation:
        return validation_result()

    def process_response(self, context: ExecutionContext, node: FlowNode) -> Optional[str]:
        """Map the inbound reply to the next node id, or None when it does not match."""
        return None

    def waits_for_reply(self, node: FlowNode) -> bool:
        return self.pauses

    # --- Edge helpers ---

    @staticmethod
    def handle_target(context: ExecutionContext, node: FlowNode, handles: Iterable[Optional[str]]) -> Optional[str]:
        for handle in handles:
            edge = context.graph.edge_by_handle(node.id, handle)
            if edge:
                return edge.target
        return None

    @staticmethod
    def default_target(context: ExecutionContext, node: FlowNode) -> Optional[str]:
        return context.graph.target_of(context.graph.default_edge(node.id))

    @staticmethod
    def fallback_target(context: ExecutionContext, node: FlowNode) -> Optional[str]:
        return context.graph.target_of(context.graph.fallback_edge(node.id))

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} type={self.node_type}>"
