# /flowbot/engine/nodes/template.py

from typing import Any, Dict, List, Optional

from flowbot.engine.nodes.base import NodeExecutor, coalesce, render, validation_result
from flowbot.models.conversation import CollectInput
from flowbot.models.execution import ExecutionContext, NodeExecutionResult, NodeValidation, OutboundMessage
from flowbot.models.flow import FlowEdge, FlowGraph, FlowNode

DEFAULT_LANGUAGE = "pt_BR"
QUICK_REPLY_TYPES = {"QUICK_REPLY", "quick_reply"}


def _variable_values(data: Dict[str, Any], *keys: str) -> List[str]:
    values = []
    for raw in coalesce(data, *keys, default=[]):
        values.append(raw.get("value", "") if isinstance(raw, dict) else str(raw))
    return values


def quick_replies(data: Dict[str, Any]) -> List[Dict[str, str]]:
    """Quick-reply buttons with the payload each one is sent with."""
    buttons = [b for b in coalesce(data, "buttons", default=[]) if b.get("type") in QUICK_REPLY_TYPES]
    return [
        {"payload": str(button.get("id") or f"button-{position}"), "text": button.get("text") or ""}
        for position, button in enumerate(buttons)
    ]


class TemplateNode(NodeExecutor):
    """
    Sends a pre-approved WhatsApp template. Templates are the only message a
    business may send outside the 24h customer-service window, so campaign
    flows usually open with one.

    When the template carries quick-reply buttons the node waits for the tap;
    otherwise it passes straight through to its default edge.
    """

    node_type = "template"

    def waits_for_reply(self, node: FlowNode) -> bool:
        return bool(quick_replies(node.data))

    def _components(self, context: ExecutionContext, data: Dict[str, Any]) -> List[Dict[str, Any]]:
        components: List[Dict[str, Any]] = []

        header_values = _variable_values(data, "headerVariables", "header_variables")
        if header_values:
            components.append({
                "type": "header",
                "parameters": [{"type": "text", "text": render(context, value)} for value in header_values],
            })

        body_values = _variable_values(data, "bodyVariables", "body_variables")
        if body_values:
            components.append({
                "type": "body",
                "parameters": [{"type": "text", "text": render(context, value)} for value in body_values],
            })

        for index, value in enumerate(_variable_values(data, "buttonVariables", "button_variables")):
            components.append({
                "type": "button",
                "sub_type": "url",
                "index": index,
                "parameters": [{"type": "text", "text": render(context, value)}],
            })

        for index, button in enumerate(quick_replies(data)):
            components.append({
                "type": "button",
                "sub_type": "quick_reply",
                "index": index,
                "parameters": [{"type": "payload", "payload": button["payload"]}],
            })
        return components

    async def execute(self, context: ExecutionContext, node: FlowNode) -> NodeExecutionResult:
        name = coalesce(node.data, "templateName", "template_name", "name")
        if not name:
            return NodeExecutionResult.failure("Template name is required")

        template: Dict[str, Any] = {
            "name": name,
            "language": {"code": coalesce(node.data, "language", default=DEFAULT_LANGUAGE)},
        }
        components = self._components(context, node.data)
        if components:
            template["components"] = components
        message = OutboundMessage(type="template", payload={"type": "template", "template": template})

        if self.waits_for_reply(node):
            return NodeExecutionResult(
                messages=[message],
                pause_execution=True,
                collect_input=CollectInput(variable_name=coalesce(node.data, "variableName", "variable_name"), validation_type="template"),
            )
        return NodeExecutionResult(messages=[message], next_node_id=self.default_target(context, node))

    def process_response(self, context: ExecutionContext, node: FlowNode) -> Optional[str]:
        message = context.incoming_message
        if not message:
            return None
        buttons = quick_replies(node.data)
        if not buttons:
            return self.default_target(context, node)

        reply = (message.button_id or message.text or "").strip().lower()
        for index, button in enumerate(buttons):
            if reply and reply in (button["payload"].lower(), button["text"].strip().lower()):
                target = self.handle_target(context, node, [button["payload"], f"button-{index}", f"button_{index}"])
                if target:
                    return target
                break

        return self.fallback_target(context, node) or self.default_target(context, node)

    def validate(self, node: FlowNode, edges: List[FlowEdge], graph: Optional[FlowGraph] = None) -> NodeValidation:
        errors, warnings = [], []
        if not coalesce(node.data, "templateName", "template_name", "name"):
            errors.append("Template name is required")
        if not edges:
            warnings.append("Template node has no outgoing connection")
        handles = {edge.source_handle for edge in edges}
        for index, button in enumerate(quick_replies(node.data)):
            if not handles & {button["payload"], f"button-{index}", f"button_{index}"}:
                warnings.append(f"Quick reply '{button['text'] or button['payload']}' is not connected to any node")
        return validation_result(errors, warnings)
