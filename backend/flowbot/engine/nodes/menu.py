# /flowbot/engine/nodes/menu.py

from typing import Any, Dict, List, Optional

from flowbot.engine.nodes.base import (
    MAX_BUTTON_TITLE, MAX_BUTTONS, MAX_TEXT_LENGTH, NodeExecutor, coalesce, footer_block,
    header_block, interactive_message, render, validation_result,
)
from flowbot.models.conversation import CollectInput
from flowbot.models.execution import ExecutionContext, NodeExecutionResult, NodeValidation
from flowbot.models.flow import FlowEdge, FlowGraph, FlowNode

MAX_MENU_OPTIONS = 10
MAX_OPTION_LABEL = 24
MAX_OPTION_DESCRIPTION = 72


def normalize_options(data: Dict[str, Any]) -> List[Dict[str, Optional[str]]]:
    options = []
    for position, raw in enumerate(coalesce(data, "options", default=[])):
        option_id = str(raw.get("id") or raw.get("value") or f"option-{position}")
        options.append({
            "id": option_id,
            "label": coalesce(raw, "label", "title", default=""),
            "value": coalesce(raw, "value", default=option_id),
            "description": coalesce(raw, "description"),
        })
    return options


def _option_handles(option: Dict[str, Optional[str]]) -> List[str]:
    handles = [option["id"], f"option_{option['id']}"]
    if option["value"] and option["value"] not in handles:
        handles.append(option["value"])
    return handles


class MenuNode(NodeExecutor):
    """
    Menu of options. Up to three options are sent as reply buttons, more as a
    list message. The contact may answer by tapping, typing the option label
    or value, or typing its 1-based number.
    """

    node_type = "menu"
    pauses = True

    async def execute(self, context: ExecutionContext, node: FlowNode) -> NodeExecutionResult:
        text = coalesce(node.data, "text", "body", "message")
        options = normalize_options(node.data)
        if not text:
            return NodeExecutionResult.failure("Menu text is required")
        if not options or len(options) > MAX_MENU_OPTIONS:
            return NodeExecutionResult.failure(f"Menu needs between 1 and {MAX_MENU_OPTIONS} options")

        body = {"text": render(context, text)[:MAX_TEXT_LENGTH]}
        if len(options) <= MAX_BUTTONS:
            interactive: Dict[str, Any] = {
                "type": "button",
                "body": body,
                "action": {
                    "buttons": [
                        {"type": "reply", "reply": {"id": option["id"], "title": render(context, option["label"])[:MAX_BUTTON_TITLE]}}
                        for option in options
                    ]
                },
            }
        else:
            rows = []
            for option in options:
                row = {"id": option["id"], "title": render(context, option["label"])[:MAX_OPTION_LABEL]}
                if option["description"]:
                    row["description"] = render(context, option["description"])[:MAX_OPTION_DESCRIPTION]
                rows.append(row)
            button_text = coalesce(node.data, "buttonText", "button_text", default="Options")
            interactive = {
                "type": "list",
                "body": body,
                "action": {"button": render(context, button_text)[:MAX_BUTTON_TITLE], "sections": [{"title": "Options", "rows": rows}]},
            }

        header = header_block(context, node.data)
        if header:
            interactive["header"] = header
        footer = footer_block(context, node.data)
        if footer:
            interactive["footer"] = footer

        return NodeExecutionResult(
            messages=[interactive_message(interactive)],
            pause_execution=True,
            collect_input=CollectInput(variable_name=coalesce(node.data, "variableName", "variable_name"), validation_type="menu"),
        )

    def validate(self, node: FlowNode, edges: List[FlowEdge], graph: Optional[FlowGraph] = None) -> NodeValidation:
        errors, warnings = [], []
        if not coalesce(node.data, "text", "body", "message"):
            errors.append("Menu text is required")

        options = normalize_options(node.data)
        if not options:
            errors.append("Menu needs at least one option")
        if len(options) > MAX_MENU_OPTIONS:
            errors.append(f"A maximum of {MAX_MENU_OPTIONS} menu options is allowed (found {len(options)})")

        handles = {edge.source_handle for edge in edges}
        for position, option in enumerate(options, start=1):
            if not option["label"]:
                errors.append(f"Option {position} needs a label")
            elif len(option["label"]) > MAX_OPTION_LABEL:
                errors.append(f"Option '{option['label']}' label must be at most {MAX_OPTION_LABEL} characters")
            if not handles.intersection(_option_handles(option)):
                warnings.append(f"Option '{option['label'] or option['id']}' is not connected to any node")
        return validation_result(errors, warnings)

    def _match(self, context: ExecutionContext, options: List[Dict[str, Optional[str]]]) -> Optional[Dict[str, Optional[str]]]:
        message = context.incoming_message
        if not message:
            return None
        reply_id = message.reply_id
        text = (message.text or "").strip().lower()

        for option in options:
            if reply_id and reply_id == option["id"]:
                return option
        for option in options:
            if text and text in {option["id"].lower(), (option["value"] or "").lower(), (option["label"] or "").lower()}:
                return option
        if text.isdigit():
            position = int(text)
            if 1 <= position <= len(options):
                return options[position - 1]
        return None

    def process_response(self, context: ExecutionContext, node: FlowNode) -> Optional[str]:
        option = self._match(context, normalize_options(node.data))
        if option:
            target = self.handle_target(context, node, _option_handles(option))
            if target:
                return target
        return self.fallback_target(context, node)
