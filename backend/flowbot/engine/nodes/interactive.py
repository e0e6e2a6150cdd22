# /flowbot/engine/nodes/interactive.py

from typing import Any, Dict, List, Optional

from flowbot.engine.nodes.base import (
    MAX_BUTTON_TITLE, MAX_BUTTONS, MAX_TEXT_LENGTH, NodeExecutor, coalesce, footer_block,
    header_block, interactive_message, is_valid_url, render, validation_result,
)
from flowbot.engine.variables import has_variables
from flowbot.models.conversation import CollectInput
from flowbot.models.execution import ExecutionContext, NodeExecutionResult, NodeValidation
from flowbot.models.flow import FlowEdge, FlowGraph, FlowNode

MAX_LIST_SECTIONS = 10
MAX_LIST_ROWS = 10
MAX_LIST_TITLE = 24
MAX_LIST_DESCRIPTION = 72
MIN_CAROUSEL_CARDS = 2
MAX_CAROUSEL_CARDS = 10


def _same_text(left: Optional[str], right: Optional[str]) -> bool:
    return bool(left) and bool(right) and left.strip().lower() == right.strip().lower()


def _collect(node: FlowNode, validation_type: str) -> CollectInput:
    return CollectInput(variable_name=coalesce(node.data, "variableName", "variable_name"), validation_type=validation_type)


# --- Reply buttons ---

def normalize_buttons(data: Dict[str, Any]) -> List[Dict[str, str]]:
    buttons = []
    for position, raw in enumerate(coalesce(data, "buttons", default=[])):
        buttons.append({
            "id": str(raw.get("id") or f"button-{position}"),
            "title": coalesce(raw, "label", "title", "text", default=""),
        })
    return buttons


class ButtonsNode(NodeExecutor):
    """Interactive reply-button message; waits for the contact to tap one."""

    node_type = "buttons"
    pauses = True

    async def execute(self, context: ExecutionContext, node: FlowNode) -> NodeExecutionResult:
        text = coalesce(node.data, "text", "body")
        buttons = normalize_buttons(node.data)
        if not text:
            return NodeExecutionResult.failure("Buttons message text is required")
        if not buttons or len(buttons) > MAX_BUTTONS:
            return NodeExecutionResult.failure(f"Buttons message needs between 1 and {MAX_BUTTONS} buttons")

        interactive: Dict[str, Any] = {
            "type": "button",
            "body": {"text": render(context, text)[:MAX_TEXT_LENGTH]},
            "action": {
                "buttons": [
                    {"type": "reply", "reply": {"id": button["id"], "title": render(context, button["title"])[:MAX_BUTTON_TITLE]}}
                    for button in buttons
                ]
            },
        }
        header = header_block(context, node.data)
        if header:
            interactive["header"] = header
        footer = footer_block(context, node.data)
        if footer:
            interactive["footer"] = footer

        return NodeExecutionResult(
            messages=[interactive_message(interactive)], pause_execution=True, collect_input=_collect(node, "button")
        )

    def validate(self, node: FlowNode, edges: List[FlowEdge], graph: Optional[FlowGraph] = None) -> NodeValidation:
        errors = []
        if not coalesce(node.data, "text", "body"):
            errors.append("Buttons message text is required")

        buttons = normalize_buttons(node.data)
        if not buttons:
            errors.append("At least one button is required")
        if len(buttons) > MAX_BUTTONS:
            errors.append(f"A maximum of {MAX_BUTTONS} buttons is allowed (found {len(buttons)})")

        handles = {edge.source_handle for edge in edges}
        seen_ids = set()
        for position, button in enumerate(buttons, start=1):
            if not button["title"]:
                errors.append(f"Button {position} needs a label")
            elif len(button["title"]) > MAX_BUTTON_TITLE:
                errors.append(f"Button '{button['title']}' label must be at most {MAX_BUTTON_TITLE} characters")
            if button["id"] in seen_ids:
                errors.append(f"Duplicate button id '{button['id']}'")
            seen_ids.add(button["id"])
            if button["id"] not in handles and f"button_{button['id']}" not in handles:
                errors.append(f"Button '{button['title'] or button['id']}' is not connected to any node")
        return validation_result(errors)

    def process_response(self, context: ExecutionContext, node: FlowNode) -> Optional[str]:
        message = context.incoming_message
        if not message:
            return None
        for button in normalize_buttons(node.data):
            if message.reply_id == button["id"] or _same_text(message.text, button["title"]):
                target = self.handle_target(context, node, [button["id"], f"button_{button['id']}"])
                if target:
                    return target
                break
        return self.fallback_target(context, node)


# --- List messages ---

def normalize_sections(data: Dict[str, Any]) -> List[Dict[str, Any]]:
    raw_sections = coalesce(data, "sections")
    if not raw_sections:
        items = coalesce(data, "items", "rows", default=[])
        raw_sections = [{"title": coalesce(data, "sectionTitle", default="Options"), "rows": items}] if items else []

    sections = []
    for section_position, section in enumerate(raw_sections):
        rows = []
        for row_position, row in enumerate(coalesce(section, "rows", "items", default=[])):
            rows.append({
                "id": str(row.get("id") or f"item-{section_position}-{row_position}"),
                "title": coalesce(row, "title", "label", default=""),
                "description": coalesce(row, "description", default=None),
            })
        sections.append({"title": coalesce(section, "title", default=""), "rows": rows})
    return sections


class ListNode(NodeExecutor):
    """Interactive list message; waits for the contact to pick a row."""

    node_type = "list"
    pauses = True

    async def execute(self, context: ExecutionContext, node: FlowNode) -> NodeExecutionResult:
        text = coalesce(node.data, "text", "body")
        sections = normalize_sections(node.data)
        if not text:
            return NodeExecutionResult.failure("List message text is required")
        if not sections or not any(section["rows"] for section in sections):
            return NodeExecutionResult.failure("List message needs at least one item")

        rendered_sections = []
        for section in sections[:MAX_LIST_SECTIONS]:
            rows = []
            for row in section["rows"][:MAX_LIST_ROWS]:
                entry = {"id": row["id"], "title": render(context, row["title"])[:MAX_LIST_TITLE]}
                if row["description"]:
                    entry["description"] = render(context, row["description"])[:MAX_LIST_DESCRIPTION]
                rows.append(entry)
            rendered = {"rows": rows}
            if section["title"]:
                rendered["title"] = render(context, section["title"])[:MAX_LIST_TITLE]
            rendered_sections.append(rendered)

        button_text = coalesce(node.data, "buttonText", "button_text", "button", default="Options")
        interactive: Dict[str, Any] = {
            "type": "list",
            "body": {"text": render(context, text)[:MAX_TEXT_LENGTH]},
            "action": {"button": render(context, button_text)[:MAX_BUTTON_TITLE], "sections": rendered_sections},
        }
        header = header_block(context, node.data)
        if header:
            interactive["header"] = header
        footer = footer_block(context, node.data)
        if footer:
            interactive["footer"] = footer

        return NodeExecutionResult(
            messages=[interactive_message(interactive)], pause_execution=True, collect_input=_collect(node, "list")
        )

    def validate(self, node: FlowNode, edges: List[FlowEdge], graph: Optional[FlowGraph] = None) -> NodeValidation:
        errors, warnings = [], []
        if not coalesce(node.data, "text", "body"):
            errors.append("List message text is required")

        button_text = coalesce(node.data, "buttonText", "button_text", "button", default="Options")
        if len(button_text) > MAX_BUTTON_TITLE:
            errors.append(f"List button text must be at most {MAX_BUTTON_TITLE} characters")

        sections = normalize_sections(node.data)
        if not sections or not any(section["rows"] for section in sections):
            errors.append("List message needs at least one item")
        if len(sections) > MAX_LIST_SECTIONS:
            errors.append(f"A maximum of {MAX_LIST_SECTIONS} sections is allowed (found {len(sections)})")

        handles = {edge.source_handle for edge in edges}
        for section in sections:
            if len(section["rows"]) > MAX_LIST_ROWS:
                errors.append(f"Section '{section['title']}' has more than {MAX_LIST_ROWS} items")
            if section["title"] and len(section["title"]) > MAX_LIST_TITLE:
                errors.append(f"Section title '{section['title']}' must be at most {MAX_LIST_TITLE} characters")
            for row in section["rows"]:
                if not row["title"]:
                    errors.append(f"List item '{row['id']}' needs a title")
                elif len(row["title"]) > MAX_LIST_TITLE:
                    errors.append(f"List item '{row['title']}' title must be at most {MAX_LIST_TITLE} characters")
                if row["description"] and len(row["description"]) > MAX_LIST_DESCRIPTION:
                    errors.append(f"List item '{row['title']}' description must be at most {MAX_LIST_DESCRIPTION} characters")
                if row["id"] not in handles and f"item_{row['id']}" not in handles:
                    warnings.append(f"List item '{row['title'] or row['id']}' is not connected to any node")
        return validation_result(errors, warnings)

    def process_response(self, context: ExecutionContext, node: FlowNode) -> Optional[str]:
        message = context.incoming_message
        if not message:
            return None
        for section in normalize_sections(node.data):
            for row in section["rows"]:
                if message.reply_id == row["id"] or _same_text(message.text, row["title"]):
                    target = self.handle_target(context, node, [row["id"], f"item_{row['id']}"])
                    if target:
                        return target
                    return self.fallback_target(context, node)
        return self.fallback_target(context, node)


# --- Call-to-action URL ---

class CtaUrlNode(NodeExecutor):
    node_type = "cta_url"

    async def execute(self, context: ExecutionContext, node: FlowNode) -> NodeExecutionResult:
        text = coalesce(node.data, "text", "body")
        button_text = coalesce(node.data, "buttonText", "displayText", "button_text")
        url = coalesce(node.data, "url", "buttonUrl")
        if not text or not button_text or not url:
            return NodeExecutionResult.failure("CTA URL message needs text, button text and a URL")

        rendered_url = render(context, url)
        if not is_valid_url(rendered_url):
            return NodeExecutionResult.failure(f"CTA URL resolved to an invalid URL: {rendered_url}")

        interactive: Dict[str, Any] = {
            "type": "cta_url",
            "body": {"text": render(context, text)[:MAX_TEXT_LENGTH]},
            "action": {
                "name": "cta_url",
                "parameters": {"display_text": render(context, button_text)[:MAX_BUTTON_TITLE], "url": rendered_url},
            },
        }
        header = header_block(context, node.data)
        if header:
            interactive["header"] = header
        footer = footer_block(context, node.data)
        if footer:
            interactive["footer"] = footer
        return NodeExecutionResult(messages=[interactive_message(interactive)])

    def validate(self, node: FlowNode, edges: List[FlowEdge], graph: Optional[FlowGraph] = None) -> NodeValidation:
        errors = []
        if not coalesce(node.data, "text", "body"):
            errors.append("CTA URL message text is required")
        button_text = coalesce(node.data, "buttonText", "displayText", "button_text")
        if not button_text:
            errors.append("CTA button text is required")
        elif len(button_text) > MAX_BUTTON_TITLE:
            errors.append(f"CTA button text must be at most {MAX_BUTTON_TITLE} characters")
        url = coalesce(node.data, "url", "buttonUrl")
        if not url:
            errors.append("CTA URL is required")
        elif not has_variables(url) and not is_valid_url(url):
            errors.append(f"Invalid CTA URL: {url}")
        return validation_result(errors)


# --- Media carousel ---

def _card_parts(card: Dict[str, Any]) -> Dict[str, Any]:
    body = coalesce(card, "bodyText", "body", "text")
    if not body:
        title = coalesce(card, "title", default="")
        description = coalesce(card, "description", default="")
        body = "\n".join(part for part in (title, description) if part)
    return {
        "header_type": coalesce(card, "headerType", "mediaType", default="image"),
        "media_id": coalesce(card, "mediaId", "media_id"),
        "media_url": coalesce(card, "mediaUrl", "imageUrl", "videoUrl", "media_url"),
        "body": body,
        "button_text": coalesce(card, "buttonText", "button_text"),
        "button_url": coalesce(card, "buttonUrl", "url"),
    }


class CarouselNode(NodeExecutor):
    node_type = "carousel"

    async def execute(self, context: ExecutionContext, node: FlowNode) -> NodeExecutionResult:
        cards = [_card_parts(card) for card in coalesce(node.data, "cards", default=[])]
        if not MIN_CAROUSEL_CARDS <= len(cards) <= MAX_CAROUSEL_CARDS:
            return NodeExecutionResult.failure(
                f"Carousel needs between {MIN_CAROUSEL_CARDS} and {MAX_CAROUSEL_CARDS} cards"
            )

        rendered_cards = []
        for position, card in enumerate(cards):
            header_type = card["header_type"]
            media = {"id": card["media_id"]} if card["media_id"] else {"link": render(context, card["media_url"])}
            rendered_cards.append({
                "card_index": position,
                "type": "cta_url",
                "header": {"type": header_type, header_type: media},
                "body": {"text": render(context, card["body"])},
                "action": {
                    "name": "cta_url",
                    "parameters": {
                        "display_text": render(context, card["button_text"])[:MAX_BUTTON_TITLE],
                        "url": render(context, card["button_url"]),
                    },
                },
            })

        interactive: Dict[str, Any] = {"type": "carousel", "action": {"cards": rendered_cards}}
        text = coalesce(node.data, "text", "body")
        if text:
            interactive["body"] = {"text": render(context, text)}
        return NodeExecutionResult(messages=[interactive_message(interactive)])

    def validate(self, node: FlowNode, edges: List[FlowEdge], graph: Optional[FlowGraph] = None) -> NodeValidation:
        errors = []
        cards = [_card_parts(card) for card in coalesce(node.data, "cards", default=[])]
        if len(cards) < MIN_CAROUSEL_CARDS:
            errors.append(f"Carousel needs at least {MIN_CAROUSEL_CARDS} cards (found {len(cards)})")
        if len(cards) > MAX_CAROUSEL_CARDS:
            errors.append(f"Carousel allows at most {MAX_CAROUSEL_CARDS} cards (found {len(cards)})")

        for position, card in enumerate(cards, start=1):
            if not card["media_id"] and not card["media_url"]:
                errors.append(f"Card {position} needs an image or video")
            if not card["body"]:
                errors.append(f"Card {position} needs body text")
            if not card["button_text"]:
                errors.append(f"Card {position} needs button text")
            elif len(card["button_text"]) > MAX_BUTTON_TITLE:
                errors.append(f"Card {position} button text must be at most {MAX_BUTTON_TITLE} characters")
            url = card["button_url"]
            if not url:
                errors.append(f"Card {position} needs a button URL")
            elif not has_variables(url) and not is_valid_url(url):
                errors.append(f"Card {position} has an invalid button URL: {url}")

        if len({card["header_type"] for card in cards}) > 1:
            errors.append("All carousel cards must use the same header type")
        if not edges:
            errors.append("Carousel must be connected to a next node")
        return validation_result(errors)
