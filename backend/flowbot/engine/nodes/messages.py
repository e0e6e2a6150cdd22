# /flowbot/engine/nodes/messages.py

from typing import Any, Dict, List, Optional

from flowbot.engine.nodes.base import (
    MAX_CAPTION_LENGTH, MAX_TEXT_LENGTH, NodeExecutor, coalesce, is_valid_url,
    render, render_all, text_message, validation_result,
)
from flowbot.engine.variables import has_variables
from flowbot.models.execution import ExecutionContext, NodeExecutionResult, NodeValidation, OutboundMessage
from flowbot.models.flow import FlowEdge, FlowGraph, FlowNode

NO_OUTGOING_WARNING = "Node has no outgoing connection; the flow ends here"


class MessageNode(NodeExecutor):
    node_type = "message"

    async def execute(self, context: ExecutionContext, node: FlowNode) -> NodeExecutionResult:
        text = coalesce(node.data, "text", "content", "message")
        if not text:
            return NodeExecutionResult.failure("Message text is required")
        body = render(context, text)[:MAX_TEXT_LENGTH]
        preview_url = bool(coalesce(node.data, "previewUrl", "preview_url", default=False))
        return NodeExecutionResult(messages=[text_message(body, preview_url)])

    def validate(self, node: FlowNode, edges: List[FlowEdge], graph: Optional[FlowGraph] = None) -> NodeValidation:
        errors, warnings = [], []
        text = coalesce(node.data, "text", "content", "message")
        if not text:
            errors.append("Message text is required")
        elif len(text) > MAX_TEXT_LENGTH:
            errors.append(f"Message text must be at most {MAX_TEXT_LENGTH} characters")
        if not edges:
            warnings.append(NO_OUTGOING_WARNING)
        return validation_result(errors, warnings)


class MediaNode(NodeExecutor):
    """Shared behaviour for image, video, audio, document and sticker nodes."""

    supports_caption = True
    requires_filename = False

    def _media_source(self, data: Dict[str, Any]):
        media_id = coalesce(data, "mediaId", "media_id")
        media_url = coalesce(data, "mediaUrl", "media_url", f"{self.node_type}Url", "url")
        return media_id, media_url

    async def execute(self, context: ExecutionContext, node: FlowNode) -> NodeExecutionResult:
        data = node.data
        media_id, media_url = self._media_source(data)
        if not media_id and not media_url:
            return NodeExecutionResult.failure(f"{self.node_type.capitalize()} requires a media id or URL")

        media: Dict[str, Any] = {"id": render(context, media_id)} if media_id else {"link": render(context, media_url)}

        caption = coalesce(data, "caption")
        if caption and self.supports_caption:
            media["caption"] = render(context, caption)[:MAX_CAPTION_LENGTH]

        filename = coalesce(data, "filename", "fileName")
        if filename and self.node_type == "document":
            media["filename"] = render(context, filename)

        message = OutboundMessage(type=self.node_type, payload={"type": self.node_type, self.node_type: media})
        return NodeExecutionResult(messages=[message])

    def validate(self, node: FlowNode, edges: List[FlowEdge], graph: Optional[FlowGraph] = None) -> NodeValidation:
        errors, warnings = [], []
        media_id, media_url = self._media_source(node.data)
        if not media_id and not media_url:
            errors.append(f"{self.node_type.capitalize()} requires a media id or URL")
        elif media_url and not media_id and not has_variables(media_url) and not is_valid_url(media_url):
            errors.append(f"Invalid media URL: {media_url}")

        caption = coalesce(node.data, "caption")
        if caption and self.supports_caption and len(caption) > MAX_CAPTION_LENGTH:
            errors.append(f"Caption must be at most {MAX_CAPTION_LENGTH} characters")
        if caption and not self.supports_caption:
            warnings.append(f"{self.node_type.capitalize()} messages do not support captions; it will be ignored")

        if self.requires_filename and not coalesce(node.data, "filename", "fileName"):
            errors.append("Document filename is required")
        if not edges:
            warnings.append(NO_OUTGOING_WARNING)
        return validation_result(errors, warnings)


class ImageNode(MediaNode):
    node_type = "image"


class VideoNode(MediaNode):
    node_type = "video"


class AudioNode(MediaNode):
    node_type = "audio"
    supports_caption = False


class DocumentNode(MediaNode):
    node_type = "document"
    requires_filename = True


class StickerNode(MediaNode):
    node_type = "sticker"
    supports_caption = False


def _to_float(value: Any) -> Optional[float]:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


class LocationNode(NodeExecutor):
    node_type = "location"

    def _coordinates(self, data: Dict[str, Any]):
        return coalesce(data, "latitude", "lat"), coalesce(data, "longitude", "lng", "lon")

    async def execute(self, context: ExecutionContext, node: FlowNode) -> NodeExecutionResult:
        raw_lat, raw_lon = self._coordinates(node.data)
        latitude = _to_float(render(context, str(raw_lat)) if raw_lat is not None else None)
        longitude = _to_float(render(context, str(raw_lon)) if raw_lon is not None else None)
        if latitude is None or longitude is None:
            return NodeExecutionResult.failure("Location requires numeric latitude and longitude")
        if not -90 <= latitude <= 90 or not -180 <= longitude <= 180:
            return NodeExecutionResult.failure("Location coordinates are out of range")

        location: Dict[str, Any] = {"latitude": latitude, "longitude": longitude}
        name = coalesce(node.data, "name", "title")
        address = coalesce(node.data, "address")
        if name:
            location["name"] = render(context, name)
        if address:
            location["address"] = render(context, address)
        return NodeExecutionResult(messages=[OutboundMessage(type="location", payload={"type": "location", "location": location})])

    def validate(self, node: FlowNode, edges: List[FlowEdge], graph: Optional[FlowGraph] = None) -> NodeValidation:
        errors = []
        raw_lat, raw_lon = self._coordinates(node.data)
        for label, raw, limit in (("Latitude", raw_lat, 90), ("Longitude", raw_lon, 180)):
            if raw is None or raw == "":
                errors.append(f"{label} is required")
                continue
            if isinstance(raw, str) and has_variables(raw):
                continue
            value = _to_float(raw)
            if value is None:
                errors.append(f"{label} must be a number")
            elif not -limit <= value <= limit:
                errors.append(f"{label} must be between -{limit} and {limit}")
        return validation_result(errors)


class ContactsNode(NodeExecutor):
    """Sends one or more vCards."""

    node_type = "contacts"

    @staticmethod
    def _card(context: ExecutionContext, contact: Dict[str, Any]) -> Dict[str, Any]:
        if isinstance(contact.get("name"), dict):
            return render_all(context, contact)

        formatted_name = render(context, coalesce(contact, "name", "formattedName", default=""))
        card: Dict[str, Any] = {"name": {"formatted_name": formatted_name, "first_name": formatted_name.split(" ")[0]}}
        phone = coalesce(contact, "phone", "phoneNumber")
        if phone:
            card["phones"] = [{"phone": render(context, phone), "type": "CELL"}]
        email = coalesce(contact, "email")
        if email:
            card["emails"] = [{"email": render(context, email), "type": "WORK"}]
        company = coalesce(contact, "organization", "company")
        if company:
            card["org"] = {"company": render(context, company)}
        return card

    async def execute(self, context: ExecutionContext, node: FlowNode) -> NodeExecutionResult:
        contacts = coalesce(node.data, "contacts", default=[])
        if not contacts:
            return NodeExecutionResult.failure("At least one contact is required")
        cards = [self._card(context, contact) for contact in contacts]
        return NodeExecutionResult(messages=[OutboundMessage(type="contacts", payload={"type": "contacts", "contacts": cards})])

    def validate(self, node: FlowNode, edges: List[FlowEdge], graph: Optional[FlowGraph] = None) -> NodeValidation:
        errors = []
        contacts = coalesce(node.data, "contacts", default=[])
        if not contacts:
            errors.append("At least one contact is required")
        for position, contact in enumerate(contacts, start=1):
            if not coalesce(contact, "name", "formattedName"):
                errors.append(f"Contact {position} needs a name")
        return validation_result(errors)


class ReactionNode(NodeExecutor):
    node_type = "reaction"

    async def execute(self, context: ExecutionContext, node: FlowNode) -> NodeExecutionResult:
        emoji = coalesce(node.data, "emoji", "reaction")
        if not emoji:
            return NodeExecutionResult.failure("Reaction emoji is required")

        message_id = coalesce(node.data, "messageId", "message_id")
        variable = coalesce(node.data, "messageIdVariable", "message_id_variable")
        if message_id:
            message_id = render(context, message_id)
        elif variable:
            message_id = context.variables.get(variable)
        elif context.incoming_message:
            message_id = context.incoming_message.message_id

        if not message_id:
            # Nothing to react to: a campaign opening with a reaction, for example.
            if context.log:
                context.log(f"Reaction node {node.id} skipped: no message to react to")
            return NodeExecutionResult()

        reaction = {"message_id": message_id, "emoji": emoji}
        return NodeExecutionResult(messages=[OutboundMessage(type="reaction", payload={"type": "reaction", "reaction": reaction})])

    def validate(self, node: FlowNode, edges: List[FlowEdge], graph: Optional[FlowGraph] = None) -> NodeValidation:
        if not coalesce(node.data, "emoji", "reaction"):
            return validation_result(["Reaction emoji is required"])
        return validation_result()
