# backend/tests/unit/test_nodes.py
import httpx
import pytest
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

from flowbot.engine.nodes.control import ConditionNode, DelayNode, HandoffNode, evaluate_condition
from flowbot.engine.nodes.input import InputNode, validate_input
from flowbot.engine.nodes.integrations import AIAgentNode, HttpRequestNode
from flowbot.engine.nodes.interactive import ButtonsNode, CarouselNode, CtaUrlNode, ListNode
from flowbot.engine.nodes.menu import MenuNode
from flowbot.engine.nodes.messages import ContactsNode, DocumentNode, ImageNode, LocationNode, ReactionNode
from flowbot.engine.nodes.template import TemplateNode
from flowbot.models.execution import ExecutionContext, IncomingMessage
from flowbot.models.flow import FlowEdge, FlowGraph, FlowNode


def _context(graph, node_id, variables=None, message=None):
    return ExecutionContext(
        execution_id="exec-1",
        flow_id="f1",
        mode="chatbot",
        contact_phone="5511999999999",
        graph=graph,
        current_node_id=node_id,
        variables=variables if variables is not None else {},
        incoming_message=message,
    )


def _wired(node, handles):
    edges = [FlowEdge(source=node.id, target=f"to-{handle}", sourceHandle=handle) for handle in handles]
    nodes = [node] + [FlowNode(id=f"to-{handle}", type="message", data={"text": "x"}) for handle in handles]
    return FlowGraph(nodes, edges), edges


# --- Buttons ---

def test_four_buttons_exceed_the_maximum():
    node = FlowNode(id="b", type="buttons", data={"text": "Choose", "buttons": [{"id": f"b{i}", "label": f"B{i}"} for i in range(4)]})
    _, edges = _wired(node, [f"b{i}" for i in range(4)])
    result = ButtonsNode().validate(node, edges)
    assert not result["valid"]
    assert "A maximum of 3 buttons is allowed (found 4)" in result["errors"]


def test_three_short_wired_buttons_are_valid():
    node = FlowNode(id="b", type="buttons", data={"text": "Choose", "buttons": [
        {"id": "yes", "label": "Yes"}, {"id": "no", "label": "No"}, {"id": "later", "label": "Twenty chars exactly"},
    ]})
    _, edges = _wired(node, ["yes", "no", "later"])
    assert ButtonsNode().validate(node, edges) == {"valid": True, "errors": [], "warnings": []}


def test_unwired_button_is_an_error():
    node = FlowNode(id="b", type="buttons", data={"text": "Choose", "buttons": [{"id": "yes", "label": "Yes"}]})
    result = ButtonsNode().validate(node, [])
    assert "Button 'Yes' is not connected to any node" in result["errors"]


@pytest.mark.asyncio
async def test_buttons_execute_builds_reply_buttons():
    node = FlowNode(id="b", type="buttons", data={"text": "Hi {{name}}", "buttons": [{"id": "yes", "label": "Yes"}]})
    graph, _ = _wired(node, ["yes"])
    result = await ButtonsNode().execute(_context(graph, "b", {"name": "Ana"}), node)
    interactive = result.messages[0].payload["interactive"]
    assert interactive["type"] == "button"
    assert interactive["body"]["text"] == "Hi Ana"
    assert interactive["action"]["buttons"][0]["reply"] == {"id": "yes", "title": "Yes"}
    assert result.pause_execution


# --- Carousel ---

def _card(position):
    return {"mediaUrl": f"https://cdn.example.com/{position}.jpg", "body": f"Card {position}",
            "buttonText": "Buy", "buttonUrl": f"https://shop.example.com/{position}"}


@pytest.mark.parametrize("count, valid", [(1, False), (2, True), (10, True), (11, False)])
def test_carousel_card_count(count, valid):
    node = FlowNode(id="c", type="carousel", data={"cards": [_card(i) for i in range(count)]})
    edges = [FlowEdge(source="c", target="next")]
    assert CarouselNode().validate(node, edges)["valid"] is valid


def test_carousel_rejects_invalid_button_url():
    cards = [_card(0), {**_card(1), "buttonUrl": "not a url"}]
    node = FlowNode(id="c", type="carousel", data={"cards": cards})
    result = CarouselNode().validate(node, [FlowEdge(source="c", target="next")])
    assert "Card 2 has an invalid button URL: not a url" in result["errors"]


# --- Menu ---

MENU_DATA = {"text": "Menu", "options": [{"id": "a", "label": "Sales"}, {"id": "b", "label": "Support"}]}


def _menu_graph(with_fallback=True):
    nodes = [FlowNode(id="menu", type="menu", data=MENU_DATA), FlowNode(id="N2", type="message", data={"text": "x"})]
    edges = [FlowEdge(source="menu", target="N2", sourceHandle="a")]
    if with_fallback:
        nodes.append(FlowNode(id="FB", type="message", data={"text": "sorry"}))
        edges.append(FlowEdge(source="menu", target="FB", sourceHandle="fallback"))
    return FlowGraph(nodes, edges), nodes[0]


@pytest.mark.parametrize("message", [
    IncomingMessage(type="interactive", button_id="a", text="Sales"),
    IncomingMessage(text="sales"),
    IncomingMessage(text="1"),
])
def test_menu_matches_reply_id_label_and_number(message):
    graph, node = _menu_graph()
    assert MenuNode().process_response(_context(graph, "menu", message=message), node) == "N2"


def test_menu_non_matching_reply_goes_to_fallback():
    graph, node = _menu_graph()
    assert MenuNode().process_response(_context(graph, "menu", message=IncomingMessage(text="pizza")), node) == "FB"


def test_menu_without_fallback_stays():
    graph, node = _menu_graph(with_fallback=False)
    assert MenuNode().process_response(_context(graph, "menu", message=IncomingMessage(text="pizza")), node) is None


@pytest.mark.asyncio
async def test_menu_with_many_options_sends_a_list():
    options = [{"id": f"o{i}", "label": f"Option {i}"} for i in range(5)]
    node = FlowNode(id="menu", type="menu", data={"text": "Menu", "options": options})
    result = await MenuNode().execute(_context(FlowGraph([node], []), "menu"), node)
    interactive = result.messages[0].payload["interactive"]
    assert interactive["type"] == "list"
    assert len(interactive["action"]["sections"][0]["rows"]) == 5
    assert result.collect_input.validation_type == "menu"


# --- Input ---

@pytest.mark.parametrize("value, validation_type, expected", [
    ("Name@Example.com ", "email", (True, "name@example.com")),
    ("not-an-email", "email", (False, "Please enter a valid e-mail address (e.g. name@example.com).")),
    ("(11) 99999-9999", "phone", (True, "5511999999999")),
    ("3,50", "number", (True, "3.5")),
    ("25/12/2024", "date", (True, "2024-12-25")),
    ("31/02/2024", "date", (False, "Please enter a valid date (e.g. 25/12/2024).")),
])
def test_validate_input(value, validation_type, expected):
    assert validate_input(value, validation_type, country_code="55") == expected


@pytest.mark.asyncio
async def test_input_prompts_then_stores_valid_reply():
    node = FlowNode(id="ask", type="input", data={"prompt": "Your e-mail?", "variableName": "email", "validation": "email"})
    graph = FlowGraph([node, FlowNode(id="next", type="end")], [FlowEdge(source="ask", target="next")])

    prompt = await InputNode().execute(_context(graph, "ask"), node)
    assert prompt.messages[0].payload["text"]["body"] == "Your e-mail?"
    assert prompt.collect_input.variable_name == "email"

    invalid = await InputNode().execute(_context(graph, "ask", message=IncomingMessage(text="nope")), node)
    assert invalid.collect_input is not None
    assert invalid.messages[0].payload["text"]["body"].endswith("Your e-mail?")

    valid = await InputNode().execute(_context(graph, "ask", message=IncomingMessage(text="a@b.co")), node)
    assert valid.output == {"email": "a@b.co"}
    assert valid.next_node_id == "next"


# --- Condition ---

@pytest.mark.parametrize("operator, actual, expected, result", [
    ("equals", "Yes", "yes", True),
    ("not_equals", "a", "b", True),
    ("contains", "hello world", "world", True),
    ("greater_than", "10", "9", True),
    ("less_than", "abc", "9", False),
    ("is_empty", None, None, True),
    ("is_set", "x", None, True),
])
def test_evaluate_condition(operator, actual, expected, result):
    assert evaluate_condition(operator, actual, expected) is result


@pytest.mark.asyncio
async def test_condition_routes_through_true_and_false_handles():
    node = FlowNode(id="c", type="condition", data={"variable": "plan", "operator": "equals", "value": "pro"})
    graph = FlowGraph(
        [node, FlowNode(id="yes", type="end"), FlowNode(id="no", type="end")],
        [FlowEdge(source="c", target="yes", sourceHandle="true"), FlowEdge(source="c", target="no", sourceHandle="false")],
    )
    matched = await ConditionNode().execute(_context(graph, "c", {"plan": "PRO"}), node)
    assert (matched.next_node_id, matched.routed) == ("yes", True)
    missed = await ConditionNode().execute(_context(graph, "c", {"plan": "free"}), node)
    assert missed.next_node_id == "no"


@pytest.mark.asyncio
async def test_condition_without_matching_edge_routes_nowhere():
    node = FlowNode(id="c", type="condition", data={"variable": "plan", "operator": "equals", "value": "pro"})
    graph = FlowGraph([node, FlowNode(id="yes", type="end")], [FlowEdge(source="c", target="yes", sourceHandle="true")])
    result = await ConditionNode().execute(_context(graph, "c", {"plan": "free"}), node)
    assert result.next_node_id is None
    assert result.routed


# --- Delay and handoff ---

@pytest.mark.asyncio
async def test_delay_is_clamped_to_a_day():
    node = FlowNode(id="d", type="delay", data={"delaySeconds": 999999})
    result = await DelayNode().execute(_context(FlowGraph([node], []), "d"), node)
    assert result.delay_ms == 86400 * 1000


@pytest.mark.asyncio
async def test_handoff_pauses_the_bot():
    node = FlowNode(id="h", type="handoff", data={"message": "A human will reply"})
    result = await HandoffNode().execute(_context(FlowGraph([node], []), "h"), node)
    assert result.handoff and result.pause_execution


# --- Template ---

TEMPLATE_DATA = {
    "templateName": "promo",
    "language": "en_US",
    "bodyVariables": ["{{name}}"],
    "buttons": [{"type": "QUICK_REPLY", "text": "Yes please"}, {"type": "QUICK_REPLY", "text": "No"}],
}


@pytest.mark.asyncio
async def test_template_with_quick_replies_waits_and_routes_by_payload():
    node = FlowNode(id="t", type="template", data=TEMPLATE_DATA)
    graph = FlowGraph(
        [node, FlowNode(id="yes", type="end"), FlowNode(id="no", type="end")],
        [FlowEdge(source="t", target="yes", sourceHandle="button-0"), FlowEdge(source="t", target="no", sourceHandle="button-1")],
    )
    executor = TemplateNode()
    assert executor.waits_for_reply(node)

    result = await executor.execute(_context(graph, "t", {"name": "Ana"}), node)
    template = result.messages[0].payload["template"]
    assert template["name"] == "promo"
    assert template["components"][0]["parameters"][0]["text"] == "Ana"
    assert result.pause_execution

    reply = IncomingMessage(type="button", button_id="button-1", text="No")
    assert executor.process_response(_context(graph, "t", message=reply), node) == "no"


# --- Menu options routed by value ---

def test_menu_option_wired_by_value_advances():
    data = {"text": "Menu", "options": [{"id": "opt-1", "label": "Sales", "value": "sales"}]}
    node = FlowNode(id="menu", type="menu", data=data)
    graph, edges = _wired(node, ["sales"])
    assert MenuNode().validate(node, edges)["warnings"] == []
    assert MenuNode().process_response(_context(graph, "menu", message=IncomingMessage(text="sales")), node) == "to-sales"


def test_menu_option_without_id_uses_its_value():
    data = {"text": "Menu", "options": [{"label": "Sales", "value": "sales"}]}
    node = FlowNode(id="menu", type="menu", data=data)
    graph, _ = _wired(node, ["sales"])
    message = IncomingMessage(type="interactive", button_id="sales", text="Sales")
    assert MenuNode().process_response(_context(graph, "menu", message=message), node) == "to-sales"


# --- List ---

def _rows(count, prefix="r"):
    return [{"id": f"{prefix}{i}", "title": f"Row {i}"} for i in range(count)]


def test_list_limits_sections_and_rows():
    sections = [{"title": f"S{i}", "rows": _rows(1, prefix=f"s{i}-")} for i in range(11)]
    sections[0]["rows"] = _rows(11)
    node = FlowNode(id="l", type="list", data={"text": "Pick", "sections": sections})
    errors = ListNode().validate(node, [])["errors"]
    assert "A maximum of 10 sections is allowed (found 11)" in errors
    assert "Section 'S0' has more than 10 items" in errors


@pytest.mark.asyncio
async def test_list_execute_waits_for_a_pick():
    node = FlowNode(id="l", type="list", data={"text": "Pick", "items": _rows(2)})
    result = await ListNode().execute(_context(FlowGraph([node], []), "l"), node)
    interactive = result.messages[0].payload["interactive"]
    assert interactive["action"]["sections"][0]["rows"][1] == {"id": "r1", "title": "Row 1"}
    assert result.pause_execution
    assert result.collect_input.validation_type == "list"


def test_list_routes_by_item_handle_and_falls_back():
    node = FlowNode(id="l", type="list", data={"text": "Pick", "items": _rows(2)})
    nodes = [node, FlowNode(id="N1", type="message", data={"text": "x"}), FlowNode(id="FB", type="message", data={"text": "x"})]
    edges = [FlowEdge(source="l", target="N1", sourceHandle="item_r1"), FlowEdge(source="l", target="FB", sourceHandle="fallback")]
    graph = FlowGraph(nodes, edges)

    picked = IncomingMessage(type="interactive", list_id="r1", text="Row 1")
    assert ListNode().process_response(_context(graph, "l", message=picked), node) == "N1"
    unwired = IncomingMessage(type="interactive", list_id="r0", text="Row 0")
    assert ListNode().process_response(_context(graph, "l", message=unwired), node) == "FB"
    assert ListNode().process_response(_context(graph, "l", message=IncomingMessage(text="pizza")), node) == "FB"


# --- CTA URL ---

@pytest.mark.asyncio
async def test_cta_url_renders_variables_into_the_link():
    node = FlowNode(id="c", type="cta_url", data={"text": "Track", "buttonText": "Open", "url": "https://shop.example.com/{{order}}"})
    result = await CtaUrlNode().execute(_context(FlowGraph([node], []), "c", {"order": "42"}), node)
    parameters = result.messages[0].payload["interactive"]["action"]["parameters"]
    assert parameters == {"display_text": "Open", "url": "https://shop.example.com/42"}
    assert not result.pause_execution


@pytest.mark.asyncio
async def test_cta_url_that_resolves_to_garbage_fails():
    node = FlowNode(id="c", type="cta_url", data={"text": "Track", "buttonText": "Open", "url": "{{link}}"})
    result = await CtaUrlNode().execute(_context(FlowGraph([node], []), "c", {"link": "not a url"}), node)
    assert not result.success
    assert "invalid URL" in result.error


# --- Media ---

def test_caption_longer_than_provider_limit_is_rejected():
    node = FlowNode(id="i", type="image", data={"mediaUrl": "https://cdn.example.com/a.jpg", "caption": "x" * 1025})
    assert "Caption must be at most 1024 characters" in ImageNode().validate(node, [])["errors"]


def test_document_requires_a_filename():
    node = FlowNode(id="d", type="document", data={"mediaUrl": "https://cdn.example.com/a.pdf"})
    assert "Document filename is required" in DocumentNode().validate(node, [])["errors"]


@pytest.mark.asyncio
async def test_document_sends_link_caption_and_filename():
    node = FlowNode(id="d", type="document", data={
        "mediaUrl": "https://cdn.example.com/a.pdf", "caption": "Invoice for {{name}}", "filename": "invoice.pdf",
    })
    result = await DocumentNode().execute(_context(FlowGraph([node], []), "d", {"name": "Ana"}), node)
    assert result.messages[0].payload["document"] == {
        "link": "https://cdn.example.com/a.pdf", "caption": "Invoice for Ana", "filename": "invoice.pdf",
    }


# --- Location, contacts, reaction ---

@pytest.mark.parametrize("latitude, longitude, error", [
    (91, 0, "Latitude must be between -90 and 90"),
    (0, -181, "Longitude must be between -180 and 180"),
    ("north", 0, "Latitude must be a number"),
    (None, 0, "Latitude is required"),
])
def test_location_coordinates_are_range_checked(latitude, longitude, error):
    node = FlowNode(id="loc", type="location", data={"latitude": latitude, "longitude": longitude})
    assert error in LocationNode().validate(node, [])["errors"]


@pytest.mark.asyncio
async def test_location_from_variables():
    node = FlowNode(id="loc", type="location", data={"latitude": "{{lat}}", "longitude": "-46.63", "name": "Store"})
    result = await LocationNode().execute(_context(FlowGraph([node], []), "loc", {"lat": "-23.55"}), node)
    assert result.messages[0].payload["location"] == {"latitude": -23.55, "longitude": -46.63, "name": "Store"}


@pytest.mark.asyncio
async def test_contacts_build_vcards():
    node = FlowNode(id="ct", type="contacts", data={"contacts": [{"name": "Ana Souza", "phone": "5511988887777"}]})
    result = await ContactsNode().execute(_context(FlowGraph([node], []), "ct"), node)
    card = result.messages[0].payload["contacts"][0]
    assert card["name"] == {"formatted_name": "Ana Souza", "first_name": "Ana"}
    assert card["phones"] == [{"phone": "5511988887777", "type": "CELL"}]


def test_contact_without_name_is_invalid():
    node = FlowNode(id="ct", type="contacts", data={"contacts": [{"phone": "5511988887777"}]})
    assert "Contact 1 needs a name" in ContactsNode().validate(node, [])["errors"]


@pytest.mark.asyncio
async def test_reaction_targets_the_incoming_message():
    node = FlowNode(id="r", type="reaction", data={"emoji": "👍"})
    context = _context(FlowGraph([node], []), "r", message=IncomingMessage(text="hi", message_id="wamid.IN"))
    result = await ReactionNode().execute(context, node)
    assert result.messages[0].payload["reaction"] == {"message_id": "wamid.IN", "emoji": "👍"}


@pytest.mark.asyncio
async def test_reaction_without_a_message_is_skipped():
    node = FlowNode(id="r", type="reaction", data={"emoji": "👍"})
    result = await ReactionNode().execute(_context(FlowGraph([node], []), "r"), node)
    assert result.success
    assert result.messages == []


# --- AI agent ---

def _openai_client(answer=None, error=None):
    client = MagicMock()
    if error:
        client.chat.completions.create = AsyncMock(side_effect=error)
    else:
        response = SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=answer))])
        client.chat.completions.create = AsyncMock(return_value=response)
    return client


def _ai_graph(data):
    node = FlowNode(id="ai", type="ai_agent", data=data)
    return FlowGraph([node, FlowNode(id="next", type="message", data={"text": "x"})], [FlowEdge(source="ai", target="next")]), node


@pytest.mark.asyncio
async def test_ai_agent_answers_and_saves_the_reply():
    graph, node = _ai_graph({"systemPrompt": "You sell shoes", "saveAs": "ai_answer"})
    client = _openai_client(answer=" We open at 9. ")
    result = await AIAgentNode(client=client).execute(_context(graph, "ai", message=IncomingMessage(text="When do you open?")), node)

    assert result.output == {"ai_answer": "We open at 9."}
    assert result.messages[0].payload["text"]["body"] == "We open at 9."
    assert result.next_node_id == "next"
    sent = client.chat.completions.create.await_args.kwargs["messages"]
    assert sent[0] == {"role": "system", "content": "You sell shoes"}
    assert sent[-1] == {"role": "user", "content": "When do you open?"}


@pytest.mark.asyncio
async def test_ai_agent_failure_sends_the_fallback_message():
    graph, node = _ai_graph({"prompt": "Say hi to {{name}}", "fallbackMessage": "Our assistant is offline, {{name}}."})
    client = _openai_client(error=RuntimeError("upstream 500"))
    result = await AIAgentNode(client=client).execute(_context(graph, "ai", {"name": "Ana"}), node)

    assert result.success
    assert result.messages[0].payload["text"]["body"] == "Our assistant is offline, Ana."
    assert result.next_node_id == "next"


@pytest.mark.asyncio
async def test_ai_agent_failure_without_fallback_halts():
    graph, node = _ai_graph({"prompt": "Say hi"})
    result = await AIAgentNode(client=_openai_client(error=RuntimeError("boom"))).execute(_context(graph, "ai"), node)
    assert not result.success
    assert result.error_code == "AI_ERROR"


# --- HTTP request ---

def _http_graph(data):
    node = FlowNode(id="h", type="http", data=data)
    nodes = [node, FlowNode(id="ok", type="message", data={"text": "x"}), FlowNode(id="oops", type="message", data={"text": "x"})]
    return FlowGraph(nodes, [FlowEdge(source="h", target="ok")]), node


def _http_client(status, json_body):
    return httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(status, json=json_body)))


@pytest.mark.asyncio
async def test_http_saves_json_response():
    graph, node = _http_graph({"method": "GET", "url": "https://api.example.com/orders/{{order}}", "saveAs": "order_data"})
    result = await HttpRequestNode(client=_http_client(200, {"status": "shipped"})).execute(
        _context(graph, "h", {"order": "42"}), node
    )
    assert result.output == {"http_status": "200", "order_data": '{"status": "shipped"}'}
    assert result.next_node_id == "ok"


@pytest.mark.asyncio
async def test_http_error_with_continue_on_error_takes_the_error_route():
    graph, node = _http_graph({
        "method": "POST", "url": "https://api.example.com/orders", "body": {"id": "{{order}}"},
        "onError": {"continueOnError": True, "errorNextNodeId": "oops"},
    })
    result = await HttpRequestNode(client=_http_client(503, {"error": "down"})).execute(
        _context(graph, "h", {"order": "42"}), node
    )
    assert result.success
    assert result.next_node_id == "oops"
    assert result.output["http_status"] == "503"
    assert result.output["http_error"] == "true"


@pytest.mark.asyncio
async def test_http_error_without_continue_on_error_fails():
    graph, node = _http_graph({"method": "GET", "url": "https://api.example.com/orders"})
    result = await HttpRequestNode(client=_http_client(500, {})).execute(_context(graph, "h"), node)
    assert not result.success
    assert result.error_code == "HTTP_ERROR"
