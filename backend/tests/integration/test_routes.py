# backend/tests/integration/test_routes.py
import hmac
import hashlib
import json
import pytest
from unittest.mock import AsyncMock

from flowbot.config.settings import settings
from flowbot.engine.errors import FlowEngineError
from flowbot.models.execution import InboundMessage, IncomingMessage
from flowbot.models.campaign import CampaignExecution, CampaignStatus
from flowbot.models.conversation import ConversationState, ConversationStatus
from flowbot.models.flow import Flow, FlowEdge, FlowMode, FlowNode

API_PREFIX = f"/api/{settings.api_version}"


def _text_payload(message_id="wamid.ID", text="Hello"):
    return {"entry": [{"changes": [{"field": "messages", "value": {
        "metadata": {"phone_number_id": "123456"},
        "contacts": [{"wa_id": "15551234567", "profile": {"name": "Ana"}}],
        "messages": [{"from": "15551234567", "id": message_id, "text": {"body": text}, "type": "text"}],
    }}]}]}


def _signed(payload):
    payload_bytes = json.dumps(payload).encode('utf-8')
    signature = "sha256=" + hmac.new(settings.whatsapp_app_secret.encode('utf-8'), payload_bytes, hashlib.sha256).hexdigest()
    return payload_bytes, {"X-Hub-Signature-256": signature, "Content-Type": "application/json"}


def _valid_flow(flow_id="welcome", mode=FlowMode.CHATBOT):
    return Flow(
        id=flow_id,
        mode=mode,
        nodes=[FlowNode(id="s", type="start"), FlowNode(id="m", type="message", data={"text": "Hi"})],
        edges=[FlowEdge(id="e1", source="s", target="m")],
    )


def test_root_and_metrics(test_client):
    assert test_client.get("/").json()["service"] == "flowbot"
    response = test_client.get("/metrics")
    assert response.status_code == 200
    assert "flow_node_executions_total" in response.text


def test_health_reports_database_outage(test_client, mocker):
    mocker.patch("flowbot.routes.public.db_service.health_check", new_callable=AsyncMock, return_value=False)
    mocker.patch("flowbot.routes.public.cache_service.health_check", new_callable=AsyncMock, return_value=True)
    response = test_client.get("/health")
    assert response.status_code == 503
    assert response.json()["services"]["database"] == "error"


def test_webhook_verification_success(test_client):
    params = {
        "hub.mode": "subscribe", "hub.challenge": "12345",
        "hub.verify_token": settings.whatsapp_verify_token
    }
    response = test_client.get(f"{API_PREFIX}/webhooks/whatsapp", params=params)
    assert response.status_code == 200
    assert response.text == "12345"


def test_webhook_verification_failure(test_client):
    params = {
        "hub.mode": "subscribe", "hub.challenge": "12345",
        "hub.verify_token": "wrong_token"
    }
    response = test_client.get(f"{API_PREFIX}/webhooks/whatsapp", params=params)
    assert response.status_code == 403


def test_handle_webhook_success(test_client, mocker):
    """A signed inbound message is acknowledged and handed to the chatbot executor."""
    mock_handle = mocker.patch("flowbot.routes.webhooks.chatbot_executor.handle_inbound", new_callable=AsyncMock)
    mocker.patch("flowbot.routes.webhooks.cache_service.set_if_absent", new_callable=AsyncMock, return_value=True)

    payload_bytes, headers = _signed(_text_payload())
    response = test_client.post(f"{API_PREFIX}/webhooks/whatsapp", content=payload_bytes, headers=headers)

    assert response.status_code == 200
    assert response.json() == {"status": "success", "queued": 1}
    mock_handle.assert_awaited_once()
    inbound = mock_handle.await_args.args[0]
    assert inbound.contact_id == "15551234567"
    assert inbound.contact_name == "Ana"
    assert inbound.phone_number_id == "123456"
    assert inbound.message.text == "Hello"


def test_handle_webhook_drops_duplicates(test_client, mocker):
    mock_handle = mocker.patch("flowbot.routes.webhooks.chatbot_executor.handle_inbound", new_callable=AsyncMock)
    mocker.patch("flowbot.routes.webhooks.cache_service.set_if_absent", new_callable=AsyncMock, return_value=False)

    payload_bytes, headers = _signed(_text_payload())
    response = test_client.post(f"{API_PREFIX}/webhooks/whatsapp", content=payload_bytes, headers=headers)

    assert response.json()["queued"] == 0
    mock_handle.assert_not_awaited()


def test_handle_webhook_ignores_status_updates(test_client, mocker):
    mock_handle = mocker.patch("flowbot.routes.webhooks.chatbot_executor.handle_inbound", new_callable=AsyncMock)
    payload = {"entry": [{"changes": [{"field": "messages", "value": {"statuses": [{"id": "wamid.X", "status": "read"}]}}]}]}

    payload_bytes, headers = _signed(payload)
    response = test_client.post(f"{API_PREFIX}/webhooks/whatsapp", content=payload_bytes, headers=headers)

    assert response.status_code == 200
    mock_handle.assert_not_awaited()


def test_handle_webhook_invalid_signature(test_client, mocker):
    mock_handle = mocker.patch("flowbot.routes.webhooks.chatbot_executor.handle_inbound", new_callable=AsyncMock)
    payload_bytes = json.dumps({"entry": []}).encode('utf-8')
    headers = {"X-Hub-Signature-256": "sha256=invalid", "Content-Type": "application/json"}

    response = test_client.post(f"{API_PREFIX}/webhooks/whatsapp", content=payload_bytes, headers=headers)
    assert response.status_code == 403
    mock_handle.assert_not_awaited()


def test_validate_flow_endpoint(test_client):
    body = {
        "nodes": [{"id": "s", "type": "start"}, {"id": "a", "type": "message", "data": {"text": "loop"}},
                  {"id": "b", "type": "message", "data": {"text": "again"}}],
        "edges": [{"id": "e1", "source": "s", "target": "a"}, {"id": "e2", "source": "a", "target": "b"},
                  {"id": "e3", "source": "b", "target": "a"}],
    }
    response = test_client.post(f"{API_PREFIX}/flows/validate", json=body)

    assert response.status_code == 200
    report = response.json()
    assert report["valid"] is False
    assert any("Infinite loop" in error["message"] for error in report["errors"])


def test_publish_unknown_flow_returns_404(test_client, mocker):
    mocker.patch("flowbot.routes.flows.db_service.get_flow", new_callable=AsyncMock, return_value=None)
    response = test_client.post(f"{API_PREFIX}/flows/missing/publish")
    assert response.status_code == 404


def test_publish_invalid_flow_returns_report(test_client, mocker):
    broken = Flow(id="broken", nodes=[FlowNode(id="m", type="message", data={"text": "Hi"})])
    mocker.patch("flowbot.routes.flows.db_service.get_flow", new_callable=AsyncMock, return_value=broken)
    mock_publish = mocker.patch("flowbot.routes.flows.db_service.publish_flow", new_callable=AsyncMock)

    response = test_client.post(f"{API_PREFIX}/flows/broken/publish")

    assert response.status_code == 422
    assert response.json()["report"]["valid"] is False
    mock_publish.assert_not_awaited()


def test_publish_valid_flow(test_client, mocker):
    flow = _valid_flow()
    mocker.patch("flowbot.routes.flows.db_service.get_flow", new_callable=AsyncMock, return_value=flow)
    mocker.patch("flowbot.routes.flows.db_service.publish_flow", new_callable=AsyncMock,
                 return_value=flow.model_copy(update={"version": 2}))

    response = test_client.post(f"{API_PREFIX}/flows/welcome/publish")

    assert response.status_code == 200
    assert response.json()["data"]["flow_id"] == "welcome"


def test_start_campaign_rejects_chatbot_flow(test_client, mocker):
    mocker.patch("flowbot.routes.flows.db_service.get_flow", new_callable=AsyncMock, return_value=_valid_flow())
    response = test_client.post(f"{API_PREFIX}/flows/welcome/campaigns", json={"contacts": [{"phone": "5511999990001"}]})
    assert response.status_code == 400


def test_start_campaign_accepted(test_client, mocker):
    flow = _valid_flow("promo", FlowMode.CAMPAIGN)
    mocker.patch("flowbot.routes.flows.db_service.get_flow", new_callable=AsyncMock, return_value=flow)
    execution = CampaignExecution(id="c1", flow_id="promo", total_contacts=1, batches_total=1)
    mock_start = mocker.patch("flowbot.routes.flows.campaign_executor.start", new_callable=AsyncMock, return_value=execution)

    response = test_client.post(f"{API_PREFIX}/flows/promo/campaigns", json={"contacts": [{"phone": "5511999990001"}]})

    assert response.status_code == 202
    assert response.json()["data"]["id"] == "c1"
    mock_start.assert_awaited_once()


def test_start_campaign_requires_contacts(test_client):
    response = test_client.post(f"{API_PREFIX}/flows/promo/campaigns", json={"contacts": []})
    assert response.status_code == 422


def test_campaign_lookup_and_cancel(test_client, mocker):
    mocker.patch("flowbot.routes.campaigns.db_service.get_campaign_execution", new_callable=AsyncMock, return_value=None)
    assert test_client.get(f"{API_PREFIX}/campaigns/c1").status_code == 404

    execution = CampaignExecution(id="c1", flow_id="promo", status=CampaignStatus.RUNNING)
    mocker.patch("flowbot.routes.campaigns.db_service.get_campaign_execution", new_callable=AsyncMock, return_value=execution)
    assert test_client.get(f"{API_PREFIX}/campaigns/c1").json()["data"]["status"] == "running"

    mocker.patch("flowbot.routes.campaigns.campaign_executor.cancel", new_callable=AsyncMock, return_value=False)
    assert test_client.post(f"{API_PREFIX}/campaigns/c1/cancel").status_code == 409


def test_conversation_takeover(test_client, mocker):
    mocker.patch("flowbot.routes.conversations.chatbot_executor.takeover", new_callable=AsyncMock, return_value=None)
    assert test_client.post(f"{API_PREFIX}/conversations/15551234567/takeover").status_code == 404

    paused = ConversationState(flow_id="welcome", contact_id="15551234567", execution_id="x",
                               status=ConversationStatus.PAUSED)
    mock_takeover = mocker.patch("flowbot.routes.conversations.chatbot_executor.takeover", new_callable=AsyncMock,
                                 return_value=paused)
    response = test_client.post(f"{API_PREFIX}/conversations/+1 (555) 123-4567/takeover")

    assert response.status_code == 200
    mock_takeover.assert_awaited_once_with("15551234567")


def _inbound():
    return InboundMessage(contact_id="15551234567", phone_number_id="123456",
                          message=IncomingMessage(text="Hello", message_id="wamid.ID"))


@pytest.mark.asyncio
async def test_transient_inbound_failure_is_queued_for_retry(mocker):
    """A lock timeout must not lose the message: the dedup key is already claimed."""
    from flowbot.routes import webhooks
    mocker.patch.object(webhooks.chatbot_executor, "handle_inbound", new_callable=AsyncMock,
                        side_effect=FlowEngineError(FlowEngineError.TIMEOUT, "lock busy", retryable=True))
    mock_enqueue = mocker.patch.object(webhooks.job_dispatcher, "enqueue", new_callable=AsyncMock)

    await webhooks.process_inbound_message(_inbound())

    job = mock_enqueue.await_args.args[0]
    assert job["kind"] == "inbound_message"
    assert job["inbound"]["contact_id"] == "15551234567"
    assert mock_enqueue.await_args.kwargs["not_before"] is not None


@pytest.mark.asyncio
async def test_unqueueable_inbound_failure_releases_dedup_key(mocker):
    from flowbot.routes import webhooks
    mocker.patch.object(webhooks.chatbot_executor, "handle_inbound", new_callable=AsyncMock,
                        side_effect=FlowEngineError(FlowEngineError.TIMEOUT, "lock busy", retryable=True))
    mocker.patch.object(webhooks.job_dispatcher, "enqueue", new_callable=AsyncMock, side_effect=ConnectionError("redis down"))
    mock_delete = mocker.patch.object(webhooks.cache_service, "delete", new_callable=AsyncMock)

    await webhooks.process_inbound_message(_inbound())

    mock_delete.assert_awaited_once_with("wamid:wamid.ID")


@pytest.mark.asyncio
async def test_permanent_inbound_failure_is_not_retried(mocker):
    from flowbot.routes import webhooks
    mocker.patch.object(webhooks.chatbot_executor, "handle_inbound", new_callable=AsyncMock,
                        side_effect=FlowEngineError(FlowEngineError.CREDENTIALS_MISSING, "no token"))
    mock_enqueue = mocker.patch.object(webhooks.job_dispatcher, "enqueue", new_callable=AsyncMock)

    await webhooks.process_inbound_message(_inbound())

    mock_enqueue.assert_not_awaited()
