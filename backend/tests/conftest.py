import os
import pytest
from fastapi.testclient import TestClient
from dotenv import load_dotenv
from unittest.mock import AsyncMock

# Load the test environment FIRST, before any flowbot imports, so that the
# module-level settings and service singletons pick it up.
load_dotenv(dotenv_path=os.path.join(os.path.dirname(__file__), "..", ".env.test"))
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("WHATSAPP_APP_SECRET", "test_app_secret")
os.environ.setdefault("WHATSAPP_VERIFY_TOKEN", "test_verify_token")

from flowbot.config.settings import Settings, WhatsAppCredentials  # noqa: E402
from flowbot.engine.executor import FlowExecutor  # noqa: E402
from flowbot.engine.nodes.registry import build_default_registry  # noqa: E402
from flowbot.engine.state import StateManager  # noqa: E402
from flowbot.models.campaign import CampaignExecution, CampaignStatus  # noqa: E402
from flowbot.models.conversation import ConversationStatus  # noqa: E402
from flowbot.models.execution import SendResult  # noqa: E402
from flowbot.models.flow import Flow, FlowEdge, FlowNode, FlowStatus, utcnow  # noqa: E402
from flowbot.utils.locks import ContactLock  # noqa: E402


class InMemoryStore:
    """Stands in for db_service with the same compare-and-set semantics."""

    def __init__(self):
        self.flows = {}
        self.states = {}
        self.opted_out = set()
        self.campaigns = {}
        self.node_log = []
        self.save_calls = 0

    # --- Flows ---
    async def get_flow(self, flow_id):
        return self.flows.get(flow_id)

    async def list_active_chatbot_flows(self):
        return [
            flow for flow in self.flows.values()
            if flow.status == FlowStatus.PUBLISHED and flow.is_active and flow.mode.value == "chatbot"
        ]

    async def save_flow(self, flow):
        self.flows[flow.id] = flow
        return flow

    async def publish_flow(self, flow_id):
        flow = self.flows.get(flow_id)
        if flow is None:
            return None
        flow = flow.model_copy(update={"status": FlowStatus.PUBLISHED, "version": flow.version + 1})
        self.flows[flow_id] = flow
        return flow

    # --- Conversation states ---
    async def get_conversation_state(self, flow_id, contact_id):
        state = self.states.get((flow_id, contact_id))
        return state.model_copy(deep=True) if state else None

    async def save_conversation_state(self, state, expected_version=None):
        self.save_calls += 1
        key = (state.flow_id, state.contact_id)
        current = self.states.get(key)
        if expected_version == 0 and current is not None:
            return None
        if expected_version not in (None, 0) and (current is None or current.version != expected_version):
            return None
        new_version = (expected_version if expected_version is not None else state.version) + 1
        stored = state.model_copy(deep=True)
        stored.version = new_version
        self.states[key] = stored
        return new_version

    async def delete_conversation_state(self, flow_id, contact_id):
        return self.states.pop((flow_id, contact_id), None) is not None

    async def find_active_conversation_state(self, contact_id):
        live = [
            state for state in self.states.values()
            if state.contact_id == contact_id and state.status != ConversationStatus.ENDED
        ]
        live.sort(key=lambda state: state.last_activity_at, reverse=True)
        return live[0].model_copy(deep=True) if live else None

    async def find_idle_conversation_states(self, cutoff, limit=500):
        return [
            state.model_copy(deep=True) for state in self.states.values()
            if state.status == ConversationStatus.ACTIVE and state.last_activity_at < cutoff
        ][:limit]

    # --- Contacts ---
    async def is_opted_out(self, phone):
        return phone in self.opted_out

    async def mark_contact_opted_out(self, phone, reason="provider_opt_out"):
        self.opted_out.add(phone)

    # --- Campaigns ---
    async def create_campaign_execution(self, execution):
        self.campaigns[execution.id] = execution.model_copy(deep=True)
        return execution

    async def get_campaign_execution(self, execution_id):
        execution = self.campaigns.get(execution_id)
        return execution.model_copy(deep=True) if execution else None

    async def is_campaign_contact_processed(self, execution_id, phone):
        return phone in self.campaigns[execution_id].processed_contacts

    async def record_campaign_contact(self, execution_id, phone, status, skip_reason=None):
        execution = self.campaigns[execution_id]
        if phone in execution.processed_contacts:
            return False
        counter = {"sent": "sent_count", "failed": "failed_count", "skipped": "skipped_count"}[status]
        setattr(execution, counter, getattr(execution, counter) + 1)
        execution.processed_contacts.append(phone)
        if skip_reason:
            execution.skip_reasons[phone] = skip_reason
        return True

    async def mark_campaign_batch_done(self, execution_id, batch_index):
        execution = self.campaigns[execution_id]
        if batch_index not in execution.completed_batches:
            execution.completed_batches.append(batch_index)
            execution.batches_done += 1
        return execution.model_copy(deep=True)

    async def finalize_campaign_execution(self, execution_id):
        execution = self.campaigns.get(execution_id)
        if execution is None or execution.status != CampaignStatus.RUNNING:
            return execution
        processed = execution.sent_count + execution.failed_count + execution.skipped_count
        all_failed = processed > 0 and execution.failed_count == processed
        execution.status = CampaignStatus.FAILED if all_failed else CampaignStatus.COMPLETED
        execution.completed_at = utcnow()
        return execution.model_copy(deep=True)

    async def cancel_campaign_execution(self, execution_id):
        execution = self.campaigns.get(execution_id)
        if execution is None or execution.status != CampaignStatus.RUNNING:
            return False
        execution.status = CampaignStatus.CANCELLED
        return True

    async def fail_campaign_execution(self, execution_id, error):
        execution: CampaignExecution = self.campaigns[execution_id]
        if execution.status == CampaignStatus.RUNNING:
            execution.status = CampaignStatus.FAILED
            execution.error = error

    async def log_node_execution(self, record):
        self.node_log.append(record)


class InMemoryCache:
    """Stands in for cache_service."""

    def __init__(self):
        self.data = {}

    async def get_json(self, key):
        return self.data.get(key)

    async def set_json(self, key, value, ttl=300):
        self.data[key] = value
        return True

    async def delete(self, key):
        return self.data.pop(key, None) is not None

    async def set_if_absent(self, key, value, ttl):
        if key in self.data:
            return False
        self.data[key] = value
        return True


class RecordingSender:
    """Message sender that records every send; queued results are returned first."""

    def __init__(self):
        self.sent = []
        self.results = []

    async def send(self, to, message, credentials):
        self.sent.append((to, message))
        if self.results:
            return self.results.pop(0)
        return SendResult(success=True, message_id=f"wamid.{len(self.sent)}")

    def texts(self):
        return [message.payload["text"]["body"] for _, message in self.sent if message.type == "text"]


@pytest.fixture
def test_settings():
    return Settings(
        whatsapp_access_token="test-token",
        whatsapp_phone_id="123456",
        session_timeout_minutes=30,
        campaign_rate_limit_ms=0,
    )


@pytest.fixture
def credentials():
    return WhatsAppCredentials(phone_number_id="123456", access_token="test-token")


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def cache():
    return InMemoryCache()


@pytest.fixture
def sender():
    return RecordingSender()


@pytest.fixture
def registry():
    return build_default_registry()


@pytest.fixture
def state_manager(store, cache):
    return StateManager(store, cache, cache_ttl=60)


@pytest.fixture
def alerting():
    return AsyncMock()


@pytest.fixture
def engine(registry, state_manager, sender, alerting, store, test_settings):
    return FlowExecutor(
        registry, state_manager, sender,
        alerting=alerting, store=store, dispatcher=None, settings=test_settings, sleep=AsyncMock(),
    )


@pytest.fixture
def local_lock():
    """In-process lock: no Redis client."""
    return ContactLock(None, ttl_ms=30000, wait_timeout=1.0)


@pytest.fixture
def make_flow():
    """Builds a Flow from compact (id, type, data) node tuples and (source, target, handle) edge tuples."""
    def _make(flow_id, nodes, edges, **fields):
        return Flow(
            id=flow_id,
            nodes=[FlowNode(id=node_id, type=node_type, data=data or {}) for node_id, node_type, data in nodes],
            edges=[
                FlowEdge(id=f"e{position}", source=source, target=target, source_handle=handle)
                for position, (source, target, handle) in enumerate(edges)
            ],
            **fields,
        )
    return _make


@pytest.fixture(scope="function")
def test_client(mocker):
    """
    Provides a TestClient for API integration tests.
    It prevents the real background workers and external connections from starting.
    """
    mocker.patch("flowbot.utils.queue.RedisJobDispatcher.start_workers", new_callable=AsyncMock)
    mocker.patch("flowbot.utils.queue.RedisJobDispatcher.stop_workers", new_callable=AsyncMock)
    mocker.patch("flowbot.services.db_service.DatabaseService.create_indexes", new_callable=AsyncMock)
    mocker.patch("flowbot.services.whatsapp_service.WhatsAppService.close", new_callable=AsyncMock)
    mocker.patch("flowbot.services.cache_service.CacheService.close", new_callable=AsyncMock)
    mocker.patch("flowbot.utils.alerting.AlertingService.cleanup", new_callable=AsyncMock)

    from flowbot.main import app
    from flowbot.services.db_service import db_service
    mocker.patch.object(db_service, "client")

    # The app's lifespan (startup/shutdown events) is managed by the TestClient
    with TestClient(app) as client:
        yield client
