# backend/tests/unit/test_campaign.py
import pytest
from unittest.mock import AsyncMock

from flowbot.engine.errors import FlowEngineError
from flowbot.engine.modes.campaign import CAMPAIGN_JOB_KIND, CampaignExecutor, batch_delays, normalize_contacts
from flowbot.models.campaign import CampaignContact, CampaignStatus, WorkUnit
from flowbot.models.execution import SendResult
from flowbot.models.flow import FlowMode


@pytest.fixture
def campaign_flow(make_flow):
    return make_flow(
        "promo",
        [("s", "start", {}), ("m", "message", {"text": "Hi {{name}}, your code is {{coupon}}"}), ("e", "end", {})],
        [("s", "m", None), ("m", "e", None)],
        mode=FlowMode.CAMPAIGN,
    )


@pytest.fixture
def dispatcher():
    return AsyncMock()


@pytest.fixture
def campaigns(engine, registry, store, dispatcher, local_lock, test_settings):
    return CampaignExecutor(engine, registry, store, dispatcher, local_lock, settings=test_settings, sleep=AsyncMock())


def test_normalize_contacts_strips_and_deduplicates():
    contacts = [
        CampaignContact(phone="+55 (11) 99999-0001", name="Ana"),
        CampaignContact(phone="5511999990001", name="Duplicate"),
        CampaignContact(phone="  "),
        CampaignContact(phone="5511999990002"),
    ]
    normalized = normalize_contacts(contacts)
    assert [contact.phone for contact in normalized] == ["5511999990001", "5511999990002"]
    assert normalized[0].name == "Ana"


def test_batch_delays_spread_batches_by_rate_limit():
    batches = [[CampaignContact(phone="1")] * 3, [CampaignContact(phone="2")] * 3, [CampaignContact(phone="3")]]
    assert batch_delays(batches, 1500) == [0, 5, 10]
    assert batch_delays(batches, 0) == [0, 0, 0]


@pytest.mark.asyncio
async def test_start_rejects_chatbot_flows(campaigns, make_flow, credentials):
    flow = make_flow("bot", [("s", "start", {}), ("e", "end", {})], [("s", "e", None)])
    with pytest.raises(FlowEngineError) as exc_info:
        await campaigns.start(flow, [CampaignContact(phone="5511999990001")], credentials)
    assert exc_info.value.error_type == FlowEngineError.INVALID_MODE


@pytest.mark.asyncio
async def test_start_rejects_invalid_flows(campaigns, make_flow, credentials):
    flow = make_flow("broken", [("m", "message", {"text": "hi"})], [], mode=FlowMode.CAMPAIGN)
    with pytest.raises(FlowEngineError) as exc_info:
        await campaigns.start(flow, [CampaignContact(phone="5511999990001")], credentials)
    assert exc_info.value.error_type == FlowEngineError.VALIDATION_ERROR


@pytest.mark.asyncio
async def test_start_records_execution_and_enqueues_batches(campaigns, campaign_flow, store, dispatcher, credentials):
    contacts = [CampaignContact(phone=f"55119999900{i:02d}") for i in range(5)]
    execution = await campaigns.start(campaign_flow, contacts, credentials, batch_size=2, rate_limit_ms=1000)

    assert store.campaigns[execution.id].total_contacts == 5
    assert execution.batches_total == 3
    units = [call.args[0] for call in dispatcher.enqueue.await_args_list]
    assert [unit.batch_index for unit in units] == [0, 1, 2]
    assert [unit.is_last_batch for unit in units] == [False, False, True]
    assert all(unit.kind == CAMPAIGN_JOB_KIND for unit in units)
    assert units[0].phone_number_id == credentials.phone_number_id
    assert dispatcher.enqueue.await_args_list[0].kwargs["not_before"] is None
    assert dispatcher.enqueue.await_args_list[1].kwargs["not_before"] is not None


@pytest.mark.asyncio
async def test_start_with_no_contacts_completes_immediately(campaigns, campaign_flow, store, credentials):
    execution = await campaigns.start(campaign_flow, [CampaignContact(phone="---")], credentials)
    assert execution.status == CampaignStatus.COMPLETED


async def _begin(campaigns, flow, store, contacts, credentials):
    await store.save_flow(flow)
    execution = await campaigns.start(flow, contacts, credentials, batch_size=len(contacts))
    return execution, campaigns.dispatcher.enqueue.await_args_list[0].args[0]


@pytest.mark.asyncio
async def test_batch_sends_skips_and_finalizes(campaigns, campaign_flow, store, sender, credentials):
    contacts = [
        CampaignContact(phone="5511999990001", name="Ana", variables={"coupon": "A1"}),
        CampaignContact(phone="5511999990002", name="Bia", variables={"coupon": "B2"}),
        CampaignContact(phone="5511999990003", name="Caio", variables={"coupon": "C3"}),
    ]
    store.opted_out.add("5511999990002")
    execution, unit = await _begin(campaigns, campaign_flow, store, contacts, credentials)
    sender.results = [SendResult(success=True, message_id="wamid.1"),
                      SendResult(success=False, error_code=131026, error_message="Message undeliverable")]

    await campaigns.process_batch(unit)

    record = store.campaigns[execution.id]
    assert (record.sent_count, record.failed_count, record.skipped_count) == (1, 0, 2)
    assert record.skip_reasons == {"5511999990002": "opted_out", "5511999990003": "invalid_recipient"}
    assert record.status == CampaignStatus.COMPLETED
    assert record.batches_done == 1
    assert sender.texts()[0] == "Hi Ana, your code is A1"
    assert store.states[("promo", "5511999990001")].mode == "campaign"


@pytest.mark.asyncio
async def test_redelivered_batch_does_not_resend(campaigns, campaign_flow, store, sender, credentials):
    contacts = [CampaignContact(phone="5511999990001"), CampaignContact(phone="5511999990002")]
    execution, unit = await _begin(campaigns, campaign_flow, store, contacts, credentials)
    not_last = unit.model_copy(update={"is_last_batch": False})

    await campaigns.process_batch(not_last)
    await campaigns.process_batch(not_last)

    assert len(sender.sent) == 2
    assert store.campaigns[execution.id].sent_count == 2


@pytest.mark.asyncio
async def test_failed_contacts_fail_the_campaign(campaigns, campaign_flow, store, sender, credentials):
    execution, unit = await _begin(campaigns, campaign_flow, store, [CampaignContact(phone="5511999990001")], credentials)
    sender.results = [SendResult(success=False, error_code=190, error_message="Token expired")]

    await campaigns.process_batch(unit)

    record = store.campaigns[execution.id]
    assert record.failed_count == 1
    assert record.skip_reasons == {"5511999990001": "critical"}
    assert record.status == CampaignStatus.FAILED


@pytest.mark.asyncio
async def test_cancelled_campaign_skips_remaining_batches(campaigns, campaign_flow, store, sender, credentials):
    execution, unit = await _begin(campaigns, campaign_flow, store, [CampaignContact(phone="5511999990001")], credentials)
    assert await campaigns.cancel(execution.id)

    await campaigns.process_batch(unit)

    assert sender.sent == []
    assert store.campaigns[execution.id].status == CampaignStatus.CANCELLED
    assert not await campaigns.cancel(execution.id)


@pytest.mark.asyncio
async def test_deleted_flow_fails_the_campaign(campaigns, campaign_flow, store, credentials):
    execution, unit = await _begin(campaigns, campaign_flow, store, [CampaignContact(phone="5511999990001")], credentials)
    store.flows.clear()

    await campaigns.process_batch(unit)

    assert store.campaigns[execution.id].status == CampaignStatus.FAILED


@pytest.mark.asyncio
async def test_unknown_execution_raises_for_dispatcher_retry(campaigns):
    unit = WorkUnit(execution_id="missing", flow_id="promo", batch_index=0)
    with pytest.raises(FlowEngineError):
        await campaigns.handle_job(unit.model_dump(mode="json"))


@pytest.mark.asyncio
async def test_rate_limit_sleeps_between_contacts(campaigns, campaign_flow, store, credentials):
    contacts = [CampaignContact(phone=f"55119999900{i:02d}") for i in range(3)]
    _, unit = await _begin(campaigns, campaign_flow, store, contacts, credentials)
    unit = unit.model_copy(update={"rate_limit_ms": 2000})

    await campaigns.process_batch(unit)

    assert campaigns.sleep.await_count == 2
    campaigns.sleep.assert_awaited_with(2.0)


@pytest.mark.asyncio
async def test_batches_finishing_out_of_order_all_run_before_finalize(campaigns, campaign_flow, store, sender, credentials):
    """The last batch finishing first must not close the campaign on the earlier ones."""
    await store.save_flow(campaign_flow)
    contacts = [CampaignContact(phone=f"55119999900{i:02d}") for i in range(4)]
    execution = await campaigns.start(campaign_flow, contacts, credentials, batch_size=2)
    first, last = [call.args[0] for call in campaigns.dispatcher.enqueue.await_args_list]

    await campaigns.process_batch(last)
    assert store.campaigns[execution.id].status == CampaignStatus.RUNNING

    await campaigns.process_batch(first)

    record = store.campaigns[execution.id]
    assert record.status == CampaignStatus.COMPLETED
    assert record.sent_count == 4
    assert record.batches_done == 2
    assert len(sender.sent) == 4


@pytest.mark.asyncio
async def test_redelivered_batch_is_counted_once(campaigns, campaign_flow, store, credentials):
    await store.save_flow(campaign_flow)
    contacts = [CampaignContact(phone=f"55119999900{i:02d}") for i in range(4)]
    execution = await campaigns.start(campaign_flow, contacts, credentials, batch_size=2)
    first, _ = [call.args[0] for call in campaigns.dispatcher.enqueue.await_args_list]

    await campaigns.process_batch(first)
    await campaigns.process_batch(first)

    record = store.campaigns[execution.id]
    assert record.batches_done == 1
    assert record.status == CampaignStatus.RUNNING
