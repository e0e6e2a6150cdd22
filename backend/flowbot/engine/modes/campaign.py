# /flowbot/engine/modes/campaign.py

import asyncio
import logging
import math
import re
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

from flowbot.config.settings import Settings, WhatsAppCredentials, settings as default_settings
from flowbot.engine.errors import FlowEngineError
from flowbot.engine.executor import FlowExecutor
from flowbot.engine.nodes.registry import NodeExecutorRegistry
from flowbot.engine.validator import can_publish
from flowbot.models.campaign import CampaignContact, CampaignExecution, CampaignStatus, WorkUnit
from flowbot.models.conversation import ConversationState
from flowbot.models.execution import ExecutionOutcome, ExecutionStatus
from flowbot.models.flow import Flow, FlowMode
from flowbot.utils.metrics import campaign_contacts_counter

logger = logging.getLogger(__name__)

CAMPAIGN_JOB_KIND = "campaign_batch"


def normalize_contacts(contacts: List[CampaignContact]) -> List[CampaignContact]:
    """Digits-only phones, blanks dropped, first occurrence of a phone wins."""
    seen = set()
    normalized = []
    for contact in contacts:
        phone = re.sub(r"\D", "", contact.phone or "")
        if not phone or phone in seen:
            continue
        seen.add(phone)
        normalized.append(contact.model_copy(update={"phone": phone}))
    return normalized


def batch_delays(batches: List[List[CampaignContact]], rate_limit_ms: int) -> List[int]:
    """Seconds after start at which each batch may begin, so batches never overlap under the rate limit."""
    delays = []
    elapsed = 0
    for batch in batches:
        delays.append(elapsed)
        elapsed += math.ceil(len(batch) * rate_limit_ms / 1000)
    return delays


class CampaignExecutor:
    """
    Runs one flow for a list of contacts. `start` validates the flow, records
    the execution and fans the contacts out into rate-limited batches on the
    job dispatcher; `process_batch` is the dispatcher handler that runs the
    engine for each contact of one batch.
    """

    def __init__(
        self,
        engine: FlowExecutor,
        registry: NodeExecutorRegistry,
        store,
        dispatcher,
        lock,
        settings: Optional[Settings] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.engine = engine
        self.registry = registry
        self.store = store
        self.dispatcher = dispatcher
        self.lock = lock
        self.settings = settings or default_settings
        self.sleep = sleep

    async def start(
        self,
        flow: Flow,
        contacts: List[CampaignContact],
        credentials: Optional[WhatsAppCredentials] = None,
        batch_size: Optional[int] = None,
        rate_limit_ms: Optional[int] = None,
    ) -> CampaignExecution:
        if flow.mode != FlowMode.CAMPAIGN:
            raise FlowEngineError(FlowEngineError.INVALID_MODE, f"Flow {flow.id} is a {flow.mode.value} flow, not a campaign")
        publishable, reason = can_publish(flow, self.registry)
        if not publishable:
            raise FlowEngineError(FlowEngineError.VALIDATION_ERROR, f"Flow {flow.id} cannot run: {reason}")

        credentials = credentials or self.settings.default_credentials()
        if not credentials.access_token:
            raise FlowEngineError(FlowEngineError.CREDENTIALS_MISSING, "A WhatsApp access token is required to run a campaign")

        batch_size = batch_size or self.settings.campaign_batch_size
        rate_limit_ms = self.settings.campaign_rate_limit_ms if rate_limit_ms is None else rate_limit_ms
        contacts = normalize_contacts(contacts)
        batches = [contacts[i:i + batch_size] for i in range(0, len(contacts), batch_size)]

        execution = CampaignExecution(
            id=str(uuid.uuid4()),
            flow_id=flow.id,
            total_contacts=len(contacts),
            batches_total=len(batches),
        )
        await self.store.create_campaign_execution(execution)
        logger.info(f"Campaign {execution.id} for flow {flow.id}: {len(contacts)} contacts in {len(batches)} batches")

        if not batches:
            return await self.finalize(execution.id) or execution

        now = datetime.now(timezone.utc)
        for index, (batch, delay) in enumerate(zip(batches, batch_delays(batches, rate_limit_ms))):
            unit = WorkUnit(
                kind=CAMPAIGN_JOB_KIND,
                execution_id=execution.id,
                flow_id=flow.id,
                batch_index=index,
                is_last_batch=index == len(batches) - 1,
                contacts=batch,
                rate_limit_ms=rate_limit_ms,
                phone_number_id=credentials.phone_number_id,
            )
            await self.dispatcher.enqueue(unit, not_before=now + timedelta(seconds=delay) if delay else None)
        return execution

    async def handle_job(self, data: Dict[str, Any]):
        await self.process_batch(WorkUnit.model_validate(data))

    async def process_batch(self, unit: WorkUnit):
        execution = await self.store.get_campaign_execution(unit.execution_id)
        if execution is None:
            raise FlowEngineError(FlowEngineError.EXECUTION_NOT_FOUND, f"Campaign execution {unit.execution_id} not found")
        if execution.status in (CampaignStatus.CANCELLED, CampaignStatus.FAILED):
            logger.info(f"Campaign {unit.execution_id} is {execution.status.value}; skipping batch {unit.batch_index}")
            return

        flow = await self.store.get_flow(unit.flow_id)
        if flow is None:
            await self.store.fail_campaign_execution(unit.execution_id, f"Flow {unit.flow_id} not found")
            logger.error(f"Campaign {unit.execution_id} failed: flow {unit.flow_id} no longer exists")
            return

        credentials = self.settings.credentials_for(unit.phone_number_id)
        for position, contact in enumerate(unit.contacts):
            if await self.store.is_campaign_contact_processed(unit.execution_id, contact.phone):
                continue

            if await self.store.is_opted_out(contact.phone):
                await self._record(unit.execution_id, contact.phone, "skipped", "opted_out")
                continue

            async with self.lock.hold(contact.phone):
                outcome = await self._run_contact(flow, execution, contact, credentials)
            status, reason = self._contact_status(outcome)
            await self._record(unit.execution_id, contact.phone, status, reason)

            if position < len(unit.contacts) - 1 and unit.rate_limit_ms:
                await self.sleep(unit.rate_limit_ms / 1000)

        progress = await self.store.mark_campaign_batch_done(unit.execution_id, unit.batch_index)
        logger.info(f"Campaign {unit.execution_id} batch {unit.batch_index} done ({len(unit.contacts)} contacts)")
        # Batches may finish out of order; only the one completing the set finalizes.
        if progress and progress.batches_done >= progress.batches_total:
            await self.finalize(unit.execution_id)

    async def _run_contact(self, flow: Flow, execution: CampaignExecution, contact: CampaignContact,
                           credentials: WhatsAppCredentials) -> ExecutionOutcome:
        # Replaces any earlier conversation of this contact in the flow so
        # that replies to the campaign's interactive messages land here.
        existing = await self.engine.state_manager.get(flow.id, contact.phone)
        state = ConversationState(
            flow_id=flow.id,
            contact_id=contact.phone,
            contact_name=contact.name,
            execution_id=execution.id,
            mode=FlowMode.CAMPAIGN.value,
            current_node_id=None,
            variables=dict(contact.variables),
            version=existing.version if existing else 0,
        )
        return await self.engine.run(flow, state, None, credentials)

    @staticmethod
    def _contact_status(outcome: ExecutionOutcome):
        if outcome.skip_reason:
            return "skipped", outcome.skip_reason
        if outcome.status == ExecutionStatus.HALTED_ERROR:
            return "failed", outcome.error_category or "error"
        return "sent", None

    async def _record(self, execution_id: str, phone: str, status: str, reason: Optional[str]):
        recorded = await self.store.record_campaign_contact(execution_id, phone, status, reason)
        if recorded:
            campaign_contacts_counter.labels(status=status).inc()
            if reason:
                logger.info(f"Campaign {execution_id}: {phone} {status} ({reason})")

    async def finalize(self, execution_id: str) -> Optional[CampaignExecution]:
        execution = await self.store.finalize_campaign_execution(execution_id)
        if execution:
            logger.info(
                f"Campaign {execution_id} {execution.status.value}: {execution.sent_count} sent, "
                f"{execution.failed_count} failed, {execution.skipped_count} skipped"
            )
        return execution

    async def cancel(self, execution_id: str) -> bool:
        cancelled = await self.store.cancel_campaign_execution(execution_id)
        if cancelled:
            logger.info(f"Campaign {execution_id} cancelled; remaining batches will be skipped")
        return cancelled
