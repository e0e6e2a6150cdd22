# /flowbot/services/db_service.py

import logging
from datetime import datetime
from typing import List, Optional, Dict, Any

from motor.motor_asyncio import AsyncIOMotorClient
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from flowbot.config.settings import settings
from flowbot.models.campaign import CampaignExecution, CampaignStatus
from flowbot.models.conversation import ConversationState, ConversationStatus
from flowbot.models.flow import Flow, FlowMode, FlowStatus, utcnow
from flowbot.utils.metrics import database_operations_counter

logger = logging.getLogger(__name__)

IDLE_SWEEP_LIMIT = 500


def _strip_id(document: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if document is not None:
        document.pop("_id", None)
    return document


class DatabaseService:
    """
    Durable tier: flows, conversation states, campaign executions, contact
    consent and the node execution log, all in MongoDB.

    State writes are compare-and-set on `version` and errors propagate to the
    caller; only the execution log is best-effort.
    """

    def __init__(self, mongo_uri: str):
        try:
            self.client = AsyncIOMotorClient(
                mongo_uri,
                maxPoolSize=settings.max_pool_size,
                minPoolSize=settings.min_pool_size,
                tls=settings.mongo_tls,
                tz_aware=True,
                serverSelectionTimeoutMS=5000,
                connectTimeoutMS=10000
            )
            self.db = self.client.get_default_database()
            logger.info("MongoDB client initialized successfully.")
        except Exception as e:
            logger.error(f"Error initializing MongoDB client: {e}")
            raise

    # ==================== Index Management ====================

    async def create_indexes(self) -> None:
        """Create all necessary database indexes on startup."""
        indexes = [
            ("flows", [("id", 1)], {"unique": True}),
            ("flows", [("status", 1), ("mode", 1), ("is_active", 1)], {}),
            ("conversation_states", [("flow_id", 1), ("contact_id", 1)], {"unique": True}),
            ("conversation_states", [("contact_id", 1), ("status", 1), ("last_activity_at", -1)], {}),
            ("conversation_states", [("status", 1), ("last_activity_at", 1)], {}),
            ("campaign_executions", [("id", 1)], {"unique": True}),
            ("contacts", [("phone", 1)], {"unique": True}),
            ("node_executions", [("execution_id", 1), ("executed_at", 1)], {}),
        ]

        for collection, keys, options in indexes:
            try:
                await self.db[collection].create_index(keys, **options)
                logger.debug(f"Created index on {collection}: {keys}")
            except Exception as e:
                logger.error(f"Failed to create index on {collection} {keys}: {e}")

        logger.info("Database indexes created successfully.")

    async def health_check(self) -> bool:
        try:
            await self.client.admin.command('ping')
            return True
        except Exception as e:
            logger.error(f"MongoDB health check failed: {e}")
            return False

    # ==================== Flows ====================

    async def get_flow(self, flow_id: str) -> Optional[Flow]:
        document = _strip_id(await self.db.flows.find_one({"id": flow_id}))
        database_operations_counter.labels(operation="get_flow", status="success" if document else "miss").inc()
        return Flow.model_validate(document) if document else None

    async def list_active_chatbot_flows(self) -> List[Flow]:
        cursor = self.db.flows.find({
            "status": FlowStatus.PUBLISHED.value,
            "mode": FlowMode.CHATBOT.value,
            "is_active": True,
        }).sort("updated_at", -1)
        return [Flow.model_validate(_strip_id(document)) for document in await cursor.to_list(length=None)]

    async def save_flow(self, flow: Flow) -> Flow:
        flow.updated_at = utcnow()
        await self.db.flows.replace_one({"id": flow.id}, flow.model_dump(mode="python"), upsert=True)
        database_operations_counter.labels(operation="save_flow", status="success").inc()
        return flow

    async def publish_flow(self, flow_id: str) -> Optional[Flow]:
        document = await self.db.flows.find_one_and_update(
            {"id": flow_id},
            {"$set": {"status": FlowStatus.PUBLISHED.value, "updated_at": utcnow()}, "$inc": {"version": 1}},
            return_document=ReturnDocument.AFTER,
        )
        return Flow.model_validate(_strip_id(document)) if document else None

    # ==================== Conversation States ====================

    async def get_conversation_state(self, flow_id: str, contact_id: str) -> Optional[ConversationState]:
        document = _strip_id(await self.db.conversation_states.find_one({"flow_id": flow_id, "contact_id": contact_id}))
        database_operations_counter.labels(operation="get_state", status="success" if document else "miss").inc()
        return ConversationState.model_validate(document) if document else None

    async def save_conversation_state(self, state: ConversationState, expected_version: Optional[int] = None) -> Optional[int]:
        """
        Persist `state` with its version bumped by one and return the new
        version. With `expected_version` the write only lands if the stored
        version still matches; None is returned when it doesn't.
        """
        new_version = (expected_version if expected_version is not None else state.version) + 1
        document = state.model_dump(mode="python")
        document["version"] = new_version
        key = {"flow_id": state.flow_id, "contact_id": state.contact_id}

        if expected_version is None:
            await self.db.conversation_states.replace_one(key, document, upsert=True)
        elif expected_version == 0:
            try:
                await self.db.conversation_states.insert_one(document)
            except DuplicateKeyError:
                database_operations_counter.labels(operation="save_state", status="conflict").inc()
                return None
        else:
            result = await self.db.conversation_states.replace_one({**key, "version": expected_version}, document)
            if result.matched_count == 0:
                database_operations_counter.labels(operation="save_state", status="conflict").inc()
                return None

        database_operations_counter.labels(operation="save_state", status="success").inc()
        return new_version

    async def delete_conversation_state(self, flow_id: str, contact_id: str) -> bool:
        result = await self.db.conversation_states.delete_one({"flow_id": flow_id, "contact_id": contact_id})
        return result.deleted_count > 0

    async def find_active_conversation_state(self, contact_id: str) -> Optional[ConversationState]:
        """The contact's live (active or paused) conversation, most recent first."""
        document = await self.db.conversation_states.find_one(
            {"contact_id": contact_id, "status": {"$in": [ConversationStatus.ACTIVE.value, ConversationStatus.PAUSED.value]}},
            sort=[("last_activity_at", -1)],
        )
        return ConversationState.model_validate(_strip_id(document)) if document else None

    async def find_idle_conversation_states(self, cutoff: datetime, limit: int = IDLE_SWEEP_LIMIT) -> List[ConversationState]:
        cursor = self.db.conversation_states.find(
            {"status": ConversationStatus.ACTIVE.value, "last_activity_at": {"$lt": cutoff}}
        ).limit(limit)
        return [ConversationState.model_validate(_strip_id(document)) for document in await cursor.to_list(length=limit)]

    # ==================== Contacts ====================

    async def is_opted_out(self, phone: str) -> bool:
        document = await self.db.contacts.find_one({"phone": phone, "opted_out": True}, {"_id": 1})
        return document is not None

    async def mark_contact_opted_out(self, phone: str, reason: str = "provider_opt_out") -> None:
        await self.db.contacts.update_one(
            {"phone": phone},
            {"$set": {"opted_out": True, "opted_out_at": utcnow(), "opt_out_reason": reason}},
            upsert=True,
        )
        database_operations_counter.labels(operation="opt_out", status="success").inc()
        logger.info(f"Contact {phone} marked as opted out ({reason}).")

    # ==================== Campaign Executions ====================

    async def create_campaign_execution(self, execution: CampaignExecution) -> CampaignExecution:
        await self.db.campaign_executions.insert_one(execution.model_dump(mode="python"))
        return execution

    async def get_campaign_execution(self, execution_id: str) -> Optional[CampaignExecution]:
        document = _strip_id(await self.db.campaign_executions.find_one({"id": execution_id}))
        return CampaignExecution.model_validate(document) if document else None

    async def is_campaign_contact_processed(self, execution_id: str, phone: str) -> bool:
        document = await self.db.campaign_executions.find_one(
            {"id": execution_id, "processed_contacts": phone}, {"_id": 1}
        )
        return document is not None

    async def record_campaign_contact(self, execution_id: str, phone: str, status: str, skip_reason: Optional[str] = None) -> bool:
        """
        Count one contact's outcome exactly once. Returns False when the
        contact was already recorded (a redelivered batch).
        """
        counter = {"sent": "sent_count", "failed": "failed_count", "skipped": "skipped_count"}[status]
        update: Dict[str, Any] = {"$inc": {counter: 1}, "$push": {"processed_contacts": phone}}
        if skip_reason:
            update["$set"] = {f"skip_reasons.{phone}": skip_reason}
        result = await self.db.campaign_executions.update_one(
            {"id": execution_id, "processed_contacts": {"$ne": phone}}, update
        )
        return result.modified_count > 0

    async def mark_campaign_batch_done(self, execution_id: str, batch_index: int) -> Optional[CampaignExecution]:
        """
        Count a batch as done exactly once and return the updated record, so
        the caller can tell whether every batch has finished.
        """
        document = await self.db.campaign_executions.find_one_and_update(
            {"id": execution_id, "completed_batches": {"$ne": batch_index}},
            {"$inc": {"batches_done": 1}, "$push": {"completed_batches": batch_index}},
            return_document=ReturnDocument.AFTER,
        )
        if document is None:
            return await self.get_campaign_execution(execution_id)
        return CampaignExecution.model_validate(_strip_id(document))

    async def finalize_campaign_execution(self, execution_id: str) -> Optional[CampaignExecution]:
        execution = await self.get_campaign_execution(execution_id)
        if execution is None or execution.status != CampaignStatus.RUNNING:
            return execution

        processed = execution.sent_count + execution.failed_count + execution.skipped_count
        all_failed = processed > 0 and execution.failed_count == processed
        status = CampaignStatus.FAILED if all_failed else CampaignStatus.COMPLETED
        document = await self.db.campaign_executions.find_one_and_update(
            {"id": execution_id, "status": CampaignStatus.RUNNING.value},
            {"$set": {"status": status.value, "completed_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        return CampaignExecution.model_validate(_strip_id(document)) if document else execution

    async def cancel_campaign_execution(self, execution_id: str) -> bool:
        result = await self.db.campaign_executions.update_one(
            {"id": execution_id, "status": CampaignStatus.RUNNING.value},
            {"$set": {"status": CampaignStatus.CANCELLED.value, "completed_at": utcnow()}},
        )
        return result.modified_count > 0

    async def fail_campaign_execution(self, execution_id: str, error: str) -> None:
        await self.db.campaign_executions.update_one(
            {"id": execution_id, "status": CampaignStatus.RUNNING.value},
            {"$set": {"status": CampaignStatus.FAILED.value, "error": error, "completed_at": utcnow()}},
        )

    # ==================== Execution Log ====================

    async def log_node_execution(self, record: Dict[str, Any]) -> None:
        """Best-effort audit trail of node executions."""
        try:
            await self.db.node_executions.insert_one({**record, "executed_at": utcnow()})
        except Exception as e:
            database_operations_counter.labels(operation="log_node_execution", status="failed").inc()
            logger.warning(f"Failed to log node execution {record.get('node_id')}: {e}")


# Globally accessible instance
db_service = DatabaseService(settings.mongo_uri)
