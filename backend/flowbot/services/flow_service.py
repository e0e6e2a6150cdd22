# /flowbot/services/flow_service.py

import logging

from flowbot.config.settings import settings
from flowbot.engine.executor import RESUME_JOB_KIND, FlowExecutor
from flowbot.engine.modes.campaign import CAMPAIGN_JOB_KIND, CampaignExecutor
from flowbot.engine.modes.chatbot import INBOUND_JOB_KIND, ChatbotExecutor
from flowbot.engine.nodes.registry import build_default_registry
from flowbot.engine.state import StateManager
from flowbot.services.cache_service import cache_service
from flowbot.services.db_service import db_service
from flowbot.services.whatsapp_service import whatsapp_service
from flowbot.utils.alerting import alerting_service
from flowbot.utils.locks import contact_lock
from flowbot.utils.queue import job_dispatcher

# Wires the engine to the process-wide services. Routes, jobs and the
# lifespan import the executors from here.

logger = logging.getLogger(__name__)

node_registry = build_default_registry()
state_manager = StateManager(db_service, cache_service, settings.state_cache_ttl)

flow_engine = FlowExecutor(
    node_registry,
    state_manager,
    whatsapp_service,
    alerting=alerting_service,
    store=db_service,
    dispatcher=job_dispatcher,
    settings=settings,
)

campaign_executor = CampaignExecutor(flow_engine, node_registry, db_service, job_dispatcher, contact_lock, settings=settings)
chatbot_executor = ChatbotExecutor(flow_engine, db_service, contact_lock, settings=settings)


def register_job_handlers(dispatcher=job_dispatcher):
    """Idempotent: safe to call from every lifespan start."""
    if CAMPAIGN_JOB_KIND not in dispatcher.handlers:
        dispatcher.register_handler(CAMPAIGN_JOB_KIND, campaign_executor.handle_job)
    if RESUME_JOB_KIND not in dispatcher.handlers:
        dispatcher.register_handler(RESUME_JOB_KIND, chatbot_executor.handle_resume_job)
    if INBOUND_JOB_KIND not in dispatcher.handlers:
        dispatcher.register_handler(INBOUND_JOB_KIND, chatbot_executor.handle_inbound_job)
    logger.info(f"Job handlers registered: {', '.join(sorted(dispatcher.handlers))}")
