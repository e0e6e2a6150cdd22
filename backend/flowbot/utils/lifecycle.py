# /flowbot/utils/lifecycle.py

import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI

from flowbot.utils.logging import setup_logging
from flowbot.utils.alerting import alerting_service
from flowbot.utils.queue import job_dispatcher
from flowbot.services.cache_service import cache_service
from flowbot.services.db_service import db_service
from flowbot.services.flow_service import register_job_handlers
from flowbot.services.whatsapp_service import whatsapp_service

# Startup: logging, indexes, job handlers and dispatcher workers.
# Shutdown: workers first, then the clients they use.

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup and shutdown events."""
    setup_logging()

    logger.info("Application starting up...")

    await db_service.create_indexes()
    register_job_handlers(job_dispatcher)
    await job_dispatcher.start_workers()

    logger.info("Application startup complete. Ready to accept requests.")

    yield  # Application is now running

    logger.info("Application shutting down...")

    await job_dispatcher.stop_workers()
    await alerting_service.cleanup()
    await whatsapp_service.close()
    await cache_service.close()
    if db_service.client:
        db_service.client.close()
