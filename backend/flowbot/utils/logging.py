# /flowbot/utils/logging.py

import logging
import sys
import structlog
from flowbot.config.settings import settings

# Structured logging for the engine, the dispatcher workers and the API.
# JSON in production so node executions can be traced per contact.

_configured = False


def setup_logging(level: int = logging.INFO):
    """
    Configures structlog on top of the standard logging module so that
    `logging.getLogger(__name__)` calls in the engine and `structlog.get_logger`
    calls in the routes render through the same handler.
    """
    global _configured
    if _configured:
        return

    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if settings.environment == "development":
        final_processor = structlog.dev.ConsoleRenderer()
    else:
        final_processor = structlog.processors.JSONRenderer()

    structlog.configure(
        processors=shared_processors + [structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        processor=final_processor,
        foreign_pre_chain=shared_processors,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("apscheduler").setLevel(logging.WARNING)
    _configured = True


def bind_execution(execution_id: str, flow_id: str, contact: str):
    """Attach execution identifiers to every log line emitted in this task."""
    structlog.contextvars.bind_contextvars(execution_id=execution_id, flow_id=flow_id, contact=contact)


def clear_execution():
    structlog.contextvars.clear_contextvars()
