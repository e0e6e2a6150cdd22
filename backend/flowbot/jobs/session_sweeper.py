# /flowbot/jobs/session_sweeper.py

"""
Idle session sweeper.

Chatbot conversations have no explicit end when the contact simply stops
replying. This job ends every live conversation whose last activity is older
than SESSION_TIMEOUT_MINUTES so that the contact's next message starts a
fresh trigger match instead of resuming a stale menu.

Runs every 5 minutes from backend/scheduler.py.
"""

import logging
from datetime import datetime
from typing import Optional

from flowbot.services.flow_service import chatbot_executor

logger = logging.getLogger(__name__)


async def sweep_idle_sessions(now: Optional[datetime] = None) -> int:
    logger.info("Starting idle session sweep...")
    try:
        ended = await chatbot_executor.sweep_idle_sessions(now)
    except Exception as e:
        logger.error(f"Idle session sweep failed: {e}", exc_info=True)
        return 0
    logger.info(f"Idle session sweep complete: {ended} conversations ended.")
    return ended
