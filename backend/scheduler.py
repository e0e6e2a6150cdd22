# /backend/scheduler.py

import asyncio
import logging
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from flowbot.config.settings import settings
from flowbot.jobs.session_sweeper import sweep_idle_sessions

# Configure basic logging for this service
logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - [%(name)s] - %(message)s')
logger = logging.getLogger("SchedulerService")

SWEEP_INTERVAL_MINUTES = 5


def build_scheduler() -> AsyncIOScheduler:
    scheduler = AsyncIOScheduler(timezone=settings.timezone)

    # End chatbot conversations idle past the session timeout
    scheduler.add_job(
        sweep_idle_sessions,
        'interval',
        minutes=SWEEP_INTERVAL_MINUTES,
        id="idle_session_sweeper_job",
        replace_existing=True,
        max_instances=1,
    )
    logger.info(f"Scheduled job: sweep_idle_sessions (every {SWEEP_INTERVAL_MINUTES} minutes).")
    return scheduler


async def main():
    scheduler = build_scheduler()
    scheduler.start()
    logger.info("Scheduler started successfully. Press Ctrl+C to exit.")

    # This loop keeps the script running forever
    try:
        while True:
            await asyncio.sleep(3600)
    except (KeyboardInterrupt, SystemExit):
        scheduler.shutdown()

if __name__ == "__main__":
    asyncio.run(main())
