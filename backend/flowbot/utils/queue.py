# /flowbot/utils/queue.py

import json
import uuid
import asyncio
import logging
import redis as redis_package
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional

from flowbot.config.settings import settings
from flowbot.services.cache_service import cache_service

# Redis Streams job dispatcher for campaign batches and delayed flow resumes.
# Jobs due later wait in a sorted set and are promoted to the stream when
# due. Delivery is at least once: a job is acknowledged only after its
# handler returns, failed jobs are re-enqueued with backoff and finally
# moved to a dead-letter stream.

logger = logging.getLogger(__name__)

JobHandler = Callable[[Dict[str, Any]], Awaitable[None]]

RETRY_BASE_SECONDS = 5
PROMOTE_INTERVAL = 1.0
PROMOTE_BATCH = 100


class RedisJobDispatcher:
    def __init__(self, redis_client, stream_name: str = "flow_jobs", max_workers: int = 4, max_retries: int = 3):
        self.redis = redis_client
        self.stream_name = stream_name
        self.delayed_key = f"{stream_name}:delayed"
        self.dead_letter_stream = f"{stream_name}:dead"
        self.consumer_group = "flow_workers"
        self.max_workers = max_workers
        self.max_retries = max_retries
        self.handlers: Dict[str, JobHandler] = {}
        self.workers = []
        self.running = False

    def register_handler(self, kind: str, handler: JobHandler):
        if kind in self.handlers:
            raise ValueError(f"A handler for job kind '{kind}' is already registered")
        self.handlers[kind] = handler

    async def initialize(self):
        if not self.redis: return
        try:
            await self.redis.xgroup_create(self.stream_name, self.consumer_group, id="0", mkstream=True)
        except redis_package.exceptions.ResponseError as e:
            if "BUSYGROUP" not in str(e): raise

    async def start_workers(self):
        if not self.redis: return
        await self.initialize()
        self.running = True
        for i in range(self.max_workers):
            self.workers.append(asyncio.create_task(self._worker(f"worker-{i}-{uuid.uuid4().hex[:4]}")))
        self.workers.append(asyncio.create_task(self._promoter()))
        logger.info(f"Started {self.max_workers} flow job workers.")

    async def stop_workers(self):
        self.running = False
        for worker in self.workers:
            worker.cancel()
        await asyncio.gather(*self.workers, return_exceptions=True)
        self.workers = []

    # ---------------- Producing ---------------- #

    async def enqueue(self, job: Any, not_before: Optional[datetime] = None):
        """Queue a job (a dict or a pydantic model with a `kind` field)."""
        data = job.model_dump(mode="json") if hasattr(job, "model_dump") else dict(job)
        if not data.get("kind"):
            raise ValueError("Jobs must carry a 'kind'")

        if not self.redis:
            logger.warning(f"Redis unavailable, running '{data['kind']}' job in-process")
            asyncio.create_task(self._run_in_process(data, not_before))
            return

        payload = json.dumps(data)
        if not_before and not_before > datetime.now(timezone.utc):
            await self.redis.zadd(self.delayed_key, {payload: not_before.timestamp()})
        else:
            await self.redis.xadd(self.stream_name, {"data": payload})

    async def _run_in_process(self, data: Dict[str, Any], not_before: Optional[datetime]):
        if not_before:
            await asyncio.sleep(max((not_before - datetime.now(timezone.utc)).total_seconds(), 0))
        try:
            await self._dispatch(data)
        except Exception as e:
            logger.error(f"In-process '{data.get('kind')}' job failed: {e}", exc_info=True)

    async def _promoter(self):
        """Moves due delayed jobs into the stream."""
        while self.running:
            try:
                now = datetime.now(timezone.utc).timestamp()
                due = await self.redis.zrangebyscore(self.delayed_key, 0, now, start=0, num=PROMOTE_BATCH)
                for payload in due:
                    # Only the worker whose ZREM succeeds promotes the job.
                    if await self.redis.zrem(self.delayed_key, payload):
                        await self.redis.xadd(self.stream_name, {"data": payload})
                await asyncio.sleep(PROMOTE_INTERVAL)
            except Exception as e:
                if self.running:
                    logger.error(f"Delayed job promoter error: {e}")
                    await asyncio.sleep(5)

    # ---------------- Consuming ---------------- #

    async def _dispatch(self, data: Dict[str, Any]):
        handler = self.handlers.get(data["kind"])
        if handler is None:
            raise LookupError(f"No handler registered for job kind '{data['kind']}'")
        await handler(data)

    async def _worker(self, consumer_name: str):
        while self.running:
            try:
                messages = await self.redis.xreadgroup(self.consumer_group, consumer_name, {self.stream_name: ">"}, count=1, block=1000)
                if not messages: continue

                stream_name, stream_messages = messages[0]
                for message_id, fields in stream_messages:
                    data = json.loads(fields[b'data'].decode())
                    try:
                        await self._dispatch(data)
                    except Exception as e:
                        logger.error(f"Job {message_id.decode()} ({data.get('kind')}) failed: {e}", exc_info=True)
                        await self._retry_or_bury(data, str(e))
                    await self.redis.xack(stream_name, self.consumer_group, message_id)
            except Exception as e:
                if self.running:
                    logger.error(f"Flow job worker '{consumer_name}' error: {e}")
                    await asyncio.sleep(5)

    async def _retry_or_bury(self, data: Dict[str, Any], error: str):
        attempt = int(data.get("attempt", 0)) + 1
        if attempt > self.max_retries or data["kind"] not in self.handlers:
            await self.redis.xadd(self.dead_letter_stream, {"data": json.dumps({**data, "attempt": attempt, "error": error})})
            logger.error(f"Job '{data['kind']}' moved to dead-letter stream after {attempt} attempts: {error}")
            return
        delay = RETRY_BASE_SECONDS * 2 ** (attempt - 1)
        retry_at = datetime.now(timezone.utc).timestamp() + delay
        await self.redis.zadd(self.delayed_key, {json.dumps({**data, "attempt": attempt}): retry_at})
        logger.warning(f"Job '{data['kind']}' scheduled for retry {attempt}/{self.max_retries} in {delay}s")


# Globally accessible instance
job_dispatcher = RedisJobDispatcher(
    cache_service.redis,
    max_workers=settings.dispatcher_workers,
    max_retries=settings.campaign_max_retries,
)
