"""Redis-backed case queue with at-least-once delivery and delayed job retries.

Keys, for a queue named ``casebot-cases``:

- ``casebot-cases:wait``    list of ready jobs (LPUSH in, taken from the right)
- ``casebot-cases:active``  list of jobs reserved by a worker and not yet acked
- ``casebot-cases:delayed`` sorted set of retries scored by due time (epoch ms)
- ``casebot-cases:failed``  list of jobs that exhausted their attempts
"""

from __future__ import annotations

import logging
import time
from dataclasses import replace

from redis.asyncio import Redis
from redis.exceptions import RedisError
from tenacity import before_sleep_log, retry, stop_after_attempt, wait_exponential

from case_bot.control_plane.orchestration.stages import Stage
from case_bot.control_plane.queue.case_queue import (
    DEFAULT_BACKOFF_MS,
    DEFAULT_JOB_ATTEMPTS,
    CaseJob,
    JobHandle,
    QueueUnavailableError,
    backoff_delay_ms,
    new_job,
)

logger = logging.getLogger(__name__)

DEFAULT_QUEUE_NAME = "casebot-cases"

# 2s, 4s, 8s, 16s between attempts; re-raise once all five fail.
service_startup_retry = retry(
    stop=stop_after_attempt(5),
    wait=wait_exponential(multiplier=1, min=2, max=16),
    before_sleep=before_sleep_log(logger, logging.WARNING),
    reraise=True,
)


@service_startup_retry
async def _verify_redis_connection(client: Redis) -> None:
    await client.ping()
    logger.info("Redis connection verified")


async def connect_redis(redis_url: str, *, verify: bool = True) -> Redis:
    client = Redis.from_url(
        redis_url,
        decode_responses=True,
        socket_keepalive=True,
        socket_connect_timeout=5,
        health_check_interval=30,
    )
    if verify:
        await _verify_redis_connection(client)
    return client


def _now_ms() -> int:
    return time.time_ns() // 1_000_000


class RedisCaseQueue:
    def __init__(
        self,
        client: Redis,
        queue_name: str = DEFAULT_QUEUE_NAME,
        attempts: int = DEFAULT_JOB_ATTEMPTS,
        backoff_ms: int = DEFAULT_BACKOFF_MS,
    ) -> None:
        self.client = client
        self.queue_name = queue_name
        self.attempts = max(1, int(attempts))
        self.backoff_ms = max(0, int(backoff_ms))
        self.wait_key = f"{queue_name}:wait"
        self.active_key = f"{queue_name}:active"
        self.delayed_key = f"{queue_name}:delayed"
        self.failed_key = f"{queue_name}:failed"

    async def enqueue(self, case_id: str, stage: Stage) -> JobHandle:
        job = new_job(case_id, stage)
        try:
            await self.client.lpush(self.wait_key, job.to_payload())
        except RedisError as exc:
            raise QueueUnavailableError(f"queue_unavailable:{exc}") from exc
        logger.info("Case enqueued case_id=%s stage=%s job_id=%s", case_id, stage.value, job.job_id)
        return job.handle()

    async def reserve(self, timeout: float = 1.0) -> CaseJob | None:
        await self.promote_delayed()
        if timeout <= 0:
            raw = await self.client.lmove(self.wait_key, self.active_key, "RIGHT", "LEFT")
        else:
            raw = await self.client.blmove(
                self.wait_key, self.active_key, timeout, "RIGHT", "LEFT"
            )
        if raw is None:
            return None
        return CaseJob.from_payload(raw)

    async def complete(self, job: CaseJob) -> None:
        await self.client.lrem(self.active_key, 1, job.raw)

    async def fail(self, job: CaseJob, error: str) -> bool:
        await self.client.lrem(self.active_key, 1, job.raw)
        attempted = replace(job, attempts_made=job.attempts_made + 1, last_error=error)
        if attempted.attempts_made < self.attempts:
            delay = backoff_delay_ms(attempted.attempts_made, self.backoff_ms)
            await self.client.zadd(self.delayed_key, {attempted.to_payload(): _now_ms() + delay})
            logger.warning(
                "Job retry scheduled job_id=%s attempt=%s delay_ms=%s",
                job.job_id,
                attempted.attempts_made,
                delay,
            )
            return True
        await self.client.lpush(self.failed_key, attempted.to_payload())
        logger.error("Job failed permanently job_id=%s error=%s", job.job_id, error)
        return False

    async def promote_delayed(self) -> int:
        due = await self.client.zrangebyscore(self.delayed_key, 0, _now_ms())
        promoted = 0
        for payload in due:
            if await self.client.zrem(self.delayed_key, payload):
                await self.client.lpush(self.wait_key, payload)
                promoted += 1
        return promoted

    async def requeue_stalled(self) -> int:
        """Move jobs left in the active list by a dead worker back to the wait list."""

        moved = 0
        while await self.client.lmove(self.active_key, self.wait_key, "RIGHT", "LEFT"):
            moved += 1
        if moved:
            logger.warning("Requeued stalled jobs count=%s queue=%s", moved, self.queue_name)
        return moved
