"""Queue consumer that delivers ``(case_id, stage)`` jobs to the orchestrator."""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque

from case_bot.control_plane.orchestration.orchestrator import CaseOrchestrator
from case_bot.control_plane.queue.case_queue import CaseJob, WorkerQueue

logger = logging.getLogger(__name__)

DEFAULT_CONCURRENCY = 2
DEFAULT_MAX_JOBS_PER_MINUTE = 5


class RateLimiter:
    """Sliding one-minute window; ``max_per_minute <= 0`` disables the limit."""

    def __init__(self, max_per_minute: int, window_seconds: float = 60.0) -> None:
        self.max_per_minute = int(max_per_minute)
        self.window_seconds = window_seconds
        self._starts: deque[float] = deque()

    def delay(self, now: float | None = None) -> float:
        if self.max_per_minute <= 0:
            return 0.0
        current = time.monotonic() if now is None else now
        while self._starts and current - self._starts[0] >= self.window_seconds:
            self._starts.popleft()
        if len(self._starts) < self.max_per_minute:
            return 0.0
        return self.window_seconds - (current - self._starts[0])

    def record(self, now: float | None = None) -> None:
        self._starts.append(time.monotonic() if now is None else now)

    async def acquire(self) -> None:
        wait = self.delay()
        while wait > 0:
            await asyncio.sleep(wait)
            wait = self.delay()
        self.record()


class CaseWorker:
    def __init__(
        self,
        *,
        queue: WorkerQueue,
        orchestrator: CaseOrchestrator,
        concurrency: int = DEFAULT_CONCURRENCY,
        max_jobs_per_minute: int = DEFAULT_MAX_JOBS_PER_MINUTE,
        poll_timeout: float = 1.0,
    ) -> None:
        self.queue = queue
        self.orchestrator = orchestrator
        self.concurrency = max(1, int(concurrency))
        self.poll_timeout = poll_timeout
        self.rate_limiter = RateLimiter(max_jobs_per_minute)
        self._semaphore = asyncio.Semaphore(self.concurrency)
        self.processed = 0

    async def _handle(self, job: CaseJob) -> None:
        try:
            plan = await self.orchestrator.process_case(job.case_id, job.stage)
        except Exception as exc:
            # process_case swallows its own failures; this only trips on a bug.
            logger.exception("Job failed job_id=%s case_id=%s", job.job_id, job.case_id)
            await self._settle(job, str(exc) or type(exc).__name__)
        else:
            await self._settle(job, plan.retry_error if plan is not None else None)
        finally:
            self.processed += 1
            self._semaphore.release()

    async def _settle(self, job: CaseJob, error: str | None) -> None:
        """Ack the job, or nack it so the queue redelivers it after backoff."""

        try:
            if error is None:
                await self.queue.complete(job)
                logger.info("Job completed job_id=%s stage=%s", job.job_id, job.stage)
                return
            if await self.queue.fail(job, error):
                logger.info("Job scheduled for retry job_id=%s error=%s", job.job_id, error)
            else:
                logger.warning(
                    "Job attempts exhausted job_id=%s case_id=%s; case left for recovery",
                    job.job_id,
                    job.case_id,
                )
        except Exception:
            logger.exception("Failed to settle job job_id=%s case_id=%s", job.job_id, job.case_id)

    async def run(self, stop_event: asyncio.Event) -> None:
        """Consume jobs until ``stop_event`` is set, then wait for in-flight jobs."""

        logger.info(
            "Worker started concurrency=%s max_jobs_per_minute=%s",
            self.concurrency,
            self.rate_limiter.max_per_minute,
        )
        tasks: set[asyncio.Task[None]] = set()
        while not stop_event.is_set():
            await self._semaphore.acquire()
            try:
                job = await self.queue.reserve(timeout=self.poll_timeout)
            except Exception:
                self._semaphore.release()
                logger.exception("Failed to reserve job")
                await asyncio.sleep(self.poll_timeout)
                continue
            if job is None:
                self._semaphore.release()
                continue
            await self.rate_limiter.acquire()
            task = asyncio.create_task(self._handle(job))
            tasks.add(task)
            task.add_done_callback(tasks.discard)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Worker stopped processed=%s", self.processed)

    async def run_until_idle(self, max_jobs: int = 1000) -> int:
        """Drain the queue one wave at a time until it is empty; returns jobs processed.

        Used for inline runs and tests, so the per-minute limit is not applied.
        """

        handled = 0
        while handled < max_jobs:
            batch: list[CaseJob] = []
            while len(batch) < self.concurrency and handled + len(batch) < max_jobs:
                job = await self.queue.reserve(timeout=0)
                if job is None:
                    break
                batch.append(job)
            if not batch:
                break
            for _ in batch:
                await self._semaphore.acquire()
            await asyncio.gather(*(self._handle(job) for job in batch), return_exceptions=True)
            handled += len(batch)
        return handled
