"""Queue contract for ``(case_id, stage)`` jobs, plus a deterministic in-memory queue."""

from __future__ import annotations

import asyncio
import json
import time
from collections import deque
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Protocol

from case_bot.control_plane.orchestration.stages import Stage

DEFAULT_JOB_ATTEMPTS = 3
DEFAULT_BACKOFF_MS = 2000


class QueueUnavailableError(RuntimeError):
    """Raised by ``enqueue`` when the broker cannot accept jobs."""


@dataclass(frozen=True)
class JobHandle:
    job_id: str
    case_id: str
    stage: str


@dataclass(frozen=True)
class CaseJob:
    job_id: str
    case_id: str
    stage: str
    enqueued_at: str
    attempts_made: int = 0
    last_error: str = ""
    raw: str = field(default="", compare=False, repr=False)

    def to_payload(self) -> str:
        return json.dumps(
            {
                "job_id": self.job_id,
                "case_id": self.case_id,
                "stage": self.stage,
                "enqueued_at": self.enqueued_at,
                "attempts_made": self.attempts_made,
                "last_error": self.last_error,
            },
            sort_keys=True,
        )

    @classmethod
    def from_payload(cls, raw: str) -> CaseJob:
        data: dict[str, Any] = json.loads(raw)
        return cls(
            job_id=str(data["job_id"]),
            case_id=str(data["case_id"]),
            stage=str(data["stage"]),
            enqueued_at=str(data.get("enqueued_at", "")),
            attempts_made=int(data.get("attempts_made", 0) or 0),
            last_error=str(data.get("last_error", "")),
            raw=raw,
        )

    def handle(self) -> JobHandle:
        return JobHandle(job_id=self.job_id, case_id=self.case_id, stage=self.stage)


class CaseQueue(Protocol):
    async def enqueue(self, case_id: str, stage: Stage) -> JobHandle: ...


class WorkerQueue(CaseQueue, Protocol):
    async def reserve(self, timeout: float = 1.0) -> CaseJob | None: ...

    async def complete(self, job: CaseJob) -> None: ...

    async def fail(self, job: CaseJob, error: str) -> bool: ...


def make_job_id(case_id: str, stage: Stage, now_ms: int | None = None) -> str:
    stamp = now_ms if now_ms is not None else time.time_ns() // 1_000_000
    return f"{case_id}-{stage.value}-{stamp}"


def new_job(case_id: str, stage: Stage) -> CaseJob:
    return CaseJob(
        job_id=make_job_id(case_id, stage),
        case_id=case_id,
        stage=stage.value,
        enqueued_at=datetime.now(timezone.utc).isoformat(),
    )


def backoff_delay_ms(attempts_made: int, base_delay_ms: int = DEFAULT_BACKOFF_MS) -> int:
    """Exponential backoff: base, 2*base, 4*base, ... for attempts 1, 2, 3, ..."""

    return int(base_delay_ms) * (2 ** max(0, int(attempts_made) - 1))


class InMemoryCaseQueue:
    """In-process queue used for deterministic tests and local inline runs."""

    def __init__(self, attempts: int = DEFAULT_JOB_ATTEMPTS) -> None:
        self.attempts = max(1, int(attempts))
        self.available = True
        self.enqueued: list[JobHandle] = []
        self.completed: list[CaseJob] = []
        self.dead_letter: list[CaseJob] = []
        self._pending: deque[CaseJob] = deque()

    async def enqueue(self, case_id: str, stage: Stage) -> JobHandle:
        if not self.available:
            raise QueueUnavailableError("queue_unavailable")
        job = new_job(case_id, stage)
        self._pending.append(job)
        handle = job.handle()
        self.enqueued.append(handle)
        return handle

    async def reserve(self, timeout: float = 1.0) -> CaseJob | None:
        if not self._pending:
            # Stand in for a blocking pop so a polling worker yields to the loop.
            if timeout > 0:
                await asyncio.sleep(timeout)
            return None
        return self._pending.popleft()

    async def complete(self, job: CaseJob) -> None:
        self.completed.append(job)

    async def fail(self, job: CaseJob, error: str) -> bool:
        attempted = replace(job, attempts_made=job.attempts_made + 1, last_error=error)
        if attempted.attempts_made < self.attempts:
            self._pending.append(attempted)
            return True
        self.dead_letter.append(attempted)
        return False

    def pending(self) -> list[CaseJob]:
        return list(self._pending)
