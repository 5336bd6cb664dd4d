"""case-bot CLI."""

from __future__ import annotations

import asyncio
import json
import signal
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any

import typer
from redis.asyncio import Redis

from case_bot.control_plane.db.db import CaseDB
from case_bot.control_plane.db.repository import SqliteCaseRepository
from case_bot.control_plane.models.case_contracts import CaseStatus
from case_bot.control_plane.orchestration.approvals import ApprovalService
from case_bot.control_plane.orchestration.case_service import CaseService
from case_bot.control_plane.orchestration.orchestrator import CaseOrchestrator
from case_bot.control_plane.orchestration.recovery import RecoveryService
from case_bot.control_plane.orchestration.risk_gate import is_review_stage
from case_bot.control_plane.orchestration.stages import STAGES, Stage, successor
from case_bot.control_plane.queue.case_queue import (
    CaseQueue,
    InMemoryCaseQueue,
    JobHandle,
    WorkerQueue,
)
from case_bot.control_plane.queue.redis_queue import RedisCaseQueue, connect_redis
from case_bot.control_plane.queue.worker import CaseWorker
from case_bot.execution_plane.stages import build_stage_handlers
from case_bot.shared.settings import CaseBotSettings, configure_logging, get_settings

app = typer.Typer(add_completion=False, help="case-bot: staged case pipeline with approval gates")


@dataclass
class _Runtime:
    settings: CaseBotSettings
    repository: SqliteCaseRepository
    queue: WorkerQueue

    def orchestrator(self, queue: CaseQueue | None = None) -> CaseOrchestrator:
        return CaseOrchestrator(
            repository=self.repository,
            queue=queue if queue is not None else self.queue,
            handlers=build_stage_handlers(self.repository),
        )

    def worker(self, poll_timeout: float = 1.0) -> CaseWorker:
        return CaseWorker(
            queue=self.queue,
            orchestrator=self.orchestrator(),
            concurrency=self.settings.worker_concurrency,
            max_jobs_per_minute=self.settings.max_jobs_per_minute,
            poll_timeout=poll_timeout,
        )


@dataclass
class _RecordingQueue:
    """Pass-through producer that keeps the handles the broker hands back."""

    inner: CaseQueue
    handles: list[JobHandle] = field(default_factory=list)

    async def enqueue(self, case_id: str, stage: Stage) -> JobHandle:
        handle = await self.inner.enqueue(case_id, stage)
        self.handles.append(handle)
        return handle


@asynccontextmanager
async def _runtime(*, inline: bool = False) -> AsyncIterator[_Runtime]:
    """Open the store and a queue: Redis when configured, otherwise in-process."""

    settings = get_settings()
    configure_logging(settings)
    db = CaseDB(settings.sqlite_path)
    client: Redis | None = None
    queue: WorkerQueue
    if settings.redis_url and not inline:
        client = await connect_redis(settings.redis_url)
        queue = RedisCaseQueue(
            client,
            queue_name=settings.queue_name,
            attempts=settings.job_attempts,
            backoff_ms=settings.job_backoff_ms,
        )
    else:
        queue = InMemoryCaseQueue(attempts=settings.job_attempts)
    try:
        yield _Runtime(settings=settings, repository=SqliteCaseRepository(db), queue=queue)
    finally:
        if client is not None:
            await client.aclose()
        db.close()


def _emit(payload: Any) -> None:
    typer.echo(json.dumps(payload, indent=2, default=str))


def _run(coro: Any) -> Any:
    try:
        return asyncio.run(coro)
    except ValueError as exc:
        _emit({"error": str(exc)})
        raise typer.Exit(code=1) from exc


def _parse_stage(value: str) -> Stage:
    try:
        return Stage.parse(value)
    except ValueError as exc:
        raise typer.BadParameter(str(exc)) from exc


@app.command()
def stages() -> None:
    """Print the ordered stage table."""
    rows = []
    for stage in STAGES:
        next_stage = successor(stage)
        rows.append(
            {
                "stage": stage.value,
                "review": is_review_stage(stage),
                "next": next_stage.value if next_stage else None,
            }
        )
    _emit(rows)


@app.command()
def create(
    org_id: str = typer.Option(..., "--org"),
    title: str = typer.Option(..., "--title"),
    case_type: str = typer.Option(..., "--type"),
    description: str = typer.Option("", "--description"),
    severity: str = typer.Option("", "--severity"),
    area: str = typer.Option("", "--area"),
    risk_flags: list[str] = typer.Option([], "--risk-flag"),
    case_id: str = typer.Option("", "--case-id"),
    max_retries: int = typer.Option(None, "--max-retries"),
) -> None:
    """Create a case at intake and enqueue it."""

    async def _create() -> dict[str, Any]:
        async with _runtime() as rt:
            service = CaseService(
                repository=rt.repository,
                queue=rt.queue,
                default_max_retries=rt.settings.default_max_retries,
            )
            case = await service.create_case(
                org_id=org_id,
                title=title,
                case_type=case_type,
                case_id=case_id,
                description=description,
                severity=severity,
                area=area,
                risk_flags=list(risk_flags),
                max_retries=max_retries,
            )
            return case.model_dump(mode="json")

    _emit(_run(_create()))


@app.command()
def show(case_id: str) -> None:
    """Print a case with its events, approvals, plans, and artifacts."""

    async def _show() -> dict[str, Any]:
        async with _runtime(inline=True) as rt:
            service = CaseService(repository=rt.repository, queue=rt.queue)
            return await service.describe_case(case_id)

    _emit(_run(_show()))


@app.command()
def process(case_id: str, stage: str) -> None:
    """Deliver one (case, stage) job now; the next stage is enqueued, not run."""
    expected_stage = _parse_stage(stage)

    async def _process() -> dict[str, Any]:
        async with _runtime() as rt:
            queue = _RecordingQueue(rt.queue)
            await rt.orchestrator(queue).process_case(case_id, expected_stage)
            case = await rt.repository.get_case(case_id)
            if case is None:
                raise ValueError("unknown_case")
            return {
                "case": case.model_dump(mode="json"),
                "enqueued": [handle.stage for handle in queue.handles],
                "jobs": [handle.job_id for handle in queue.handles],
            }

    _emit(_run(_process()))


@app.command()
def run(case_id: str, max_jobs: int = typer.Option(50, "--max-jobs")) -> None:
    """Drive a case inline until it waits for a human or reaches a terminal status."""

    async def _drive() -> dict[str, Any]:
        async with _runtime(inline=True) as rt:
            case = await rt.repository.get_case(case_id)
            if case is None:
                raise ValueError("unknown_case")
            if case.status in {CaseStatus.OPEN, CaseStatus.IN_PROGRESS}:
                await rt.queue.enqueue(case.case_id, case.stage)
            processed = await rt.worker().run_until_idle(max_jobs=max_jobs)
            final = await rt.repository.get_case(case_id)
            return {
                "processed": processed,
                "case": final.model_dump(mode="json") if final else None,
            }

    _emit(_run(_drive()))


@app.command()
def approve(case_id: str, decided_by: str = typer.Option(..., "--by")) -> None:
    """Grant the pending gate and resume the case at its current stage."""

    async def _approve() -> dict[str, Any]:
        async with _runtime() as rt:
            service = ApprovalService(repository=rt.repository, queue=rt.queue)
            return (await service.approve(case_id, decided_by)).model_dump(mode="json")

    _emit(_run(_approve()))


@app.command()
def reject(
    case_id: str,
    decided_by: str = typer.Option(..., "--by"),
    reason: str = typer.Option("", "--reason"),
) -> None:
    """Reject the pending gate; the case is cancelled."""

    async def _reject() -> dict[str, Any]:
        async with _runtime() as rt:
            service = ApprovalService(repository=rt.repository, queue=rt.queue)
            return (await service.reject(case_id, decided_by, reason)).model_dump(mode="json")

    _emit(_run(_reject()))


@app.command()
def cancel(
    case_id: str,
    cancelled_by: str = typer.Option(..., "--by"),
    reason: str = typer.Option("", "--reason"),
) -> None:
    """Cancel a non-terminal case."""

    async def _cancel() -> dict[str, Any]:
        async with _runtime() as rt:
            service = CaseService(repository=rt.repository, queue=rt.queue)
            return (await service.cancel_case(case_id, cancelled_by, reason)).model_dump(
                mode="json"
            )

    _emit(_run(_cancel()))


@app.command()
def recover(org_id: str = typer.Option("", "--org")) -> None:
    """Re-enqueue open and in-progress cases at their current stage."""

    async def _recover() -> list[dict[str, str]]:
        async with _runtime() as rt:
            handles = await RecoveryService(repository=rt.repository, queue=rt.queue).sweep(org_id)
            return [
                {"job_id": handle.job_id, "case_id": handle.case_id, "stage": handle.stage}
                for handle in handles
            ]

    _emit(_run(_recover()))


@app.command()
def worker(poll_timeout: float = typer.Option(1.0, "--poll-timeout")) -> None:
    """Consume the Redis queue until interrupted."""
    if not get_settings().redis_url:
        raise typer.BadParameter("CASEBOT_REDIS_URL is required to run the worker")

    async def _work() -> None:
        async with _runtime() as rt:
            if isinstance(rt.queue, RedisCaseQueue):
                await rt.queue.requeue_stalled()
            stop_event = asyncio.Event()
            loop = asyncio.get_running_loop()
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.add_signal_handler(sig, stop_event.set)
            await rt.worker(poll_timeout=poll_timeout).run(stop_event)

    _run(_work())


if __name__ == "__main__":
    app()
