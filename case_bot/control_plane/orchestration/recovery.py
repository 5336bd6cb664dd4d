"""Re-enqueue cases that are positioned at a stage but have no job scheduled.

A case can be left ``open`` after a queue outage, after a handler-reported
error (the retry is not re-enqueued by the engine), or ``in_progress`` after a
worker died mid-handler. The sweep schedules each at its current stage; a
duplicate delivery is harmless because the guard's claim is compare-and-swapped.
"""

from __future__ import annotations

import logging

from case_bot.control_plane.db.repository import CaseRepository
from case_bot.control_plane.models.case_contracts import CaseEvent, CaseEventType, CaseStatus
from case_bot.control_plane.orchestration.effects import best_effort
from case_bot.control_plane.queue.case_queue import CaseQueue, JobHandle

logger = logging.getLogger(__name__)

RECOVERABLE_STATUSES = [CaseStatus.OPEN, CaseStatus.IN_PROGRESS]


class RecoveryService:
    def __init__(self, *, repository: CaseRepository, queue: CaseQueue) -> None:
        self.repository = repository
        self.queue = queue

    async def sweep(self, org_id: str = "") -> list[JobHandle]:
        cases = await self.repository.list_cases(statuses=RECOVERABLE_STATUSES, org_id=org_id)
        handles: list[JobHandle] = []
        for case in cases:
            try:
                handle = await self.queue.enqueue(case.case_id, case.stage)
            except Exception as exc:
                logger.warning(
                    "Recovery enqueue failed case_id=%s stage=%s error=%s",
                    case.case_id,
                    case.stage.value,
                    exc,
                )
                continue
            handles.append(handle)
            await best_effort(
                "insert event",
                self.repository.insert_event(
                    CaseEvent(
                        case_id=case.case_id,
                        org_id=case.org_id,
                        stage=case.stage,
                        event_type=CaseEventType.RECOVERY_ENQUEUE,
                        summary=f"Re-enqueued at {case.stage.value}",
                        details={"status": case.status.value, "job_id": handle.job_id},
                    )
                ),
                case_id=case.case_id,
            )
        logger.info("Recovery sweep enqueued=%s scanned=%s", len(handles), len(cases))
        return handles
