"""Operator resolution of pending human gates."""

from __future__ import annotations

import logging

from case_bot.control_plane.db.repository import CaseRepository
from case_bot.control_plane.models.case_contracts import (
    ApprovalStatus,
    CaseEvent,
    CaseEventType,
    CasePatch,
    CaseRecord,
    CaseStatus,
)
from case_bot.control_plane.orchestration.effects import best_effort
from case_bot.control_plane.orchestration.orchestrator import enqueue_stage
from case_bot.control_plane.queue.case_queue import CaseQueue

logger = logging.getLogger(__name__)


class ApprovalService:
    def __init__(self, *, repository: CaseRepository, queue: CaseQueue) -> None:
        self.repository = repository
        self.queue = queue

    async def _load_waiting(self, case_id: str) -> CaseRecord:
        case = await self.repository.get_case(case_id)
        if case is None:
            raise ValueError("unknown_case")
        if case.status != CaseStatus.NEEDS_HUMAN:
            raise ValueError("case_not_awaiting_approval")
        return case

    async def _resolve(
        self, case: CaseRecord, to_status: CaseStatus, decision: ApprovalStatus, decided_by: str
    ) -> int:
        moved = await self.repository.update_case(
            case.case_id, CasePatch(status=to_status), expected_version=case.version
        )
        if not moved:
            raise ValueError("case_changed_concurrently")
        resolved = await self.repository.decide_approvals(case.case_id, decision, decided_by)
        if resolved == 0:
            logger.warning(
                "No pending approval row for gated case case_id=%s stage=%s",
                case.case_id,
                case.stage.value,
            )
        return resolved

    async def approve(self, case_id: str, decided_by: str) -> CaseRecord:
        """Grant the gate: resume the case at its current stage and enqueue it."""

        case = await self._load_waiting(case_id)
        resolved = await self._resolve(
            case, CaseStatus.IN_PROGRESS, ApprovalStatus.APPROVED, decided_by
        )
        await best_effort(
            "insert event",
            self.repository.insert_event(
                CaseEvent(
                    case_id=case.case_id,
                    org_id=case.org_id,
                    stage=case.stage,
                    event_type=CaseEventType.APPROVAL_GRANTED,
                    actor=decided_by,
                    summary=f"Approved {case.stage.value}",
                    details={"approvals_resolved": resolved},
                )
            ),
            case_id=case.case_id,
        )
        await enqueue_stage(self.queue, case.case_id, case.stage)
        logger.info(
            "Approval granted case_id=%s stage=%s by=%s", case_id, case.stage.value, decided_by
        )
        return await self.repository.get_case(case_id) or case

    async def reject(self, case_id: str, decided_by: str, reason: str = "") -> CaseRecord:
        """Reject the gate: the case is cancelled and nothing is enqueued."""

        case = await self._load_waiting(case_id)
        resolved = await self._resolve(
            case, CaseStatus.CANCELLED, ApprovalStatus.REJECTED, decided_by
        )
        await best_effort(
            "insert event",
            self.repository.insert_event(
                CaseEvent(
                    case_id=case.case_id,
                    org_id=case.org_id,
                    stage=case.stage,
                    event_type=CaseEventType.APPROVAL_REJECTED,
                    actor=decided_by,
                    summary=reason or f"Rejected {case.stage.value}",
                    details={"approvals_resolved": resolved, "reason": reason},
                )
            ),
            case_id=case.case_id,
        )
        logger.info(
            "Approval rejected case_id=%s stage=%s by=%s", case_id, case.stage.value, decided_by
        )
        return await self.repository.get_case(case_id) or case
