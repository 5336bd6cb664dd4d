"""Operator-facing case creation and cancellation."""

from __future__ import annotations

import logging
from typing import Any

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
from case_bot.control_plane.orchestration.stages import FIRST_STAGE
from case_bot.control_plane.queue.case_queue import CaseQueue

logger = logging.getLogger(__name__)


class CaseService:
    def __init__(
        self,
        *,
        repository: CaseRepository,
        queue: CaseQueue,
        default_max_retries: int = 3,
    ) -> None:
        self.repository = repository
        self.queue = queue
        self.default_max_retries = default_max_retries

    async def create_case(
        self,
        *,
        org_id: str,
        title: str,
        case_type: str,
        case_id: str = "",
        description: str = "",
        severity: str = "",
        area: str = "",
        risk_flags: list[str] | None = None,
        metadata: dict[str, Any] | None = None,
        max_retries: int | None = None,
        actor: str = "system",
    ) -> CaseRecord:
        if not org_id.strip():
            raise ValueError("missing_org_id")
        case = await self.repository.create_case(
            org_id=org_id,
            title=title,
            case_type=case_type,
            case_id=case_id,
            description=description,
            severity=severity,
            area=area,
            risk_flags=risk_flags,
            metadata=metadata,
            max_retries=self.default_max_retries if max_retries is None else max_retries,
        )
        await best_effort(
            "insert event",
            self.repository.insert_event(
                CaseEvent(
                    case_id=case.case_id,
                    org_id=case.org_id,
                    stage=FIRST_STAGE,
                    event_type=CaseEventType.CASE_CREATED,
                    actor=actor,
                    summary=title or "Case created",
                    details={"case_type": case_type, "risk_flags": list(case.risk_flags)},
                )
            ),
            case_id=case.case_id,
        )
        await enqueue_stage(self.queue, case.case_id, FIRST_STAGE)
        logger.info("Case created case_id=%s org_id=%s", case.case_id, case.org_id)
        return case

    async def describe_case(self, case_id: str) -> dict[str, Any]:
        case = await self.repository.get_case(case_id)
        if case is None:
            raise ValueError("unknown_case")
        events = await self.repository.list_events(case_id)
        approvals = await self.repository.list_approvals(case_id)
        return {
            "case": case.model_dump(mode="json"),
            "events": [event.model_dump(mode="json") for event in events],
            "approvals": [approval.model_dump(mode="json") for approval in approvals],
            "plans": await self.repository.list_plans(case_id),
            "artifacts": await self.repository.list_artifacts(case_id),
        }

    async def cancel_case(self, case_id: str, cancelled_by: str, reason: str = "") -> CaseRecord:
        case = await self.repository.get_case(case_id)
        if case is None:
            raise ValueError("unknown_case")
        if case.is_terminal:
            raise ValueError("case_terminal")
        moved = await self.repository.update_case(
            case_id, CasePatch(status=CaseStatus.CANCELLED), expected_version=case.version
        )
        if not moved:
            raise ValueError("case_changed_concurrently")
        if case.status == CaseStatus.NEEDS_HUMAN:
            await self.repository.decide_approvals(case_id, ApprovalStatus.REJECTED, cancelled_by)
        await best_effort(
            "insert event",
            self.repository.insert_event(
                CaseEvent(
                    case_id=case.case_id,
                    org_id=case.org_id,
                    stage=case.stage,
                    event_type=CaseEventType.CASE_CANCELLED,
                    actor=cancelled_by,
                    summary=reason or "Case cancelled",
                    details={"previous_status": case.status.value},
                )
            ),
            case_id=case.case_id,
        )
        logger.info("Case cancelled case_id=%s by=%s", case_id, cancelled_by)
        return await self.repository.get_case(case_id) or case
