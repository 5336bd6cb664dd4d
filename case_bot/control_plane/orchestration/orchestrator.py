"""Entry point for one queue delivery: guard, run the stage handler, apply the transition."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from pydantic import ValidationError

from case_bot.control_plane.db.repository import CaseRepository
from case_bot.control_plane.models.case_contracts import CaseRecord, StageHandler, StageOutcome
from case_bot.control_plane.orchestration.effects import best_effort
from case_bot.control_plane.orchestration.guard import CaseGuard
from case_bot.control_plane.orchestration.stages import Stage
from case_bot.control_plane.orchestration.transitions import (
    TransitionPlan,
    missing_handler,
    plan_transition,
)
from case_bot.control_plane.queue.case_queue import CaseQueue

logger = logging.getLogger(__name__)


class CaseOrchestrator:
    def __init__(
        self,
        *,
        repository: CaseRepository,
        queue: CaseQueue,
        handlers: Mapping[Stage, StageHandler],
    ) -> None:
        self.repository = repository
        self.queue = queue
        self.handlers = dict(handlers)
        self.guard = CaseGuard(repository)

    async def process_case(
        self, case_id: str, expected_stage: Stage | str
    ) -> TransitionPlan | None:
        """Process one ``(case_id, stage)`` delivery. Never raises.

        Returns the applied transition, or None when the delivery was skipped or
        its transition was dropped.
        """

        try:
            stage = Stage.parse(expected_stage)
        except ValueError:
            logger.error("Unknown stage in delivery case_id=%s stage=%s", case_id, expected_stage)
            return None

        case, eligibility = await self.guard.admit(case_id, stage)
        if case is None or not eligibility.eligible:
            return None

        handler = self.handlers.get(case.stage)
        if handler is None:
            logger.error("No handler for stage case_id=%s stage=%s", case_id, case.stage.value)
            return await self._apply_plan(case, missing_handler(case))

        result = await self._run_handler(case, handler)
        return await self._apply_plan(case, plan_transition(case, result))

    async def _apply_plan(self, case: CaseRecord, plan: TransitionPlan) -> TransitionPlan | None:
        return plan if await self.apply(case, plan) else None

    async def _run_handler(
        self, case: CaseRecord, handler: StageHandler
    ) -> StageOutcome | Exception:
        try:
            raw = await handler(case)
        except Exception as exc:
            logger.error(
                "Stage handler raised case_id=%s stage=%s error=%s",
                case.case_id,
                case.stage.value,
                exc,
                exc_info=True,
            )
            return exc
        return _coerce_outcome(raw)

    async def apply(self, case: CaseRecord, plan: TransitionPlan) -> bool:
        """Write the plan: case patch first, then events, approvals, and the next enqueue.

        Returns False when the case moved under us and the plan was dropped.
        """

        updated = await best_effort(
            "update case",
            self.repository.update_case(
                case.case_id, plan.patch, expected_version=case.version
            ),
            case_id=case.case_id,
            stage=case.stage.value,
        )
        if updated is False:
            logger.warning(
                "Case changed while its handler ran, dropping transition case_id=%s stage=%s",
                case.case_id,
                case.stage.value,
            )
            return False

        for event in plan.events:
            await best_effort(
                "insert event",
                self.repository.insert_event(event),
                case_id=case.case_id,
                event_type=event.event_type.value,
            )
        for approval in plan.approvals:
            await best_effort(
                "insert approval",
                self.repository.insert_approval(approval),
                case_id=case.case_id,
                stage=approval.stage.value,
            )

        if plan.enqueue_stage is not None:
            await enqueue_stage(self.queue, case.case_id, plan.enqueue_stage)

        logger.info(
            "Transition applied case_id=%s from_stage=%s patch=%s",
            case.case_id,
            case.stage.value,
            plan.patch.changes(),
        )
        return True


async def enqueue_stage(queue: CaseQueue, case_id: str, stage: Stage) -> bool:
    """Enqueue ``(case_id, stage)``; a broker failure is logged and leaves the case positioned."""

    try:
        await queue.enqueue(case_id, stage)
    except Exception as exc:
        logger.warning(
            "Failed to enqueue next stage case_id=%s stage=%s error=%s",
            case_id,
            stage.value,
            exc,
        )
        return False
    return True


def _coerce_outcome(raw: Any) -> StageOutcome | Exception:
    if isinstance(raw, StageOutcome):
        return raw
    if isinstance(raw, Mapping):
        try:
            return StageOutcome.model_validate(dict(raw))
        except ValidationError as exc:
            return exc
    return TypeError(f"invalid_stage_outcome:{type(raw).__name__}")
