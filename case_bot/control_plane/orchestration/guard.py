"""Load a case and decide whether a delivery for ``expected_stage`` may run."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum

from case_bot.control_plane.db.repository import CaseRepository
from case_bot.control_plane.models.case_contracts import CasePatch, CaseRecord, CaseStatus
from case_bot.control_plane.orchestration.stages import Stage

logger = logging.getLogger(__name__)


class SkipReason(str, Enum):
    NOT_FOUND = "not_found"
    STAGE_MISMATCH = "stage_mismatch"
    TERMINAL = "terminal"
    AWAITING_HUMAN = "awaiting_human"
    CONFLICT = "conflict"


@dataclass(frozen=True)
class Eligibility:
    eligible: bool
    reason: SkipReason | None = None

    @classmethod
    def ok(cls) -> Eligibility:
        return cls(eligible=True)

    @classmethod
    def skip(cls, reason: SkipReason) -> Eligibility:
        return cls(eligible=False, reason=reason)


def check_eligible(case: CaseRecord, expected_stage: Stage) -> Eligibility:
    if case.stage != expected_stage:
        return Eligibility.skip(SkipReason.STAGE_MISMATCH)
    if case.is_terminal:
        return Eligibility.skip(SkipReason.TERMINAL)
    if case.status == CaseStatus.NEEDS_HUMAN:
        return Eligibility.skip(SkipReason.AWAITING_HUMAN)
    return Eligibility.ok()


class CaseGuard:
    def __init__(self, repository: CaseRepository) -> None:
        self.repository = repository

    async def load(self, case_id: str) -> CaseRecord | None:
        try:
            case = await self.repository.get_case(case_id)
        except Exception:
            logger.exception("Failed to load case case_id=%s", case_id)
            return None
        if case is None:
            logger.error("Case not found case_id=%s", case_id)
        return case

    async def claim(self, case: CaseRecord) -> CaseRecord | None:
        """Mark the case in_progress, compare-and-swapped on the loaded version.

        Returns the claimed snapshot, or None when another delivery moved the case first.
        """

        try:
            claimed = await self.repository.update_case(
                case.case_id,
                CasePatch(status=CaseStatus.IN_PROGRESS),
                expected_version=case.version,
            )
        except Exception:
            logger.exception("Failed to mark case in_progress case_id=%s", case.case_id)
            return case
        if not claimed:
            return None
        return case.model_copy(
            update={"status": CaseStatus.IN_PROGRESS, "version": case.version + 1}
        )

    async def admit(
        self, case_id: str, expected_stage: Stage
    ) -> tuple[CaseRecord | None, Eligibility]:
        case = await self.load(case_id)
        if case is None:
            return None, Eligibility.skip(SkipReason.NOT_FOUND)

        eligibility = check_eligible(case, expected_stage)
        if eligibility.reason == SkipReason.STAGE_MISMATCH:
            logger.warning(
                "Stage mismatch, skipping case_id=%s expected=%s actual=%s",
                case_id,
                expected_stage.value,
                case.stage.value,
            )
            return case, eligibility
        if eligibility.reason == SkipReason.TERMINAL:
            logger.info(
                "Case in terminal state, skipping case_id=%s status=%s",
                case_id,
                case.status.value,
            )
            return case, eligibility
        if eligibility.reason == SkipReason.AWAITING_HUMAN:
            logger.info("Case awaiting human approval, skipping case_id=%s", case_id)
            return case, eligibility

        claimed = await self.claim(case)
        if claimed is None:
            logger.warning(
                "Case claimed by a concurrent delivery, skipping case_id=%s stage=%s",
                case_id,
                expected_stage.value,
            )
            return case, Eligibility.skip(SkipReason.CONFLICT)
        return claimed, Eligibility.ok()
