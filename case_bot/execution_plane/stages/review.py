"""Review stages. Risky cases are gated by the engine before these handlers run."""

from __future__ import annotations

from case_bot.control_plane.models.case_contracts import CaseRecord, StageOutcome
from case_bot.control_plane.orchestration.stages import Stage


class AutoPassReview:
    def __init__(self, stage: Stage) -> None:
        self.stage = stage
        self.label = stage.value.replace("_", " ").capitalize()

    async def __call__(self, case: CaseRecord) -> StageOutcome:
        return StageOutcome.advanced(f"{self.label} auto-passed (low risk)")
