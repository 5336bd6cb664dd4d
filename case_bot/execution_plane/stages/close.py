"""Close: record a closing log artifact and stop the pipeline."""

from __future__ import annotations

from datetime import datetime, timezone

from case_bot.control_plane.db.repository import CaseRepository
from case_bot.control_plane.models.case_contracts import CaseRecord, StageOutcome


class CloseHandler:
    def __init__(self, repository: CaseRepository) -> None:
        self.repository = repository

    async def __call__(self, case: CaseRecord) -> StageOutcome:
        await self.repository.insert_artifact(
            case,
            "log",
            {
                "summary": f'Case "{case.title}" completed all stages',
                "pr_url": case.metadata.get("pr_url"),
                "branch": case.metadata.get("branch_name"),
                "closed_at": datetime.now(timezone.utc).isoformat(),
            },
        )
        return StageOutcome.terminal("Case closed")
