"""Plan: generate an implementation plan and store it as the next plan version."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Mapping
from typing import Any

from case_bot.control_plane.db.repository import CaseRepository
from case_bot.control_plane.models.case_contracts import CaseRecord, StageOutcome
from case_bot.control_plane.orchestration.risk_gate import has_high_risk_flags

logger = logging.getLogger(__name__)

Planner = Callable[[CaseRecord], Awaitable[Mapping[str, Any]]]


class OutlinePlanner:
    """Baseline planner: a single-step outline built from the case itself."""

    async def __call__(self, case: CaseRecord) -> Mapping[str, Any]:
        return {
            "summary": case.title,
            "steps": [
                {"order": 1, "description": f"Investigate and resolve: {case.title}"},
            ],
            "risk_assessment": {
                "risk_flags": list(case.risk_flags),
                "level": "high" if has_high_risk_flags(case.risk_flags) else "low",
            },
        }


class PlanHandler:
    def __init__(self, repository: CaseRepository, planner: Planner | None = None) -> None:
        self.repository = repository
        self.planner = planner or OutlinePlanner()

    async def __call__(self, case: CaseRecord) -> StageOutcome:
        try:
            plan = dict(await self.planner(case))
            version = await self.repository.insert_plan(
                case, plan, risk_assessment=dict(plan.get("risk_assessment") or {})
            )
        except Exception as exc:
            logger.error("Plan generation failed case_id=%s error=%s", case.case_id, exc)
            return StageOutcome.failed(f"Plan generation failed: {exc}")
        steps = plan.get("steps") or []
        return StageOutcome.advanced(f"Plan v{version} generated ({len(steps)} steps)")
