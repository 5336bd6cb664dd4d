"""Baseline stage handler registration."""

from __future__ import annotations

from case_bot.control_plane.db.repository import CaseRepository
from case_bot.control_plane.models.case_contracts import StageHandler
from case_bot.control_plane.orchestration.stages import Stage
from case_bot.execution_plane.stages.close import CloseHandler
from case_bot.execution_plane.stages.delivery import handle_execute, handle_promote_beta
from case_bot.execution_plane.stages.intake import handle_intake
from case_bot.execution_plane.stages.planner import Planner, PlanHandler
from case_bot.execution_plane.stages.review import AutoPassReview
from case_bot.execution_plane.stages.triage import Classifier, TriageHandler


def build_stage_handlers(
    repository: CaseRepository,
    classifier: Classifier | None = None,
    planner: Planner | None = None,
) -> dict[Stage, StageHandler]:
    handlers: dict[Stage, StageHandler] = {
        Stage.INTAKE: handle_intake,
        Stage.TRIAGE: TriageHandler(repository, classifier),
        Stage.PLAN: PlanHandler(repository, planner),
        Stage.EXECUTE: handle_execute,
        Stage.PROMOTE_BETA: handle_promote_beta,
        Stage.CLOSE: CloseHandler(repository),
    }
    for stage in (Stage.PLAN_REVIEW, Stage.FIX_REVIEW, Stage.POLICY_REVIEW, Stage.CHANGE_REVIEW):
        handlers[stage] = AutoPassReview(stage)
    return {stage: handlers[stage] for stage in Stage}
