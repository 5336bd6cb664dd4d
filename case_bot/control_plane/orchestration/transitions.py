"""Transition engine: map a stage handler result onto the next case state.

``plan_transition`` is pure. It returns a ``TransitionPlan`` describing the case
patch, the audit events, the approvals to open, and the stage to enqueue; the
orchestrator applies that plan against the repository and queue.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from case_bot.control_plane.models.case_contracts import (
    TERMINAL_STATUSES,
    Approval,
    CaseEvent,
    CaseEventType,
    CasePatch,
    CaseRecord,
    CaseStatus,
    OutcomeKind,
    StageOutcome,
)
from case_bot.control_plane.orchestration.risk_gate import NEVER_AUTOPASS, requires_human_gate
from case_bot.control_plane.orchestration.stages import Stage, successor


@dataclass(frozen=True)
class TransitionPlan:
    patch: CasePatch
    events: tuple[CaseEvent, ...] = ()
    approvals: tuple[Approval, ...] = ()
    enqueue_stage: Stage | None = None
    # Set when the stage should be redelivered by the queue.
    retry_error: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.patch.status in TERMINAL_STATUSES


def _event(
    case: CaseRecord,
    stage: Stage,
    event_type: CaseEventType,
    summary: str,
    details: dict[str, Any] | None = None,
) -> CaseEvent:
    return CaseEvent(
        case_id=case.case_id,
        org_id=case.org_id,
        stage=stage,
        event_type=event_type,
        summary=summary,
        details=details or {},
    )


def _approval(case: CaseRecord, stage: Stage) -> Approval:
    return Approval(
        case_id=case.case_id,
        org_id=case.org_id,
        stage=stage,
        gate_type=stage.value,
    )


def plan_transition(case: CaseRecord, result: StageOutcome | BaseException) -> TransitionPlan:
    if isinstance(result, BaseException):
        return _fatal(case, result)

    kind = result.kind
    match kind:
        case OutcomeKind.ERROR:
            return _retry_or_escalate(case, result)
        case OutcomeKind.NEEDS_HUMAN:
            return _await_human(case, result)
        case OutcomeKind.ADVANCE:
            return _advance(case, result)
        case OutcomeKind.TERMINAL:
            return _terminal_stop(case, result)
        case _:
            raise ValueError(f"unknown_outcome_kind:{kind}")


def missing_handler(case: CaseRecord) -> TransitionPlan:
    return TransitionPlan(
        patch=CasePatch(status=CaseStatus.FAILED),
        events=(
            _event(
                case,
                case.stage,
                CaseEventType.ERROR,
                "No handler for stage",
                {"reason_code": "missing_stage_handler"},
            ),
        ),
    )


def _fatal(case: CaseRecord, exc: BaseException) -> TransitionPlan:
    message = str(exc) or type(exc).__name__
    return TransitionPlan(
        patch=CasePatch(status=CaseStatus.FAILED),
        events=(
            _event(
                case,
                case.stage,
                CaseEventType.ERROR,
                message,
                {"reason_code": "handler_exception", "exception_type": type(exc).__name__},
            ),
        ),
    )


def _retry_or_escalate(case: CaseRecord, outcome: StageOutcome) -> TransitionPlan:
    error_event = _event(
        case,
        case.stage,
        CaseEventType.ERROR,
        str(outcome.error),
        {"retry_count": case.retry_count, "max_retries": case.max_retries},
    )
    if case.retry_count >= case.max_retries:
        return TransitionPlan(
            patch=CasePatch(status=CaseStatus.FAILED),
            events=(
                error_event,
                _event(
                    case,
                    case.stage,
                    CaseEventType.ESCALATION,
                    "Max retries exceeded",
                    {"reason_code": "retry_budget_exhausted", "retry_count": case.retry_count},
                ),
            ),
        )
    return TransitionPlan(
        patch=CasePatch(status=CaseStatus.OPEN, retry_count=case.retry_count + 1),
        events=(error_event,),
        retry_error=str(outcome.error),
    )


def _await_human(case: CaseRecord, outcome: StageOutcome) -> TransitionPlan:
    return TransitionPlan(
        patch=CasePatch(status=CaseStatus.NEEDS_HUMAN),
        events=(
            _event(
                case,
                case.stage,
                CaseEventType.APPROVAL_REQUEST,
                outcome.summary or "Human approval required",
                {"gate_type": case.stage.value, "requested_by": "handler"},
            ),
        ),
        approvals=(_approval(case, case.stage),),
    )


def _advance(case: CaseRecord, outcome: StageOutcome) -> TransitionPlan:
    exit_event = _event(
        case, case.stage, CaseEventType.STAGE_EXIT, outcome.summary or "Stage completed"
    )
    next_stage = successor(case.stage)
    if next_stage is None:
        return TransitionPlan(patch=CasePatch(status=CaseStatus.COMPLETED), events=(exit_event,))

    if requires_human_gate(next_stage, case.risk_flags):
        gating_flags = sorted(
            {str(flag).strip().lower() for flag in case.risk_flags} & NEVER_AUTOPASS
        )
        return TransitionPlan(
            patch=CasePatch(stage=next_stage, status=CaseStatus.NEEDS_HUMAN, retry_count=0),
            events=(
                exit_event,
                _event(
                    case,
                    next_stage,
                    CaseEventType.STAGE_ENTER,
                    f"Entering {next_stage.value}",
                    {"gated": True, "risk_flags": gating_flags},
                ),
            ),
            approvals=(_approval(case, next_stage),),
        )

    return TransitionPlan(
        patch=CasePatch(stage=next_stage, status=CaseStatus.OPEN, retry_count=0),
        events=(
            exit_event,
            _event(case, next_stage, CaseEventType.STAGE_ENTER, f"Entering {next_stage.value}"),
        ),
        enqueue_stage=next_stage,
    )


def _terminal_stop(case: CaseRecord, outcome: StageOutcome) -> TransitionPlan:
    return TransitionPlan(
        patch=CasePatch(status=CaseStatus.COMPLETED),
        events=(
            _event(
                case,
                case.stage,
                CaseEventType.STAGE_EXIT,
                outcome.summary or "Stage completed (terminal)",
            ),
        ),
    )
