from case_bot.control_plane.models.case_contracts import (
    CaseEventType,
    CaseRecord,
    CaseStatus,
    StageOutcome,
)
from case_bot.control_plane.orchestration.stages import Stage
from case_bot.control_plane.orchestration.transitions import missing_handler, plan_transition


def _case(**overrides) -> CaseRecord:
    fields = {
        "case_id": "case-1",
        "org_id": "org-1",
        "stage": Stage.INTAKE,
        "status": CaseStatus.IN_PROGRESS,
        "retry_count": 0,
        "max_retries": 3,
        "version": 4,
    }
    fields.update(overrides)
    return CaseRecord(**fields)


def _event_types(plan) -> list[str]:
    return [event.event_type.value for event in plan.events]


def test_normal_advance_moves_to_next_stage_and_enqueues_it() -> None:
    plan = plan_transition(_case(retry_count=2), StageOutcome.advanced("Intake complete"))

    assert plan.patch.changes() == {"stage": "triage", "status": "open", "retry_count": 0}
    assert plan.enqueue_stage == Stage.TRIAGE
    assert plan.approvals == ()
    assert _event_types(plan) == ["stage_exit", "stage_enter"]
    assert plan.events[0].stage == Stage.INTAKE
    assert plan.events[0].summary == "Intake complete"
    assert plan.events[1].stage == Stage.TRIAGE


def test_gated_advance_opens_approval_for_next_stage_without_enqueue() -> None:
    plan = plan_transition(
        _case(stage=Stage.PLAN, risk_flags=("billing", "ui")), StageOutcome.advanced()
    )

    assert plan.patch.changes() == {
        "stage": "plan_review",
        "status": "needs_human",
        "retry_count": 0,
    }
    assert plan.enqueue_stage is None
    assert len(plan.approvals) == 1
    assert plan.approvals[0].stage == Stage.PLAN_REVIEW
    assert plan.approvals[0].gate_type == "plan_review"
    assert plan.approvals[0].status.value == "pending"
    enter = plan.events[1]
    assert enter.event_type == CaseEventType.STAGE_ENTER
    assert enter.details == {"gated": True, "risk_flags": ["billing"]}


def test_risky_case_advancing_into_non_review_stage_is_not_gated() -> None:
    plan = plan_transition(
        _case(stage=Stage.PLAN_REVIEW, risk_flags=("auth",)), StageOutcome.advanced()
    )

    assert plan.patch.stage == Stage.EXECUTE
    assert plan.patch.status == CaseStatus.OPEN
    assert plan.enqueue_stage == Stage.EXECUTE


def test_advance_on_final_stage_completes() -> None:
    plan = plan_transition(_case(stage=Stage.CLOSE), StageOutcome.advanced())

    assert plan.patch.changes() == {"status": "completed"}
    assert plan.enqueue_stage is None
    assert plan.is_terminal
    assert _event_types(plan) == ["stage_exit"]


def test_error_under_budget_increments_retry_and_reopens() -> None:
    plan = plan_transition(
        _case(stage=Stage.EXECUTE, retry_count=2, max_retries=3), StageOutcome.failed("x")
    )

    assert plan.patch.changes() == {"status": "open", "retry_count": 3}
    assert plan.patch.stage is None
    assert plan.enqueue_stage is None
    assert _event_types(plan) == ["error"]
    assert plan.events[0].summary == "x"
    assert plan.retry_error == "x"


def test_error_at_budget_fails_and_escalates() -> None:
    plan = plan_transition(
        _case(stage=Stage.EXECUTE, retry_count=3, max_retries=3), StageOutcome.failed("x")
    )

    assert plan.patch.changes() == {"status": "failed"}
    assert _event_types(plan) == ["error", "escalation"]
    assert plan.events[1].summary == "Max retries exceeded"
    assert plan.retry_error is None


def test_error_wins_over_advance_and_needs_human() -> None:
    outcome = StageOutcome(advance=True, needs_human=True, error="boom")

    plan = plan_transition(_case(), outcome)

    assert plan.patch.status == CaseStatus.OPEN
    assert plan.patch.retry_count == 1


def test_handler_exception_is_fatal_regardless_of_retry_budget() -> None:
    plan = plan_transition(_case(retry_count=0, max_retries=5), RuntimeError("disk on fire"))

    assert plan.patch.changes() == {"status": "failed"}
    assert _event_types(plan) == ["error"]
    assert plan.events[0].summary == "disk on fire"
    assert plan.events[0].details["exception_type"] == "RuntimeError"


def test_exception_without_message_uses_type_name() -> None:
    plan = plan_transition(_case(), KeyError())

    assert plan.events[0].summary


def test_needs_human_opens_approval_for_current_stage() -> None:
    plan = plan_transition(
        _case(stage=Stage.FIX_REVIEW), StageOutcome.waiting("Reviewer sign-off needed")
    )

    assert plan.patch.changes() == {"status": "needs_human"}
    assert [approval.stage for approval in plan.approvals] == [Stage.FIX_REVIEW]
    assert _event_types(plan) == ["approval_request"]
    assert plan.events[0].summary == "Reviewer sign-off needed"
    assert plan.enqueue_stage is None


def test_terminal_stop_completes_without_advancing() -> None:
    plan = plan_transition(_case(stage=Stage.EXECUTE), StageOutcome.terminal())

    assert plan.patch.changes() == {"status": "completed"}
    assert _event_types(plan) == ["stage_exit"]
    assert plan.events[0].summary == "Stage completed (terminal)"


def test_missing_handler_fails_case() -> None:
    plan = missing_handler(_case(stage=Stage.PROMOTE_BETA))

    assert plan.patch.changes() == {"status": "failed"}
    assert plan.events[0].summary == "No handler for stage"
    assert plan.events[0].details == {"reason_code": "missing_stage_handler"}
