import pytest

from case_bot.control_plane.orchestration.risk_gate import (
    has_high_risk_flags,
    is_review_stage,
    requires_human_gate,
)
from case_bot.control_plane.orchestration.stages import Stage


@pytest.mark.parametrize(
    ("next_stage", "risk_flags", "expected"),
    [
        (Stage.PLAN_REVIEW, ["billing"], True),
        (Stage.FIX_REVIEW, ["auth", "ui"], True),
        (Stage.POLICY_REVIEW, ["RLS"], True),
        (Stage.CHANGE_REVIEW, ["security"], True),
        (Stage.PLAN_REVIEW, ["ui", "copy"], False),
        (Stage.PLAN_REVIEW, [], False),
        (Stage.PLAN_REVIEW, None, False),
        (Stage.EXECUTE, ["billing"], False),
        (Stage.CLOSE, ["auth"], False),
        (None, ["auth"], False),
    ],
)
def test_requires_human_gate(next_stage, risk_flags, expected) -> None:
    assert requires_human_gate(next_stage, risk_flags) is expected


def test_review_stage_membership() -> None:
    assert is_review_stage(Stage.PLAN_REVIEW)
    assert not is_review_stage(Stage.PLAN)
    assert not is_review_stage(Stage.PROMOTE_BETA)


def test_high_risk_flags_ignore_case_and_whitespace() -> None:
    assert has_high_risk_flags([" Billing "])
    assert not has_high_risk_flags(("performance",))
