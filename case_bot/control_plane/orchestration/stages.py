"""Ordered stage table for the ten-stage case pipeline."""

from __future__ import annotations

from enum import Enum


class Stage(str, Enum):
    INTAKE = "intake"
    TRIAGE = "triage"
    PLAN = "plan"
    PLAN_REVIEW = "plan_review"
    EXECUTE = "execute"
    FIX_REVIEW = "fix_review"
    POLICY_REVIEW = "policy_review"
    CHANGE_REVIEW = "change_review"
    PROMOTE_BETA = "promote_beta"
    CLOSE = "close"

    @classmethod
    def parse(cls, value: str | Stage) -> Stage:
        if isinstance(value, Stage):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError as exc:
            raise ValueError(f"unknown_stage:{value}") from exc


STAGES: tuple[Stage, ...] = tuple(Stage)
FIRST_STAGE = STAGES[0]
FINAL_STAGE = STAGES[-1]
REVIEW_STAGES = frozenset(
    {Stage.PLAN_REVIEW, Stage.FIX_REVIEW, Stage.POLICY_REVIEW, Stage.CHANGE_REVIEW}
)


def successor(stage: Stage) -> Stage | None:
    """Return the stage after ``stage``, or None when it is the last one."""

    index = STAGES.index(stage)
    if index >= len(STAGES) - 1:
        return None
    return STAGES[index + 1]
