"""Risk-based human gate evaluation for review stages."""

from __future__ import annotations

from collections.abc import Iterable

from case_bot.control_plane.orchestration.stages import REVIEW_STAGES, Stage

# Risk categories that always require human approval at review gates.
NEVER_AUTOPASS = frozenset({"auth", "billing", "security", "rls"})


def is_review_stage(stage: Stage) -> bool:
    return stage in REVIEW_STAGES


def has_high_risk_flags(risk_flags: Iterable[str] | None) -> bool:
    if not risk_flags:
        return False
    return any(str(flag).strip().lower() in NEVER_AUTOPASS for flag in risk_flags)


def requires_human_gate(next_stage: Stage | None, risk_flags: Iterable[str] | None) -> bool:
    if next_stage is None:
        return False
    return is_review_stage(next_stage) and has_high_risk_flags(risk_flags)
