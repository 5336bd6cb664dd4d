"""Intake: reject cases that are missing the fields every later stage needs."""

from __future__ import annotations

from case_bot.control_plane.models.case_contracts import CaseRecord, StageOutcome

REQUIRED_FIELDS = ("title", "case_type")


async def handle_intake(case: CaseRecord) -> StageOutcome:
    for field_name in REQUIRED_FIELDS:
        if not str(getattr(case, field_name) or "").strip():
            return StageOutcome.failed(f"Missing required field: {field_name}")
    return StageOutcome.advanced(f"Intake complete: {case.title}")
