"""Execute and beta-promotion baselines: record the pass and advance."""

from __future__ import annotations

import logging

from case_bot.control_plane.models.case_contracts import CaseRecord, StageOutcome

logger = logging.getLogger(__name__)


async def handle_execute(case: CaseRecord) -> StageOutcome:
    logger.info("No executor configured, passing execute stage case_id=%s", case.case_id)
    return StageOutcome.advanced("Execution skipped (no executor configured)")


async def handle_promote_beta(case: CaseRecord) -> StageOutcome:
    logger.info("No beta channel configured, passing promote stage case_id=%s", case.case_id)
    return StageOutcome.advanced("Beta promotion skipped (no beta channel configured)")
