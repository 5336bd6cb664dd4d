"""Triage: classify a case and store area, severity, and risk flags on it.

The classifier is injected. It takes the case snapshot and returns a mapping
with any of ``area``, ``severity``, ``risk_flags``, ``reproducibility`` and
``notes``; the handler owns how that lands on the case row.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Mapping
from datetime import datetime, timezone
from typing import Any

from case_bot.control_plane.db.repository import CaseRepository
from case_bot.control_plane.models.case_contracts import (
    CaseRecord,
    ClassificationPatch,
    StageOutcome,
)

logger = logging.getLogger(__name__)

Classifier = Callable[[CaseRecord], Awaitable[Mapping[str, Any]]]

DEFAULT_SEVERITY = "medium"
DEFAULT_AREA = "general"


class MetadataClassifier:
    """Baseline classifier: keep what intake captured, filling in defaults."""

    async def __call__(self, case: CaseRecord) -> Mapping[str, Any]:
        hints = case.metadata.get("classification") or {}
        return {
            "area": hints.get("area") or case.area or DEFAULT_AREA,
            "severity": hints.get("severity") or case.severity or DEFAULT_SEVERITY,
            "risk_flags": list(hints.get("risk_flags") or case.risk_flags),
            "reproducibility": hints.get("reproducibility", "unknown"),
            "notes": hints.get("notes", ""),
        }


class TriageHandler:
    def __init__(self, repository: CaseRepository, classifier: Classifier | None = None) -> None:
        self.repository = repository
        self.classifier = classifier or MetadataClassifier()

    async def __call__(self, case: CaseRecord) -> StageOutcome:
        try:
            classification = await self.classifier(case)
            area = classification.get("area") or case.area
            severity = classification.get("severity") or case.severity or DEFAULT_SEVERITY
            patch = ClassificationPatch(
                area=area,
                severity=severity,
                risk_flags=[str(flag) for flag in classification.get("risk_flags") or []],
                metadata={
                    **case.metadata,
                    "triage": {
                        "reproducibility": classification.get("reproducibility"),
                        "notes": classification.get("notes"),
                        "triaged_at": datetime.now(timezone.utc).isoformat(),
                    },
                },
            )
            await self.repository.update_classification(case.case_id, patch)
        except Exception as exc:
            logger.error("Triage failed case_id=%s error=%s", case.case_id, exc)
            return StageOutcome.failed(f"Triage failed: {exc}")
        return StageOutcome.advanced(f"Triaged as {severity} {area} issue")
