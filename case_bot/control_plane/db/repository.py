"""Async repository contract consumed by the orchestrator, and its SQLite implementation."""

from __future__ import annotations

from typing import Any, Protocol

from case_bot.control_plane.db.db import CaseDB
from case_bot.control_plane.models.case_contracts import (
    Approval,
    ApprovalStatus,
    CaseEvent,
    CasePatch,
    CaseRecord,
    CaseStatus,
    ClassificationPatch,
)


class CaseRepository(Protocol):
    async def create_case(
        self,
        *,
        org_id: str,
        title: str,
        case_type: str,
        case_id: str = "",
        description: str = "",
        severity: str = "",
        area: str = "",
        risk_flags: list[str] | None = None,
        metadata: dict[str, Any] | None = None,
        max_retries: int = 3,
    ) -> CaseRecord: ...

    async def get_case(self, case_id: str) -> CaseRecord | None: ...

    async def list_cases(
        self, statuses: list[CaseStatus] | None = None, org_id: str = ""
    ) -> list[CaseRecord]: ...

    async def update_case(
        self, case_id: str, patch: CasePatch, expected_version: int | None = None
    ) -> bool: ...

    async def insert_event(self, event: CaseEvent) -> CaseEvent: ...

    async def list_events(
        self, case_id: str, event_type: str | None = None
    ) -> list[CaseEvent]: ...

    async def insert_approval(self, approval: Approval) -> Approval: ...

    async def list_approvals(
        self, case_id: str, status: ApprovalStatus | None = None
    ) -> list[Approval]: ...

    async def decide_approvals(
        self, case_id: str, status: ApprovalStatus, decided_by: str
    ) -> int: ...

    async def update_classification(self, case_id: str, patch: ClassificationPatch) -> bool: ...

    async def insert_plan(
        self,
        case: CaseRecord,
        implementation: dict[str, Any],
        risk_assessment: dict[str, Any] | None = None,
    ) -> int: ...

    async def list_plans(self, case_id: str) -> list[dict[str, Any]]: ...

    async def insert_artifact(
        self, case: CaseRecord, artifact_type: str, content: dict[str, Any]
    ) -> int: ...

    async def list_artifacts(self, case_id: str) -> list[dict[str, Any]]: ...


class SqliteCaseRepository:
    """Adapts the synchronous ``CaseDB`` to the async repository contract."""

    def __init__(self, db: CaseDB) -> None:
        self.db = db

    async def create_case(
        self,
        *,
        org_id: str,
        title: str,
        case_type: str,
        case_id: str = "",
        description: str = "",
        severity: str = "",
        area: str = "",
        risk_flags: list[str] | None = None,
        metadata: dict[str, Any] | None = None,
        max_retries: int = 3,
    ) -> CaseRecord:
        row = self.db.create_case(
            org_id=org_id,
            title=title,
            case_type=case_type,
            case_id=case_id,
            description=description,
            severity=severity,
            area=area,
            risk_flags=risk_flags,
            metadata=metadata,
            max_retries=max_retries,
        )
        return CaseRecord.model_validate(row)

    async def get_case(self, case_id: str) -> CaseRecord | None:
        row = self.db.get_case(case_id)
        if row is None:
            return None
        return CaseRecord.model_validate(row)

    async def list_cases(
        self, statuses: list[CaseStatus] | None = None, org_id: str = ""
    ) -> list[CaseRecord]:
        rows = self.db.list_cases(
            statuses=[status.value for status in statuses] if statuses else None,
            org_id=org_id,
        )
        return [CaseRecord.model_validate(row) for row in rows]

    async def update_case(
        self, case_id: str, patch: CasePatch, expected_version: int | None = None
    ) -> bool:
        if patch.is_empty():
            return True
        return self.db.update_case_workflow(
            case_id, patch.changes(), expected_version=expected_version
        )

    async def update_classification(self, case_id: str, patch: ClassificationPatch) -> bool:
        return self.db.update_case_classification(case_id, patch.changes())

    async def insert_event(self, event: CaseEvent) -> CaseEvent:
        event_id = self.db.append_case_event(
            case_id=event.case_id,
            org_id=event.org_id,
            stage=event.stage.value,
            event_type=event.event_type.value,
            summary=event.summary,
            actor=event.actor,
            details=event.details,
        )
        return event.model_copy(update={"event_id": event_id})

    async def list_events(self, case_id: str, event_type: str | None = None) -> list[CaseEvent]:
        return [
            CaseEvent.model_validate(row)
            for row in self.db.list_case_events(case_id, event_type=event_type)
        ]

    async def insert_approval(self, approval: Approval) -> Approval:
        approval_id = self.db.create_approval(
            case_id=approval.case_id,
            org_id=approval.org_id,
            stage=approval.stage.value,
            gate_type=approval.gate_type,
            status=approval.status.value,
        )
        return approval.model_copy(update={"approval_id": approval_id})

    async def list_approvals(
        self, case_id: str, status: ApprovalStatus | None = None
    ) -> list[Approval]:
        rows = self.db.list_approvals(case_id, status=status.value if status else None)
        return [Approval.model_validate(row) for row in rows]

    async def decide_approvals(
        self, case_id: str, status: ApprovalStatus, decided_by: str
    ) -> int:
        return self.db.decide_approvals(case_id, status.value, decided_by)

    async def insert_plan(
        self,
        case: CaseRecord,
        implementation: dict[str, Any],
        risk_assessment: dict[str, Any] | None = None,
    ) -> int:
        return self.db.insert_plan(
            case_id=case.case_id,
            org_id=case.org_id,
            implementation=implementation,
            risk_assessment=risk_assessment,
        )

    async def list_plans(self, case_id: str) -> list[dict[str, Any]]:
        return self.db.list_plans(case_id)

    async def insert_artifact(
        self, case: CaseRecord, artifact_type: str, content: dict[str, Any]
    ) -> int:
        return self.db.insert_artifact(
            case_id=case.case_id,
            org_id=case.org_id,
            artifact_type=artifact_type,
            content=content,
        )

    async def list_artifacts(self, case_id: str) -> list[dict[str, Any]]:
        return self.db.list_artifacts(case_id)
