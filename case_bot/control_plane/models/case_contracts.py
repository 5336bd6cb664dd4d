"""Pydantic contracts for cases, audit events, approvals, and stage outcomes."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from case_bot.control_plane.orchestration.stages import Stage


class CaseStatus(str, Enum):
    OPEN = "open"
    IN_PROGRESS = "in_progress"
    NEEDS_HUMAN = "needs_human"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({CaseStatus.COMPLETED, CaseStatus.FAILED, CaseStatus.CANCELLED})


class CaseEventType(str, Enum):
    CASE_CREATED = "case_created"
    STAGE_ENTER = "stage_enter"
    STAGE_EXIT = "stage_exit"
    ERROR = "error"
    ESCALATION = "escalation"
    APPROVAL_REQUEST = "approval_request"
    APPROVAL_GRANTED = "approval_granted"
    APPROVAL_REJECTED = "approval_rejected"
    RECOVERY_ENQUEUE = "recovery_enqueue"
    CASE_CANCELLED = "case_cancelled"


class ApprovalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class CaseRecord(BaseModel):
    """Immutable snapshot of a case row as loaded from the store."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    schema_version: Literal["case/v1"] = "case/v1"
    case_id: str = Field(min_length=1)
    org_id: str = Field(min_length=1)
    stage: Stage = Stage.INTAKE
    status: CaseStatus = CaseStatus.OPEN
    retry_count: int = Field(default=0, ge=0)
    max_retries: int = Field(default=3, ge=0)
    risk_flags: tuple[str, ...] = ()
    title: str = ""
    description: str = ""
    case_type: str = ""
    severity: str = ""
    area: str = ""
    metadata: dict[str, Any] = Field(default_factory=dict)
    version: int = Field(default=0, ge=0)
    created_at: str = ""
    updated_at: str = ""

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class CasePatch(BaseModel):
    """Workflow-position update; only the transition engine and gate flows build these."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    stage: Stage | None = None
    status: CaseStatus | None = None
    retry_count: int | None = Field(default=None, ge=0)

    def changes(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)

    def is_empty(self) -> bool:
        return not self.changes()


class ClassificationPatch(BaseModel):
    """Handler-owned case fields. Workflow fields are rejected by ``extra="forbid"``."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    area: str | None = None
    severity: str | None = None
    risk_flags: list[str] | None = None
    metadata: dict[str, Any] | None = None

    def changes(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


class CaseEvent(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    event_id: int | None = None
    case_id: str = Field(min_length=1)
    org_id: str = Field(min_length=1)
    stage: Stage
    event_type: CaseEventType
    actor: str = "system"
    summary: str = ""
    details: dict[str, Any] = Field(default_factory=dict)
    created_at: str = ""


class Approval(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    approval_id: int | None = None
    case_id: str = Field(min_length=1)
    org_id: str = Field(min_length=1)
    stage: Stage
    gate_type: str = Field(min_length=1)
    status: ApprovalStatus = ApprovalStatus.PENDING
    decided_by: str = ""
    decided_at: str = ""
    created_at: str = ""


class OutcomeKind(str, Enum):
    ERROR = "error"
    NEEDS_HUMAN = "needs_human"
    ADVANCE = "advance"
    TERMINAL = "terminal"


class StageOutcome(BaseModel):
    """What a stage handler reports back; the engine decides what it means."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    advance: bool = False
    needs_human: bool = False
    error: str | None = None
    summary: str = ""

    @property
    def kind(self) -> OutcomeKind:
        if self.error:
            return OutcomeKind.ERROR
        if self.needs_human:
            return OutcomeKind.NEEDS_HUMAN
        if self.advance:
            return OutcomeKind.ADVANCE
        return OutcomeKind.TERMINAL

    @classmethod
    def advanced(cls, summary: str = "") -> StageOutcome:
        return cls(advance=True, summary=summary)

    @classmethod
    def failed(cls, error: str) -> StageOutcome:
        return cls(error=error)

    @classmethod
    def waiting(cls, summary: str = "") -> StageOutcome:
        return cls(needs_human=True, summary=summary)

    @classmethod
    def terminal(cls, summary: str = "") -> StageOutcome:
        return cls(summary=summary)


StageHandler = Callable[[CaseRecord], Awaitable[StageOutcome]]
