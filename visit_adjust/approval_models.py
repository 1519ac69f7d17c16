"""Pydantic models for approval cases and workflow templates."""

from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from .permission_models import AdjustmentRequest, PermissionTier


class ApproverRole(str, Enum):
    """Roles that can act on an approval step."""

    RECORDER = "recorder"
    SENIOR_RECORDER = "senior_recorder"
    SUPERVISOR = "supervisor"
    ADMIN = "admin"
    SYSTEM = "system"


class CaseStatus(str, Enum):
    """Status of an approval case."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    APPROVED = "approved"
    REJECTED = "rejected"

    @property
    def is_terminal(self) -> bool:
        return self in (CaseStatus.APPROVED, CaseStatus.REJECTED)


class StepStatus(str, Enum):
    """Status of a single approval step."""

    WAITING = "waiting"
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"

    @property
    def is_resolved(self) -> bool:
        return self in (StepStatus.APPROVED, StepStatus.REJECTED, StepStatus.CANCELLED)


class ApprovalDecision(str, Enum):
    """Decision an approver can submit."""

    APPROVE = "approve"
    REJECT = "reject"


class StepTemplate(BaseModel):
    """Blueprint of one approval step."""

    role: ApproverRole
    name: str
    auto_approve: bool = False
    urgent: bool = False
    deadline_hours: float = 24


class WorkflowTemplate(BaseModel):
    """Ordered approval steps for a tier and impact score."""

    tier: PermissionTier
    impact_score: float = 0.0
    steps: List[StepTemplate] = Field(min_length=1)

    @property
    def estimated_hours(self) -> int:
        """Rough time to completion, used for requester messaging."""
        total = 0.0
        for step in self.steps:
            if step.auto_approve:
                total += 0.1
            elif step.urgent:
                total += 2
            else:
                total += step.deadline_hours
        return int(-(-total // 1))


class ApprovalStep(BaseModel):
    """A role-gated checkpoint within a case."""

    index: int
    role: ApproverRole
    name: str
    auto_approve: bool = False
    urgent: bool = False
    deadline_hours: float = 24
    status: StepStatus = StepStatus.WAITING
    started_at: Optional[datetime] = None
    decision: Optional[ApprovalDecision] = None
    decided_by: Optional[str] = None
    decided_at: Optional[datetime] = None
    comments: Optional[str] = None

    @property
    def deadline(self) -> Optional[datetime]:
        if self.started_at is None:
            return None
        return self.started_at + timedelta(hours=self.deadline_hours)


class HistoryEntry(BaseModel):
    """Append-only record of something that happened to a case."""

    at: datetime
    action: str
    actor: str
    step_index: Optional[int] = None
    comments: Optional[str] = None

    model_config = {"frozen": True}


class ApprovalCase(BaseModel):
    """Approval workflow instance for one adjustment request."""

    id: str
    request: AdjustmentRequest
    tier: PermissionTier
    impact_score: float = 0.0
    steps: List[ApprovalStep]
    current_step_index: int = 0
    status: CaseStatus = CaseStatus.PENDING
    history: List[HistoryEntry] = Field(default_factory=list)
    priority: str = "normal"
    tags: List[str] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime

    @property
    def current_step(self) -> ApprovalStep:
        return self.steps[self.current_step_index]


class WorkflowEvent(BaseModel):
    """Notification emitted on workflow transitions."""

    kind: str
    case_id: str
    request_id: str
    status: CaseStatus
    at: datetime
    details: Dict[str, Any] = Field(default_factory=dict)
