"""Value objects shared by the conflict, resolution and orchestration layers."""

from datetime import datetime, timedelta
from enum import Enum
from typing import Optional, Union

from pydantic import BaseModel, Field

from .errors import ValidationError


class PriorityTier(str, Enum):
    """Priority of a visit."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class ConflictKind(str, Enum):
    """Whether a conflict is between batch items or against a booked visit."""

    INTERNAL = "internal"
    EXTERNAL = "external"


class Severity(str, Enum):
    """Bucketed severity of a conflict."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class OverlapType(str, Enum):
    """Shape of an overlap, kept for diagnostics."""

    NONE = "none"
    IDENTICAL = "identical"
    CONTAINS = "contains"
    CONTAINED = "contained"
    PARTIAL_START = "partial_start"
    PARTIAL_END = "partial_end"


class ResolutionAction(str, Enum):
    """Action taken for a conflict."""

    RESCHEDULE = "reschedule"
    RESCHEDULE_MANUAL = "reschedule_manual"
    SKIP = "skip"
    FORCE = "force"
    CANCEL = "cancel"
    NEGOTIATE = "negotiate"


class SmartAction(str, Enum):
    """Outcome of the smart decision table."""

    AUTO_RESCHEDULE = "auto_reschedule"
    SKIP = "skip"
    MANUAL_REVIEW = "manual_review"
    NEGOTIATE = "negotiate"


class TimeWindow(BaseModel):
    """A visit window."""

    start: datetime
    duration_minutes: int = Field(ge=0)

    model_config = {"frozen": True}

    @property
    def end(self) -> datetime:
        return self.start + timedelta(minutes=self.duration_minutes)

    @classmethod
    def from_bounds(cls, start: datetime, end: datetime) -> "TimeWindow":
        """Build a window from start and end instants.

        Raises:
            ValidationError: if the end is not after the start.
        """
        if start is None or end is None:
            raise ValidationError("time window requires both start and end")
        if end <= start:
            raise ValidationError(
                f"inverted time window: end {end.isoformat()} is not after start {start.isoformat()}"
            )
        minutes = int((end - start).total_seconds() // 60)
        return cls(start=start, duration_minutes=minutes)

    def shifted(self, minutes: int) -> "TimeWindow":
        """Return the same-length window moved by ``minutes``."""
        return TimeWindow(
            start=self.start + timedelta(minutes=minutes),
            duration_minutes=self.duration_minutes,
        )

    def __str__(self) -> str:
        return f"{self.start.strftime('%Y-%m-%d %H:%M')}-{self.end.strftime('%H:%M')}"


class AdjustmentItem(BaseModel):
    """One proposed reschedule within a batch."""

    id: str
    patient_name: str
    original_window: TimeWindow
    proposed_window: TimeWindow
    priority: PriorityTier = PriorityTier.MEDIUM
    service_type: str = "routine"
    patient_type: str = "normal"
    is_emergency: bool = False
    reason_code: Optional[str] = None
    weather: Optional[str] = None
    resource_id: Optional[str] = None


class ExistingSchedule(BaseModel):
    """Read-only projection of an already-booked visit."""

    id: str
    patient_name: str = ""
    window: TimeWindow
    service_type: str = "routine"
    priority: PriorityTier = PriorityTier.MEDIUM
    resource_id: Optional[str] = None

    model_config = {"frozen": True}


class ResolutionDecision(BaseModel):
    """The single decision attached to a conflict."""

    conflict_id: str
    item_id: str
    action: ResolutionAction
    target_window: Optional[TimeWindow] = None
    confidence: float = Field(ge=0, le=100)
    rationale: str
    strategy: str = "auto"
    succeeded: bool = True
    escalated: bool = False
    risk_flagged: bool = False
    attempts: int = 0
    smart_action: Optional[SmartAction] = None


class Conflict(BaseModel):
    """Overlap between a batch item and another item or a booked visit."""

    id: str
    kind: ConflictKind
    subject: AdjustmentItem
    counterpart: Union[AdjustmentItem, ExistingSchedule]
    overlap_minutes: float = Field(gt=0)
    overlap_type: OverlapType = OverlapType.NONE
    severity: Severity = Severity.LOW
    severity_score: float = Field(default=0.0, ge=0, le=100)
    resolution: Optional[ResolutionDecision] = None

    @property
    def is_closed(self) -> bool:
        return self.resolution is not None

    @property
    def counterpart_window(self) -> TimeWindow:
        if isinstance(self.counterpart, AdjustmentItem):
            return self.counterpart.proposed_window
        return self.counterpart.window
