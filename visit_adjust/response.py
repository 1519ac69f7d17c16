"""Report types returned by the engine."""

from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from .domain import Conflict, ExistingSchedule, ResolutionDecision, Severity, TimeWindow
from .permission_models import PermissionTier, ValidationResult


class ProgressUpdate(BaseModel):
    """Progress of a detection phase."""

    phase: str
    processed: int
    total: int

    @property
    def percentage(self) -> int:
        if self.total == 0:
            return 100
        return round(self.processed / self.total * 100)


class LookupFailureInfo(BaseModel):
    """A schedule lookup that failed and was treated as empty."""

    item_id: str
    error: str


class ConflictStatistics(BaseModel):
    """Counts over a detection run."""

    total_items: int = 0
    internal_conflicts: int = 0
    external_conflicts: int = 0
    by_severity: Dict[Severity, int] = Field(
        default_factory=lambda: {s: 0 for s in Severity}
    )


class Recommendation(BaseModel):
    """Suggested strategy for a group of conflicts of the same severity."""

    severity: Severity
    conflict_count: int
    strategy: str
    description: str


class ConflictReport(BaseModel):
    """Output of the conflict classifier."""

    conflicts: List[Conflict] = Field(default_factory=list)
    statistics: ConflictStatistics = Field(default_factory=ConflictStatistics)
    nearby_schedules: List[ExistingSchedule] = Field(default_factory=list)
    lookup_failures: List[LookupFailureInfo] = Field(default_factory=list)
    recommendations: List[Recommendation] = Field(default_factory=list)


class ItemDisposition(str, Enum):
    """What happened to a batch item."""

    COMMITTED = "committed"
    AWAITING_APPROVAL = "awaiting_approval"
    DENIED = "denied"
    INVALID = "invalid"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"
    NEGOTIATING = "negotiating"
    NEEDS_ATTENTION = "needs_attention"
    FAILED = "failed"


class ItemOutcome(BaseModel):
    """Per-item result of a batch run."""

    item_id: str
    disposition: ItemDisposition
    final_window: Optional[TimeWindow] = None
    tier: Optional[PermissionTier] = None
    validation: Optional[ValidationResult] = None
    case_id: Optional[str] = None
    decisions: List[str] = Field(default_factory=list)
    risk_flagged: bool = False
    errors: List[str] = Field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.disposition in (
            ItemDisposition.COMMITTED,
            ItemDisposition.AWAITING_APPROVAL,
        )


class BatchReport(BaseModel):
    """Final report of a batch run. Covers every item, conflict and decision."""

    strategy: str
    requester: str
    started_at: datetime
    items: List[ItemOutcome] = Field(default_factory=list)
    conflicts: List[Conflict] = Field(default_factory=list)
    decisions: List[ResolutionDecision] = Field(default_factory=list)
    lookup_failures: List[LookupFailureInfo] = Field(default_factory=list)
    recommendations: List[Recommendation] = Field(default_factory=list)

    def outcome(self, item_id: str) -> ItemOutcome:
        for outcome in self.items:
            if outcome.item_id == item_id:
                return outcome
        raise KeyError(item_id)

    @property
    def counts(self) -> Dict[ItemDisposition, int]:
        counts: Dict[ItemDisposition, int] = {}
        for outcome in self.items:
            counts[outcome.disposition] = counts.get(outcome.disposition, 0) + 1
        return counts
