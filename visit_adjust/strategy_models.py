"""
Pydantic models for conflict resolution strategies.
"""

from datetime import time
from enum import Enum
from typing import Callable, Literal, Optional

from pydantic import BaseModel, Field

from .domain import ConflictKind, PriorityTier, ResolutionAction, Severity, SmartAction, TimeWindow


class ResolutionStrategy(str, Enum):
    """Strategy applied to every conflict of a batch."""

    AUTO = "auto"
    MANUAL = "manual"
    SKIP = "skip"
    SMART = "smart"


class ResolutionConfig(BaseModel):
    """Search parameters for automatic rescheduling.

    Example:
    ```python
    config = ResolutionConfig(
        step_minutes=15,
        prefer="earlier",
        avoid_lunch_hour=True,
    )
    ```
    """

    step_minutes: int = Field(30, ge=1, description="Distance between candidate start times")
    max_attempts: int = Field(20, ge=1, description="Candidates tried before giving up")
    prefer: Literal["later", "earlier"] = Field(
        "later", description="Direction searched first; the other direction follows"
    )
    max_days_delay: int = Field(
        7, ge=0, description="Furthest a candidate may land from the original date, in calendar days"
    )
    work_start: time = Field(time(8, 0), description="Earliest start of a rescheduled visit")
    work_end: time = Field(time(18, 0), description="Latest end of a rescheduled visit")
    allow_weekend: bool = Field(False, description="Whether candidates may land on Sat/Sun")
    avoid_lunch_hour: bool = Field(
        False, description="Whether to avoid scheduling during lunch hours"
    )
    lunch_start: time = time(12, 0)
    lunch_end: time = time(13, 0)
    smart_min_confidence: float = Field(
        50, ge=0, le=100, description="Below this combined confidence smart falls back to manual review"
    )
    buffer_minutes: Optional[int] = Field(
        None, ge=0, description="Gap kept between visits; defaults to the engine setting"
    )


class ManualAction(BaseModel):
    """Caller-supplied instruction for one conflict under the manual strategy."""

    action: ResolutionAction
    target_window: Optional[TimeWindow] = Field(
        None, description="New window, required for reschedule_manual"
    )
    note: Optional[str] = None


class SmartRule(BaseModel):
    """One row of the smart decision table."""

    action: SmartAction
    confidence: float = Field(ge=0, le=100)
    rationale: str


SmartTable = Callable[[Severity, ConflictKind, PriorityTier], SmartRule]

_HIGH_TIERS = (PriorityTier.HIGH, PriorityTier.URGENT)


def default_smart_table(
    severity: Severity, kind: ConflictKind, priority: PriorityTier
) -> SmartRule:
    """Map (severity, conflict kind, priority) to a smart action."""
    internal = kind == ConflictKind.INTERNAL

    if severity == Severity.CRITICAL:
        if priority == PriorityTier.URGENT:
            return SmartRule(
                action=SmartAction.MANUAL_REVIEW,
                confidence=90,
                rationale="critical conflict on an urgent visit needs a human decision",
            )
        if priority == PriorityTier.HIGH:
            return SmartRule(
                action=SmartAction.MANUAL_REVIEW,
                confidence=80,
                rationale="critical conflict on a high priority visit needs review",
            )
        if internal:
            return SmartRule(
                action=SmartAction.AUTO_RESCHEDULE,
                confidence=65,
                rationale="critical clash inside the batch, moving the lower priority visit",
            )
        return SmartRule(
            action=SmartAction.NEGOTIATE,
            confidence=60,
            rationale="critical clash with a booked visit, negotiate with the patient",
        )

    if severity == Severity.HIGH:
        if priority == PriorityTier.URGENT:
            if internal:
                return SmartRule(
                    action=SmartAction.AUTO_RESCHEDULE,
                    confidence=75,
                    rationale="urgent visits in the batch clash, reschedule one of them",
                )
            return SmartRule(
                action=SmartAction.MANUAL_REVIEW,
                confidence=70,
                rationale="urgent visit clashes with a booked visit",
            )
        if internal:
            return SmartRule(
                action=SmartAction.AUTO_RESCHEDULE,
                confidence=80,
                rationale="high severity clash inside the batch",
            )
        return SmartRule(
            action=SmartAction.NEGOTIATE,
            confidence=65,
            rationale="high severity clash with a booked visit",
        )

    if severity == Severity.MEDIUM:
        return SmartRule(
            action=SmartAction.AUTO_RESCHEDULE,
            confidence=85,
            rationale="medium severity clash, safe to reschedule",
        )

    if priority in _HIGH_TIERS:
        return SmartRule(
            action=SmartAction.AUTO_RESCHEDULE,
            confidence=80,
            rationale="minor clash on a high priority visit, reschedule to be safe",
        )
    return SmartRule(
        action=SmartAction.SKIP,
        confidence=90,
        rationale="minor clash on a low priority visit, keep as proposed",
    )
