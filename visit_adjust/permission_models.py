"""
Pydantic models for adjustment permissions.

Each permission tier (normal / advanced / emergency / admin) has a
``PermissionProfile`` describing how large, how late-noticed and how
restricted a reschedule may be. ``default_profiles()`` returns the
profiles the service ships with; deployments can replace them through a
``PermissionConfigProvider``.
"""

from datetime import date, time
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from .domain import TimeWindow


class PermissionTier(str, Enum):
    """Permission tier governing an adjustment."""

    NORMAL = "normal"
    ADVANCED = "advanced"
    EMERGENCY = "emergency"
    ADMIN = "admin"


class AdjustDirection(str, Enum):
    """Direction of a reschedule. FORWARD means the new start is later."""

    FORWARD = "forward"
    BACKWARD = "backward"
    NONE = "none"


class TimeRange(BaseModel):
    """Time-of-day range. Wraps past midnight when ``end < start``."""

    start: time
    end: time
    label: str = ""

    def contains(self, t: time) -> bool:
        """Check whether ``t`` falls in the range, both bounds inclusive."""
        if self.end < self.start:
            return t >= self.start or t <= self.end
        return self.start <= t <= self.end

    def __str__(self) -> str:
        return f"{self.start.strftime('%H:%M')}-{self.end.strftime('%H:%M')}"


class RestrictedHours(BaseModel):
    """Sub-windows in which adjustments are restricted."""

    night: Optional[TimeRange] = None
    lunch: Optional[TimeRange] = None
    # Applies to emergency requests only and cannot be overridden
    emergency: Optional[TimeRange] = None


class ConditionalRestriction(BaseModel):
    """Extra limits applied when a patient/service/weather condition matches."""

    max_adjust_hours: Optional[float] = None
    min_notice_hours: Optional[float] = None
    require_approval: bool = False


class ConditionalRestrictions(BaseModel):
    """Conditional restrictions keyed by patient type, service type and weather."""

    patient_type: Dict[str, ConditionalRestriction] = Field(default_factory=dict)
    service_type: Dict[str, ConditionalRestriction] = Field(default_factory=dict)
    weather: Dict[str, ConditionalRestriction] = Field(default_factory=dict)


class PermissionProfile(BaseModel):
    """Limits for one permission tier."""

    tier: PermissionTier
    max_adjust_hours: float
    max_adjust_times_per_day: int
    min_notice_hours: float
    allowed_time_ranges: List[TimeRange] = Field(default_factory=list)
    restricted_hours: RestrictedHours = Field(default_factory=RestrictedHours)
    max_cross_days: int = 0
    allow_weekend: bool = False
    allow_holiday: bool = False
    allow_cross_week: bool = True
    restricted_dates: List[date] = Field(default_factory=list)
    conditional_restrictions: ConditionalRestrictions = Field(
        default_factory=ConditionalRestrictions
    )
    emergency_override: bool = False
    require_approval: bool = False
    max_forward_adjust_hours: Optional[float] = None
    max_backward_adjust_hours: Optional[float] = None


class AdjustmentRequest(BaseModel):
    """A single reschedule submitted for permission evaluation."""

    request_id: str
    original_window: TimeWindow
    proposed_window: TimeWindow
    requester: str
    reason_code: Optional[str] = None
    is_emergency: bool = False
    patient_type: Optional[str] = None
    service_type: Optional[str] = None
    weather: Optional[str] = None
    recent_adjust_count: int = Field(default=0, ge=0)


class ValidationResult(BaseModel):
    """Outcome of validating an adjustment request against a tier."""

    valid: bool
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    required_approval: bool = False
    resolved_tier: PermissionTier
    impact_score: float = Field(default=0.0, ge=0, le=100)
    magnitude_hours: float = 0.0
    notice_hours: float = 0.0
    direction: AdjustDirection = AdjustDirection.NONE


def _range(start: str, end: str, label: str = "") -> TimeRange:
    return TimeRange(start=time.fromisoformat(start), end=time.fromisoformat(end), label=label)


def default_profiles() -> Dict[PermissionTier, PermissionProfile]:
    """Build the stock permission profiles for every tier."""
    return {
        PermissionTier.NORMAL: PermissionProfile(
            tier=PermissionTier.NORMAL,
            max_adjust_hours=24,
            max_adjust_times_per_day=3,
            min_notice_hours=2,
            allowed_time_ranges=[_range("08:00", "18:00", "working hours")],
            restricted_hours=RestrictedHours(
                night=_range("22:00", "06:00", "night"),
                lunch=_range("12:00", "13:00", "lunch"),
            ),
            max_cross_days=0,
            allow_weekend=False,
            allow_holiday=False,
            allow_cross_week=False,
            conditional_restrictions=ConditionalRestrictions(
                patient_type={
                    "vip": ConditionalRestriction(require_approval=True, min_notice_hours=4),
                    "elderly": ConditionalRestriction(max_adjust_hours=12),
                    "critical": ConditionalRestriction(require_approval=True, min_notice_hours=6),
                },
                service_type={
                    "surgery": ConditionalRestriction(max_adjust_hours=6, require_approval=True),
                    "medication": ConditionalRestriction(max_adjust_hours=2, min_notice_hours=4),
                    "routine": ConditionalRestriction(max_adjust_hours=24),
                },
                weather={
                    "severe": ConditionalRestriction(max_adjust_hours=6, require_approval=True),
                    "rain": ConditionalRestriction(max_adjust_hours=12),
                },
            ),
            emergency_override=False,
            max_forward_adjust_hours=24,
            max_backward_adjust_hours=12,
        ),
        PermissionTier.ADVANCED: PermissionProfile(
            tier=PermissionTier.ADVANCED,
            max_adjust_hours=72,
            max_adjust_times_per_day=10,
            min_notice_hours=1,
            allowed_time_ranges=[_range("08:00", "20:00", "extended hours")],
            restricted_hours=RestrictedHours(
                night=_range("23:00", "05:00", "night"),
                emergency=_range("01:00", "04:00", "emergency blackout"),
            ),
            max_cross_days=2,
            allow_weekend=True,
            allow_holiday=False,
            allow_cross_week=True,
            conditional_restrictions=ConditionalRestrictions(
                patient_type={
                    "vip": ConditionalRestriction(min_notice_hours=2),
                    "elderly": ConditionalRestriction(max_adjust_hours=48),
                    "critical": ConditionalRestriction(require_approval=True, min_notice_hours=3),
                },
                service_type={
                    "surgery": ConditionalRestriction(max_adjust_hours=24, require_approval=True),
                    "medication": ConditionalRestriction(max_adjust_hours=12, min_notice_hours=2),
                    "routine": ConditionalRestriction(max_adjust_hours=72),
                },
                weather={
                    "severe": ConditionalRestriction(max_adjust_hours=24, require_approval=True),
                    "rain": ConditionalRestriction(max_adjust_hours=48),
                },
            ),
            emergency_override=True,
            max_forward_adjust_hours=72,
            max_backward_adjust_hours=48,
        ),
        PermissionTier.EMERGENCY: PermissionProfile(
            tier=PermissionTier.EMERGENCY,
            max_adjust_hours=168,
            max_adjust_times_per_day=999,
            min_notice_hours=0,
            allowed_time_ranges=[_range("00:00", "23:59", "all day")],
            max_cross_days=7,
            allow_weekend=True,
            allow_holiday=True,
            allow_cross_week=True,
            conditional_restrictions=ConditionalRestrictions(
                patient_type={
                    "vip": ConditionalRestriction(require_approval=True, min_notice_hours=1),
                    "elderly": ConditionalRestriction(max_adjust_hours=168, min_notice_hours=1),
                    "critical": ConditionalRestriction(require_approval=True, min_notice_hours=0),
                },
                service_type={
                    "surgery": ConditionalRestriction(max_adjust_hours=168, require_approval=True),
                    "medication": ConditionalRestriction(max_adjust_hours=168, min_notice_hours=0),
                    "routine": ConditionalRestriction(max_adjust_hours=168),
                },
                weather={
                    "severe": ConditionalRestriction(max_adjust_hours=168, require_approval=True),
                    "rain": ConditionalRestriction(max_adjust_hours=168),
                },
            ),
            emergency_override=True,
            require_approval=True,
            max_forward_adjust_hours=168,
            max_backward_adjust_hours=168,
        ),
        PermissionTier.ADMIN: PermissionProfile(
            tier=PermissionTier.ADMIN,
            max_adjust_hours=999,
            max_adjust_times_per_day=999,
            min_notice_hours=0,
            allowed_time_ranges=[_range("00:00", "23:59", "unrestricted")],
            max_cross_days=999,
            allow_weekend=True,
            allow_holiday=True,
            allow_cross_week=True,
            emergency_override=True,
        ),
    }
