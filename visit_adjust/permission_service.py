"""
Permission tier resolution and rule validation for a single adjustment.

``validate`` runs its checks in a fixed order so the itemized errors read
the same way every time. A violation is a blocking error unless the tier
allows emergency override and the request is an emergency, in which case
it is downgraded to a warning and the request needs approval instead.
"""

from datetime import date, datetime
from typing import Dict, FrozenSet, Iterable, List, Optional, Tuple

from loguru import logger
from pydantic import BaseModel, Field

from .config import DEFAULT_HOLIDAYS, EngineSettings
from .errors import PermissionDenied, ValidationError
from .permission_models import (
    AdjustDirection,
    AdjustmentRequest,
    ConditionalRestriction,
    PermissionProfile,
    PermissionTier,
    ValidationResult,
)
from .ports import StaticPermissionConfigProvider

# Impact factor weights
IMPACT_WEIGHTS: Dict[str, float] = {
    "magnitude": 0.3,
    "notice": 0.2,
    "patient": 0.15,
    "service": 0.15,
    "frequency": 0.1,
    "off_hours": 0.1,
}

PATIENT_IMPACT: Dict[str, float] = {"vip": 1.0, "critical": 0.8, "elderly": 0.67}
SERVICE_IMPACT: Dict[str, float] = {"surgery": 1.0, "medication": 0.67, "routine": 0.33}

IMPACT_APPROVAL_THRESHOLD = 70
FREQUENT_ADJUST_THRESHOLD = 3


def _hours(delta) -> float:
    return delta.total_seconds() / 3600


class _Findings(BaseModel):
    """Accumulates errors and warnings while checks run."""

    override: bool
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    required_approval: bool = False

    def violation(self, message: str, overridable: bool = True) -> None:
        if overridable and self.override:
            self.warnings.append(f"{message} (emergency override)")
            self.required_approval = True
        else:
            self.errors.append(message)

    def needs_approval(self, message: str) -> None:
        self.warnings.append(message)
        self.required_approval = True


class PermissionEvaluator:
    """Resolves the permission tier of a request and validates it against a profile."""

    def __init__(
        self,
        config_provider=None,
        settings: Optional[EngineSettings] = None,
        holidays: Optional[Iterable[date]] = None,
    ):
        """
        Args:
            config_provider: Source of per-tier PermissionProfiles
            settings: Engine settings; supplies the emergency notice threshold
            holidays: Dates treated as public holidays
        """
        self.config_provider = config_provider or StaticPermissionConfigProvider()
        self.settings = settings or EngineSettings()
        self.holidays: FrozenSet[date] = frozenset(
            DEFAULT_HOLIDAYS if holidays is None else holidays
        )

    @staticmethod
    def measure(request: AdjustmentRequest, now: datetime) -> Tuple[float, float, AdjustDirection]:
        """Return (magnitude hours, notice hours, direction) for a request."""
        shift = request.proposed_window.start - request.original_window.start
        magnitude = abs(_hours(shift))
        notice = _hours(request.original_window.start - now)
        if shift.total_seconds() > 0:
            direction = AdjustDirection.FORWARD
        elif shift.total_seconds() < 0:
            direction = AdjustDirection.BACKWARD
        else:
            direction = AdjustDirection.NONE
        return magnitude, notice, direction

    def determine_tier(self, request: AdjustmentRequest, now: datetime) -> PermissionTier:
        """Pick the tier the request falls into."""
        magnitude, notice, _ = self.measure(request, now)

        if (
            request.is_emergency
            or notice < self.settings.emergency_notice_hours
            or request.proposed_window.start.date() != request.original_window.start.date()
        ):
            return PermissionTier.EMERGENCY

        normal = self.config_provider.get_profile(PermissionTier.NORMAL)
        start = request.proposed_window.start.time()
        in_normal_hours = not normal.allowed_time_ranges or any(
            r.contains(start) for r in normal.allowed_time_ranges
        )
        if not in_normal_hours or magnitude > normal.max_adjust_hours:
            return PermissionTier.ADVANCED

        return PermissionTier.NORMAL

    def _matching_conditions(
        self, request: AdjustmentRequest, profile: PermissionProfile
    ) -> List[Tuple[str, str, ConditionalRestriction]]:
        restrictions = profile.conditional_restrictions
        matches = []
        for kind, value, table in (
            ("patient type", request.patient_type, restrictions.patient_type),
            ("service type", request.service_type, restrictions.service_type),
            ("weather", request.weather, restrictions.weather),
        ):
            if value and value in table:
                matches.append((kind, value, table[value]))
        return matches

    def impact_score(
        self,
        request: AdjustmentRequest,
        magnitude: float,
        notice: float,
        usage_count: int = 0,
    ) -> float:
        """Weighted impact of an adjustment in [0, 100]."""
        if notice < 2:
            notice_factor = 1.0
        elif notice < 12:
            notice_factor = 0.5
        elif notice < 24:
            notice_factor = 0.25
        else:
            notice_factor = 0.0

        hour = request.proposed_window.start.hour
        if hour < 8 or hour > 18:
            off_hours = 1.0
        elif hour < 9 or hour > 17:
            off_hours = 0.5
        else:
            off_hours = 0.0

        frequency = max(request.recent_adjust_count, usage_count)
        factors = {
            "magnitude": min(magnitude / 15, 1.0),
            "notice": notice_factor,
            "patient": PATIENT_IMPACT.get(request.patient_type or "", 0.0),
            "service": SERVICE_IMPACT.get(request.service_type or "", 0.0),
            "frequency": min(frequency * 2 / 10, 1.0),
            "off_hours": off_hours,
        }
        score = sum(IMPACT_WEIGHTS[name] * value for name, value in factors.items()) * 100
        return min(100.0, round(score, 1))

    def validate(
        self,
        request: AdjustmentRequest,
        profile: PermissionProfile,
        now: datetime,
        usage_count: int = 0,
    ) -> ValidationResult:
        """Validate a request against a permission profile.

        Args:
            request: The adjustment being requested
            profile: Profile of the tier to validate against
            now: Reference time; the only time source used
            usage_count: Adjustments the requester already made today

        Returns:
            ValidationResult; ``valid`` is False when any blocking error was found

        Raises:
            ValidationError: if either window is empty
        """
        if (
            request.original_window.duration_minutes <= 0
            or request.proposed_window.duration_minutes <= 0
        ):
            raise ValidationError(f"request {request.request_id} has an empty time window")

        magnitude, notice, direction = self.measure(request, now)
        findings = _Findings(override=profile.emergency_override and request.is_emergency)
        proposed = request.proposed_window.start
        original = request.original_window.start

        # Magnitude
        if magnitude > profile.max_adjust_hours:
            findings.violation(
                f"Adjustment of {magnitude:g}h exceeds the {profile.max_adjust_hours:g}h "
                f"limit for the {profile.tier.value} tier"
            )
        if (
            direction == AdjustDirection.FORWARD
            and profile.max_forward_adjust_hours is not None
            and magnitude > profile.max_forward_adjust_hours
        ):
            findings.violation(
                f"Moving later by {magnitude:g}h exceeds the forward limit of "
                f"{profile.max_forward_adjust_hours:g}h"
            )
        if (
            direction == AdjustDirection.BACKWARD
            and profile.max_backward_adjust_hours is not None
            and magnitude > profile.max_backward_adjust_hours
        ):
            findings.violation(
                f"Moving earlier by {magnitude:g}h exceeds the backward limit of "
                f"{profile.max_backward_adjust_hours:g}h"
            )

        # Notice
        if notice < profile.min_notice_hours:
            findings.violation(
                f"Only {notice:.1f}h notice given, {profile.min_notice_hours:g}h required"
            )

        # Allowed time ranges
        start_time = proposed.time()
        if profile.allowed_time_ranges and not any(
            r.contains(start_time) for r in profile.allowed_time_ranges
        ):
            allowed = ", ".join(str(r) for r in profile.allowed_time_ranges)
            findings.violation(f"New start {start_time.strftime('%H:%M')} is outside {allowed}")

        # Restricted hours
        restricted = profile.restricted_hours
        for label, time_range in (("night", restricted.night), ("lunch", restricted.lunch)):
            if time_range is not None and time_range.contains(start_time):
                findings.violation(f"New start falls in the restricted {label} hours {time_range}")
        if (
            request.is_emergency
            and restricted.emergency is not None
            and restricted.emergency.contains(start_time)
        ):
            findings.violation(
                f"Emergency adjustments are not allowed during {restricted.emergency}",
                overridable=False,
            )

        # Cross days
        cross_days = abs((proposed.date() - original.date()).days)
        if cross_days > profile.max_cross_days:
            findings.violation(
                f"Adjustment crosses {cross_days} days, at most {profile.max_cross_days} allowed"
            )
        if not profile.allow_cross_week and (
            proposed.isocalendar()[:2] != original.isocalendar()[:2]
        ):
            findings.violation("Adjustment moves the visit into another week")

        # Calendar restrictions
        if proposed.weekday() >= 5 and not profile.allow_weekend:
            findings.violation(f"Weekend adjustments are not allowed ({proposed.date()})")
        if proposed.date() in self.holidays and not profile.allow_holiday:
            findings.violation(f"Holiday adjustments are not allowed ({proposed.date()})")
        if proposed.date() in profile.restricted_dates:
            findings.violation(f"{proposed.date()} is a restricted date")

        # Conditional restrictions
        matches = self._matching_conditions(request, profile)
        caps = [(c.max_adjust_hours, kind, value) for kind, value, c in matches if c.max_adjust_hours is not None]
        if caps:
            cap, kind, value = min(caps)
            if cap < profile.max_adjust_hours and magnitude > cap:
                findings.violation(
                    f"Adjustment of {magnitude:g}h exceeds the {cap:g}h limit for {kind} '{value}'"
                )
        notices = [(c.min_notice_hours, kind, value) for kind, value, c in matches if c.min_notice_hours is not None]
        if notices:
            required, kind, value = max(notices)
            if required > profile.min_notice_hours and notice < required:
                findings.violation(
                    f"Only {notice:.1f}h notice given, {required:g}h required for {kind} '{value}'"
                )
        for kind, value, condition in matches:
            if condition.require_approval:
                findings.needs_approval(f"{kind.capitalize()} '{value}' requires approval")

        # Daily usage
        if usage_count >= profile.max_adjust_times_per_day:
            findings.violation(
                f"Daily adjustment limit of {profile.max_adjust_times_per_day} reached"
            )

        if request.recent_adjust_count > FREQUENT_ADJUST_THRESHOLD:
            findings.warnings.append(
                f"Visit was adjusted {request.recent_adjust_count} times recently"
            )

        impact = self.impact_score(request, magnitude, notice, usage_count)
        if impact > IMPACT_APPROVAL_THRESHOLD:
            findings.needs_approval(f"High impact adjustment (score {impact:g})")

        required_approval = (
            findings.required_approval or bool(findings.warnings) or profile.require_approval
        )

        result = ValidationResult(
            valid=not findings.errors,
            errors=findings.errors,
            warnings=findings.warnings,
            required_approval=required_approval,
            resolved_tier=profile.tier,
            impact_score=impact,
            magnitude_hours=round(magnitude, 4),
            notice_hours=round(notice, 4),
            direction=direction,
        )
        logger.debug(
            f"Validated {request.request_id} against {profile.tier.value}: valid={result.valid} "
            f"errors={len(result.errors)} warnings={len(result.warnings)} impact={impact}"
        )
        return result

    def evaluate(
        self, request: AdjustmentRequest, now: datetime, usage_count: int = 0
    ) -> ValidationResult:
        """Determine the tier, then validate against that tier's profile."""
        tier = self.determine_tier(request, now)
        profile = self.config_provider.get_profile(tier)
        return self.validate(request, profile, now, usage_count)


def ensure_permitted(result: ValidationResult) -> ValidationResult:
    """Raise PermissionDenied unless the result is valid."""
    if not result.valid:
        raise PermissionDenied(result.errors)
    return result
