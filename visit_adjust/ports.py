"""
Ports consumed by the engine, with in-memory adapters.

The engine talks to the outside world only through the protocols below.
The in-memory adapters back tests and the demo; SQL-backed adapters live
in ``schedule_service``.
"""

from collections import defaultdict
from datetime import date, datetime, timedelta
from typing import Dict, Iterable, List, Optional, Protocol, Tuple

from loguru import logger

from .approval_models import ApprovalCase, WorkflowEvent
from .domain import Conflict, ExistingSchedule, TimeWindow
from .permission_models import PermissionProfile, PermissionTier, default_profiles


class ScheduleStore(Protocol):
    async def find_schedules_near(
        self, window: TimeWindow, radius_days: int
    ) -> List[ExistingSchedule]: ...

    async def apply_adjustment(self, schedule_id: str, window: TimeWindow) -> None: ...


class PermissionConfigProvider(Protocol):
    def get_profile(self, tier: PermissionTier) -> PermissionProfile: ...


class UsageCounter(Protocol):
    async def get_daily_count(self, user_id: str, now: datetime) -> int: ...

    async def increment(self, user_id: str, now: datetime) -> int: ...

    async def release(self, user_id: str, now: datetime) -> int: ...


class NotificationGateway(Protocol):
    async def notify(self, event: WorkflowEvent) -> None: ...


class PersistenceStore(Protocol):
    async def save_case(self, case: ApprovalCase) -> None: ...

    async def get_case(self, case_id: str) -> Optional[ApprovalCase]: ...

    async def save_conflict(self, conflict: Conflict) -> None: ...


class InMemoryScheduleStore:
    """Schedule store holding bookings in a dict."""

    def __init__(self, schedules: Iterable[ExistingSchedule] = ()):
        self._schedules: Dict[str, ExistingSchedule] = {s.id: s for s in schedules}
        self.applied: List[Tuple[str, TimeWindow]] = []

    def add(self, schedule: ExistingSchedule) -> None:
        self._schedules[schedule.id] = schedule

    def get(self, schedule_id: str) -> Optional[ExistingSchedule]:
        return self._schedules.get(schedule_id)

    async def find_schedules_near(
        self, window: TimeWindow, radius_days: int
    ) -> List[ExistingSchedule]:
        radius = timedelta(days=radius_days)
        lower = window.start - radius
        upper = window.end + radius
        return sorted(
            (
                s
                for s in self._schedules.values()
                if s.window.start < upper and s.window.end > lower
            ),
            key=lambda s: (s.window.start, s.id),
        )

    async def apply_adjustment(self, schedule_id: str, window: TimeWindow) -> None:
        current = self._schedules.get(schedule_id)
        if current is not None:
            self._schedules[schedule_id] = current.model_copy(update={"window": window})
        else:
            self._schedules[schedule_id] = ExistingSchedule(id=schedule_id, window=window)
        self.applied.append((schedule_id, window))


class StaticPermissionConfigProvider:
    """Permission profiles held in memory; ``reload`` swaps them atomically."""

    def __init__(self, profiles: Optional[Dict[PermissionTier, PermissionProfile]] = None):
        self._profiles = dict(profiles or default_profiles())

    def get_profile(self, tier: PermissionTier) -> PermissionProfile:
        try:
            return self._profiles[tier]
        except KeyError:
            raise KeyError(f"No permission profile configured for tier {tier}") from None

    def reload(self, profiles: Dict[PermissionTier, PermissionProfile]) -> None:
        """Replace the profiles. Missing tiers keep their current profile."""
        merged = dict(self._profiles)
        merged.update(profiles)
        self._profiles = merged
        logger.info(f"Permission profiles reloaded: {sorted(t.value for t in profiles)}")


class InMemoryUsageCounter:
    """Per-user, per-local-day adjustment counter."""

    def __init__(self):
        self._counts: Dict[Tuple[str, date], int] = defaultdict(int)

    async def get_daily_count(self, user_id: str, now: datetime) -> int:
        return max(0, self._counts.get((user_id, now.date()), 0))

    async def increment(self, user_id: str, now: datetime) -> int:
        key = (user_id, now.date())
        self._counts[key] = max(0, self._counts[key]) + 1
        return self._counts[key]

    async def release(self, user_id: str, now: datetime) -> int:
        key = (user_id, now.date())
        self._counts[key] = max(0, self._counts[key] - 1)
        return self._counts[key]


class LoggingNotificationGateway:
    """Gateway that only records and logs events."""

    def __init__(self):
        self.events: List[WorkflowEvent] = []

    async def notify(self, event: WorkflowEvent) -> None:
        self.events.append(event)
        logger.info(f"Workflow event {event.kind} for case {event.case_id} ({event.status.value})")


class InMemoryPersistenceStore:
    """Last-write-wins store keyed by id."""

    def __init__(self):
        self.cases: Dict[str, ApprovalCase] = {}
        self.conflicts: Dict[str, Conflict] = {}

    async def save_case(self, case: ApprovalCase) -> None:
        self.cases[case.id] = case.model_copy(deep=True)

    async def get_case(self, case_id: str) -> Optional[ApprovalCase]:
        case = self.cases.get(case_id)
        return case.model_copy(deep=True) if case is not None else None

    async def save_conflict(self, conflict: Conflict) -> None:
        self.conflicts[conflict.id] = conflict.model_copy(deep=True)
