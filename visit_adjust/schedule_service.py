"""SQL-backed adapters for the schedule store, usage counter and persistence.

Note on timezone handling:
- Aware datetimes are normalised to UTC before they are written
- SQLite stores datetimes without timezone info, so values read back are
  aligned to the timezone convention of the window used in the query
- Callers should use either aware or naive datetimes consistently
"""

import asyncio
from datetime import date, datetime, timedelta, timezone
from typing import List, Optional

from loguru import logger
from sqlalchemy import and_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from .approval_models import ApprovalCase
from .domain import Conflict, ExistingSchedule, PriorityTier, TimeWindow
from .models import (
    AdjustmentUsage,
    ApprovalCaseRecord,
    ConflictRecord,
    ScheduleEntry,
    ScheduleStatus,
)

# Longest visit the store expects; bounds the range query on start_time
MAX_VISIT_MINUTES = 24 * 60


def ensure_utc(dt: datetime) -> datetime:
    """
    Ensure datetime is UTC timezone-aware.

    Naive datetimes are assumed to already be UTC.

    Args:
        dt: The datetime to convert

    Returns:
        UTC timezone-aware datetime
    """
    if dt is None:
        return None

    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)

    if dt.tzinfo != timezone.utc:
        return dt.astimezone(timezone.utc)

    return dt


def to_db_value(dt: datetime) -> datetime:
    """Convert a datetime to the naive-UTC form stored in the database."""
    if dt.tzinfo is None:
        return dt
    return ensure_utc(dt).replace(tzinfo=None)


def align_tz(dt: datetime, reference: datetime) -> datetime:
    """Give a stored datetime the same timezone convention as ``reference``."""
    if reference.tzinfo is None:
        return to_db_value(dt)
    return ensure_utc(dt).astimezone(reference.tzinfo)


class SqlScheduleStore:
    """Schedule store over the ``schedules`` table."""

    def __init__(self, session_factory: sessionmaker):
        """Initialize the schedule store.

        Args:
            session_factory: SQLAlchemy session factory
        """
        self.session_factory = session_factory

    def add_schedule(
        self,
        schedule_id: str,
        patient_name: str,
        start_time: datetime,
        duration_minutes: int = 60,
        service_type: str = "routine",
        priority: PriorityTier = PriorityTier.MEDIUM,
        resource_id: Optional[str] = None,
    ) -> ScheduleEntry:
        """Book a visit."""
        entry = ScheduleEntry(
            id=schedule_id,
            patient_name=patient_name,
            start_time=to_db_value(start_time),
            duration_minutes=duration_minutes,
            service_type=service_type,
            priority=PriorityTier(priority).value,
            resource_id=resource_id,
            status=ScheduleStatus.SCHEDULED,
        )
        with self.session_factory() as session:
            session.add(entry)
            session.commit()
            session.refresh(entry)
            return entry

    def cancel_schedule(self, schedule_id: str) -> bool:
        """Cancel a visit by setting its status to CANCELLED.

        Returns:
            bool: True if successfully cancelled, False if it does not exist
        """
        with self.session_factory() as session:
            entry = session.query(ScheduleEntry).filter_by(id=schedule_id).first()
            if not entry:
                return False

            entry.status = ScheduleStatus.CANCELLED
            session.commit()
            return True

    def _find_near(self, window: TimeWindow, radius_days: int) -> List[ExistingSchedule]:
        radius = timedelta(days=radius_days)
        lower = to_db_value(window.start - radius)
        upper = to_db_value(window.end + radius)

        with self.session_factory() as session:
            entries = (
                session.query(ScheduleEntry)
                .filter(
                    and_(
                        ScheduleEntry.status == ScheduleStatus.SCHEDULED,
                        ScheduleEntry.start_time < upper,
                        ScheduleEntry.start_time
                        > lower - timedelta(minutes=MAX_VISIT_MINUTES),
                    )
                )
                .order_by(ScheduleEntry.start_time, ScheduleEntry.id)
                .all()
            )

            schedules = []
            for entry in entries:
                start = to_db_value(entry.start_time)
                if start + timedelta(minutes=entry.duration_minutes) <= lower:
                    continue
                schedules.append(
                    ExistingSchedule(
                        id=entry.id,
                        patient_name=entry.patient_name,
                        window=TimeWindow(
                            start=align_tz(entry.start_time, window.start),
                            duration_minutes=entry.duration_minutes,
                        ),
                        service_type=entry.service_type,
                        priority=PriorityTier(entry.priority),
                        resource_id=entry.resource_id,
                    )
                )
            return schedules

    async def find_schedules_near(
        self, window: TimeWindow, radius_days: int
    ) -> List[ExistingSchedule]:
        """Get scheduled visits within ``radius_days`` of a window.

        The query runs in a worker thread so callers can bound it with a
        timeout and run several lookups at once.

        Raises:
            SQLAlchemyError: if the query fails; callers treat it as a lookup failure
        """
        return await asyncio.to_thread(self._find_near, window, radius_days)

    def _apply(self, schedule_id: str, window: TimeWindow) -> None:
        with self.session_factory() as session:
            entry = session.query(ScheduleEntry).filter_by(id=schedule_id).first()
            if not entry:
                raise KeyError(f"Schedule {schedule_id} not found")

            entry.start_time = to_db_value(window.start)
            entry.duration_minutes = window.duration_minutes
            try:
                session.commit()
            except SQLAlchemyError:
                session.rollback()
                logger.error(f"Failed to apply adjustment to schedule {schedule_id}")
                raise

    async def apply_adjustment(self, schedule_id: str, window: TimeWindow) -> None:
        """Move a booked visit to a new window.

        Raises:
            KeyError: if the visit does not exist
        """
        await asyncio.to_thread(self._apply, schedule_id, window)


class SqlUsageCounter:
    """Daily adjustment counter over the ``adjustment_usage`` table."""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def _row(self, session, user_id: str, day: date) -> Optional[AdjustmentUsage]:
        return (
            session.query(AdjustmentUsage)
            .filter(AdjustmentUsage.user_id == user_id, AdjustmentUsage.day == day.isoformat())
            .first()
        )

    def _count(self, user_id: str, day: date) -> int:
        with self.session_factory() as session:
            row = self._row(session, user_id, day)
            return max(0, row.count) if row else 0

    def _add(self, user_id: str, day: date, delta: int) -> int:
        with self.session_factory() as session:
            row = self._row(session, user_id, day)
            if row is None:
                row = AdjustmentUsage(user_id=user_id, day=day.isoformat(), count=0)
                session.add(row)
            count = max(0, (row.count or 0) + delta)
            row.count = count
            session.commit()
            return count

    async def get_daily_count(self, user_id: str, now: datetime) -> int:
        return await asyncio.to_thread(self._count, user_id, now.date())

    async def increment(self, user_id: str, now: datetime) -> int:
        return await asyncio.to_thread(self._add, user_id, now.date(), 1)

    async def release(self, user_id: str, now: datetime) -> int:
        """Give back one adjustment, never going below zero."""
        return await asyncio.to_thread(self._add, user_id, now.date(), -1)


class SqlPersistenceStore:
    """JSON snapshots of approval cases and conflicts, last write wins."""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def _save_case(self, case_id: str, request_id: str, status: str, payload: str) -> None:
        with self.session_factory() as session:
            record = session.get(ApprovalCaseRecord, case_id)
            if record is None:
                record = ApprovalCaseRecord(id=case_id, request_id=request_id)
                session.add(record)
            record.status = status
            record.payload = payload
            session.commit()

    def _load_case(self, case_id: str) -> Optional[str]:
        with self.session_factory() as session:
            record = session.get(ApprovalCaseRecord, case_id)
            return record.payload if record is not None else None

    def _save_conflict(self, conflict_id: str, kind: str, severity: str, payload: str) -> None:
        with self.session_factory() as session:
            record = session.get(ConflictRecord, conflict_id)
            if record is None:
                record = ConflictRecord(id=conflict_id, kind=kind)
                session.add(record)
            record.severity = severity
            record.payload = payload
            session.commit()

    async def save_case(self, case: ApprovalCase) -> None:
        # Snapshot is taken before the hand-off to the worker thread
        await asyncio.to_thread(
            self._save_case,
            case.id,
            case.request.request_id,
            case.status.value,
            case.model_dump_json(),
        )

    async def get_case(self, case_id: str) -> Optional[ApprovalCase]:
        payload = await asyncio.to_thread(self._load_case, case_id)
        if payload is None:
            return None
        return ApprovalCase.model_validate_json(payload)

    async def save_conflict(self, conflict: Conflict) -> None:
        await asyncio.to_thread(
            self._save_conflict,
            conflict.id,
            conflict.kind.value,
            conflict.severity.value,
            conflict.model_dump_json(),
        )
