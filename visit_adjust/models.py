"""Database models for the schedule store and engine persistence."""

from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import DateTime
from sqlalchemy import Enum as SQLEnum
from sqlalchemy import Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utc_now() -> datetime:
    """Get current time in UTC."""
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class ScheduleStatus(str, Enum):
    """Status of a booked visit."""

    SCHEDULED = "SCHEDULED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class ScheduleEntry(Base):
    """A booked home visit."""

    __tablename__ = "schedules"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    patient_name: Mapped[str] = mapped_column(String(255), nullable=False)
    start_time: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    duration_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=60)
    service_type: Mapped[str] = mapped_column(
        String(64), nullable=False, default="routine"
    )
    priority: Mapped[str] = mapped_column(String(16), nullable=False, default="medium")
    resource_id: Mapped[str] = mapped_column(String(64), nullable=True)
    status: Mapped[ScheduleStatus] = mapped_column(
        SQLEnum(ScheduleStatus), nullable=False, default=ScheduleStatus.SCHEDULED
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utc_now,
        onupdate=utc_now,
    )

    def __repr__(self):
        return (
            f"ScheduleEntry(id={self.id}, patient_name={self.patient_name}, "
            f"start_time={self.start_time}, duration_minutes={self.duration_minutes}, "
            f"status={self.status})"
        )


class AdjustmentUsage(Base):
    """Number of adjustments a user made on a given local day."""

    __tablename__ = "adjustment_usage"
    __table_args__ = (UniqueConstraint("user_id", "day", name="uq_usage_user_day"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    # ISO date string; DATE columns do not survive PARSE_DECLTYPES on SQLite
    day: Mapped[str] = mapped_column(String(10), nullable=False)
    count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class ApprovalCaseRecord(Base):
    """Snapshot of an approval case, stored as JSON."""

    __tablename__ = "approval_cases"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    request_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    payload: Mapped[str] = mapped_column(Text, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utc_now,
        onupdate=utc_now,
    )


class ConflictRecord(Base):
    """Snapshot of a detected conflict, stored as JSON."""

    __tablename__ = "conflicts"

    id: Mapped[str] = mapped_column(String(128), primary_key=True)
    kind: Mapped[str] = mapped_column(String(16), nullable=False)
    severity: Mapped[str] = mapped_column(String(16), nullable=False)
    payload: Mapped[str] = mapped_column(Text, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utc_now,
        onupdate=utc_now,
    )
