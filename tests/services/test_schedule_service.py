"""Tests for the SQL-backed schedule store, usage counter and persistence."""

import asyncio
import time
from datetime import datetime, timedelta, timezone

import pytest

from visit_adjust.approval_workflow import ApprovalWorkflowEngine, build_template
from visit_adjust.config import DatabaseConfig
from visit_adjust.domain import (
    AdjustmentItem,
    Conflict,
    ConflictKind,
    ExistingSchedule,
    PriorityTier,
    Severity,
    TimeWindow,
)
from visit_adjust.models import (
    AdjustmentUsage,
    ApprovalCaseRecord,
    ConflictRecord,
    ScheduleEntry,
    ScheduleStatus,
)
from visit_adjust.orchestrator import BatchOrchestrator
from visit_adjust.permission_models import AdjustmentRequest, PermissionTier
from visit_adjust.response import ItemDisposition
from visit_adjust.schedule_service import (
    SqlPersistenceStore,
    SqlScheduleStore,
    SqlUsageCounter,
    align_tz,
    ensure_utc,
    to_db_value,
)


@pytest.fixture(scope="function")
def db_config():
    """Create a new database config for each test."""
    return DatabaseConfig("sqlite:///:memory:")


@pytest.fixture(scope="function")
def session_factory(db_config):
    """Create a new session factory for each test."""
    return db_config.session_factory


@pytest.fixture(scope="function")
def store(session_factory):
    """Schedule store with three bookings on Wednesday 2025-03-12."""
    store = SqlScheduleStore(session_factory)
    day = datetime(2025, 3, 12)
    store.add_schedule("s-1", "Alice Wong", day.replace(hour=9), 60, "nursing", PriorityTier.HIGH, "nurse-1")
    store.add_schedule("s-2", "Bob Lee", day.replace(hour=14), 90)
    store.add_schedule("s-3", "Carol Chen", day + timedelta(days=10, hours=9))
    return store


def window(hour: int, minute: int = 0, duration: int = 60, day: int = 12) -> TimeWindow:
    return TimeWindow(start=datetime(2025, 3, day, hour, minute), duration_minutes=duration)


def test_add_schedule(store, session_factory):
    """Bookings are stored with their attributes."""
    with session_factory() as session:
        entry = session.get(ScheduleEntry, "s-1")
        assert entry.patient_name == "Alice Wong"
        assert entry.duration_minutes == 60
        assert entry.priority == "high"
        assert entry.resource_id == "nurse-1"
        assert entry.status == ScheduleStatus.SCHEDULED
        assert entry.start_time.hour == 9


@pytest.mark.asyncio
async def test_find_schedules_near(store):
    """Only bookings within the radius are returned, in start order."""
    schedules = await store.find_schedules_near(window(10), radius_days=1)

    assert [s.id for s in schedules] == ["s-1", "s-2"]
    first = schedules[0]
    assert isinstance(first, ExistingSchedule)
    assert first.window == window(9)
    assert first.priority == PriorityTier.HIGH
    assert first.service_type == "nursing"

    wide = await store.find_schedules_near(window(10), radius_days=14)
    assert [s.id for s in wide] == ["s-1", "s-2", "s-3"]


@pytest.mark.asyncio
async def test_find_schedules_near_includes_visits_spanning_the_lower_bound(store):
    """A visit that starts before the searched range but runs into it is found."""
    schedules = await store.find_schedules_near(window(15, 0, 30), radius_days=0)

    assert [s.id for s in schedules] == ["s-2"]


@pytest.mark.asyncio
async def test_cancelled_schedules_are_ignored(store):
    """Cancelled visits no longer take part in conflict checks."""
    assert store.cancel_schedule("s-1")
    assert not store.cancel_schedule("missing")

    schedules = await store.find_schedules_near(window(10), radius_days=1)
    assert [s.id for s in schedules] == ["s-2"]


@pytest.mark.asyncio
async def test_find_schedules_near_with_aware_window(store):
    """Aware windows get aware schedules back in the same timezone."""
    aware = TimeWindow(start=datetime(2025, 3, 12, 10, tzinfo=timezone.utc), duration_minutes=60)

    schedules = await store.find_schedules_near(aware, radius_days=1)

    assert schedules[0].window.start == datetime(2025, 3, 12, 9, tzinfo=timezone.utc)


@pytest.mark.asyncio
async def test_apply_adjustment(store):
    """Adjustments move the booking; unknown ids raise KeyError."""
    await store.apply_adjustment("s-1", window(16, 0, 45))

    schedules = await store.find_schedules_near(window(16), radius_days=0)
    moved = [s for s in schedules if s.id == "s-1"][0]
    assert moved.window == window(16, 0, 45)

    with pytest.raises(KeyError):
        await store.apply_adjustment("missing", window(16))


def test_datetime_helpers():
    """Timezone helpers convert to and from the naive UTC storage form."""
    naive = datetime(2025, 3, 12, 9)
    plus_eight = timezone(timedelta(hours=8))
    aware = datetime(2025, 3, 12, 17, tzinfo=plus_eight)

    assert ensure_utc(naive) == datetime(2025, 3, 12, 9, tzinfo=timezone.utc)
    assert ensure_utc(aware) == datetime(2025, 3, 12, 9, tzinfo=timezone.utc)
    assert to_db_value(naive) == naive
    assert to_db_value(aware) == naive
    assert align_tz(naive, aware) == aware
    assert align_tz(naive, naive) == naive


@pytest.mark.asyncio
async def test_usage_counter(session_factory):
    """Counts are kept per user and per day."""
    counter = SqlUsageCounter(session_factory)
    monday = datetime(2025, 3, 10, 9)

    assert await counter.get_daily_count("rec-1", monday) == 0
    assert await counter.increment("rec-1", monday) == 1
    assert await counter.increment("rec-1", monday + timedelta(hours=3)) == 2
    assert await counter.increment("rec-2", monday) == 1

    assert await counter.get_daily_count("rec-1", monday) == 2
    assert await counter.get_daily_count("rec-1", monday + timedelta(days=1)) == 0


@pytest.mark.asyncio
async def test_usage_counter_release(session_factory):
    """Released units come off the day they were taken on and never go below zero."""
    counter = SqlUsageCounter(session_factory)
    monday = datetime(2025, 3, 10, 9)

    await counter.increment("rec-1", monday)
    await counter.increment("rec-1", monday)
    assert await counter.release("rec-1", monday) == 1
    assert await counter.release("rec-1", monday) == 0
    assert await counter.release("rec-1", monday) == 0
    assert await counter.release("rec-2", monday) == 0

    with session_factory() as session:
        rows = session.query(AdjustmentUsage).order_by(AdjustmentUsage.user_id).all()
        assert [(r.user_id, r.day, r.count) for r in rows] == [
            ("rec-1", "2025-03-10", 0),
            ("rec-2", "2025-03-10", 0),
        ]


@pytest.mark.asyncio
async def test_persistence_round_trip(session_factory, now):
    """Cases are saved as snapshots and can be decided after a reload."""
    persistence = SqlPersistenceStore(session_factory)
    workflow = ApprovalWorkflowEngine(persistence=persistence)
    request = AdjustmentRequest(
        request_id="visit-1",
        original_window=window(9),
        proposed_window=window(19),
        requester="recorder-1",
    )

    case = await workflow.create_case(request, build_template(PermissionTier.ADVANCED, 65), now)
    loaded = await persistence.get_case(case.id)

    assert loaded.id == case.id
    assert loaded.request == request
    assert len(loaded.steps) == 2
    assert await persistence.get_case("missing") is None

    reloaded_engine = ApprovalWorkflowEngine(persistence=persistence)
    updated = await reloaded_engine.submit_decision(
        case.id, "senior_recorder", "approve", now + timedelta(hours=1)
    )
    assert updated.current_step_index == 1

    with session_factory() as session:
        record = session.get(ApprovalCaseRecord, case.id)
        assert record.request_id == "visit-1"
        assert record.status == "in_progress"


@pytest.mark.asyncio
async def test_save_conflict(session_factory):
    """Conflicts are stored with their kind and latest severity."""
    persistence = SqlPersistenceStore(session_factory)
    subject = AdjustmentItem(
        id="visit-1", patient_name="Alice", original_window=window(8), proposed_window=window(9)
    )
    conflict = Conflict(
        id="external:visit-1:s-1",
        kind=ConflictKind.EXTERNAL,
        subject=subject,
        counterpart=ExistingSchedule(id="s-1", window=window(9, 30)),
        overlap_minutes=30,
        severity=Severity.MEDIUM,
        severity_score=45,
    )

    await persistence.save_conflict(conflict)
    conflict.severity = Severity.HIGH
    await persistence.save_conflict(conflict)

    with session_factory() as session:
        records = session.query(ConflictRecord).all()
        assert len(records) == 1
        assert records[0].kind == "external"
        assert records[0].severity == "high"


@pytest.mark.asyncio
async def test_lookups_run_off_the_event_loop(store, monkeypatch):
    """A slow query leaves the event loop free, so callers can time it out."""

    def slow_find(window, radius_days):
        time.sleep(0.5)
        return []

    monkeypatch.setattr(store, "_find_near", slow_find)

    with pytest.raises(asyncio.TimeoutError):
        await asyncio.wait_for(store.find_schedules_near(window(10), radius_days=1), timeout=0.05)


@pytest.mark.asyncio
async def test_batch_through_sql_adapters(store, session_factory, now):
    """A batch commits through the SQL store and counts usage once per write."""
    counter = SqlUsageCounter(session_factory)
    orchestrator = BatchOrchestrator(
        store,
        usage_counter=counter,
        persistence=SqlPersistenceStore(session_factory),
        holidays=[],
    )
    items = [
        AdjustmentItem(
            id="s-2",
            patient_name="Bob Lee",
            original_window=window(14, 0, 90),
            proposed_window=window(16, 0, 90),
        ),
        AdjustmentItem(
            id="unknown",
            patient_name="Nobody",
            original_window=window(10),
            proposed_window=window(11),
        ),
    ]

    report = await orchestrator.run_batch(items, "auto", "recorder-1", now)

    assert report.outcome("s-2").disposition == ItemDisposition.COMMITTED
    failed = report.outcome("unknown")
    assert failed.disposition == ItemDisposition.FAILED
    assert failed.errors[0].startswith("commit failed")
    assert await counter.get_daily_count("recorder-1", now) == 1

    with session_factory() as session:
        assert session.get(ScheduleEntry, "s-2").start_time == datetime(2025, 3, 12, 16)
