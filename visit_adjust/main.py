import asyncio
from datetime import datetime, timedelta

from loguru import logger

from .approval_models import ApprovalDecision
from .config import config
from .domain import AdjustmentItem, PriorityTier, TimeWindow
from .models import ScheduleEntry
from .orchestrator import BatchOrchestrator
from .ports import LoggingNotificationGateway
from .schedule_service import SqlPersistenceStore, SqlScheduleStore, SqlUsageCounter
from .strategy_models import ResolutionStrategy


def next_weekday(dt: datetime) -> datetime:
    """Roll forward to Monday if ``dt`` falls on a weekend."""
    while dt.weekday() >= 5:
        dt += timedelta(days=1)
    return dt


def setup_test_data(store: SqlScheduleStore, day: datetime):
    """Book the visits the demo batch will be adjusted against"""
    bookings = [
        # Visits the batch is about to move
        ("visit-101", "Alice Wong", day.replace(hour=9), 60, "nursing", PriorityTier.MEDIUM, "nurse-1"),
        ("visit-102", "Bob Lee", day.replace(hour=10), 60, "routine", PriorityTier.LOW, "nurse-1"),
        ("visit-103", "Carol Chen", day.replace(hour=14), 90, "medication", PriorityTier.HIGH, "nurse-2"),
        # Visits that stay where they are
        ("visit-201", "Dan Park", day.replace(hour=11), 60, "rehabilitation", PriorityTier.MEDIUM, "nurse-1"),
        ("visit-202", "Eve Liu", day.replace(hour=15, minute=30), 60, "checkup", PriorityTier.LOW, "nurse-2"),
    ]
    with store.session_factory() as session:
        existing = {row.id for row in session.query(ScheduleEntry.id).all()}

    for schedule_id, patient, start, duration, service, priority, resource in bookings:
        if schedule_id in existing:
            continue
        store.add_schedule(schedule_id, patient, start, duration, service, priority, resource)
    return bookings


def build_batch(day: datetime):
    """Proposed reschedules, deliberately colliding with each other and with bookings"""

    def window(hour: int, minute: int = 0, duration: int = 60) -> TimeWindow:
        return TimeWindow(start=day.replace(hour=hour, minute=minute), duration_minutes=duration)

    return [
        AdjustmentItem(
            id="visit-101",
            patient_name="Alice Wong",
            original_window=window(9),
            proposed_window=window(10, 30),
            service_type="nursing",
            resource_id="nurse-1",
        ),
        AdjustmentItem(
            id="visit-102",
            patient_name="Bob Lee",
            original_window=window(10),
            proposed_window=window(11),
            priority=PriorityTier.LOW,
            resource_id="nurse-1",
        ),
        AdjustmentItem(
            id="visit-103",
            patient_name="Carol Chen",
            original_window=window(14, 0, 90),
            proposed_window=window(15, 0, 90),
            priority=PriorityTier.HIGH,
            service_type="medication",
            resource_id="nurse-2",
        ),
    ]


async def main():
    db = config.db
    store = SqlScheduleStore(db.session_factory)
    notifications = LoggingNotificationGateway()

    day = next_weekday(
        (datetime.now() + timedelta(days=1)).replace(hour=0, minute=0, second=0, microsecond=0)
    )
    bookings = setup_test_data(store, day)

    print("\n===== BOOKINGS =====")
    for schedule_id, patient, start, duration, service, priority, resource in bookings:
        print(
            f"{schedule_id}: {patient} {start.strftime('%Y-%m-%d %H:%M')} ({duration} min, "
            f"{service}, {priority.value}, {resource})"
        )

    orchestrator = BatchOrchestrator(
        store,
        usage_counter=SqlUsageCounter(db.session_factory),
        notifications=notifications,
        persistence=SqlPersistenceStore(db.session_factory),
        settings=config.settings,
        holidays=config.holidays,
    )

    now = datetime.now()
    report = await orchestrator.run_batch(
        build_batch(day),
        ResolutionStrategy.AUTO,
        requester="recorder-7",
        now=now,
        progress_callback=lambda p: logger.debug(f"{p.phase}: {p.percentage}%"),
    )

    print("\n===== CONFLICTS =====")
    for conflict in report.conflicts:
        print(
            f"{conflict.id}: {conflict.overlap_minutes:g} min overlap, "
            f"{conflict.severity.value} ({conflict.severity_score:g})"
        )
        if conflict.resolution:
            print(f"  -> {conflict.resolution.action.value}: {conflict.resolution.rationale}")

    print("\n===== ITEMS =====")
    for outcome in report.items:
        line = f"{outcome.item_id}: {outcome.disposition.value}"
        if outcome.final_window:
            line += f" at {outcome.final_window}"
        if outcome.case_id:
            line += f" (approval case {outcome.case_id})"
        print(line)
        for error in outcome.errors:
            print(f"  ! {error}")

    # Walk any open approval cases through their steps
    for outcome in report.items:
        if not outcome.case_id:
            continue
        case = await orchestrator.workflow.get_case(outcome.case_id)
        while not case.status.is_terminal:
            step = case.current_step
            logger.info(f"Approving step {step.index} of {case.id} as {step.role.value}")
            case = await orchestrator.workflow.submit_decision(
                case.id, step.role, ApprovalDecision.APPROVE, now, comments="demo approval"
            )
        print(f"Approval case {case.id}: {case.status.value}")

    print(f"\nCommitted: {sorted(orchestrator.committed)}")
    for failure in report.lookup_failures:
        print(f"Lookup failure for {failure.item_id}: {failure.error}")


if __name__ == "__main__":
    asyncio.run(main())
