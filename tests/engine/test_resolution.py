"""Tests for the conflict resolution strategies."""

from datetime import datetime, time

import pytest

from visit_adjust.conflict_classifier import ConflictClassifier
from visit_adjust.domain import (
    AdjustmentItem,
    ExistingSchedule,
    PriorityTier,
    ResolutionAction,
    Severity,
    SmartAction,
    TimeWindow,
)
from visit_adjust.overlap import windows_overlap
from visit_adjust.ports import InMemoryScheduleStore
from visit_adjust.resolution import CLEARED_RATIONALE, ResolutionStrategyEngine
from visit_adjust.strategy_models import (
    ManualAction,
    ResolutionConfig,
    ResolutionStrategy,
    SmartRule,
)


def window(hour: int, minute: int = 0, duration: int = 60, day: int = 12) -> TimeWindow:
    """Window in March 2025; the 12th is a Wednesday."""
    return TimeWindow(start=datetime(2025, 3, day, hour, minute), duration_minutes=duration)


def make_item(item_id: str, proposed: TimeWindow, **kwargs) -> AdjustmentItem:
    return AdjustmentItem(
        id=item_id,
        patient_name=f"Patient {item_id}",
        original_window=proposed,
        proposed_window=proposed,
        **kwargs,
    )


async def classify(settings, items, schedules=()):
    store = InMemoryScheduleStore(schedules) if schedules else None
    return await ConflictClassifier(settings).classify(items, store)


def engine(settings, **config) -> ResolutionStrategyEngine:
    return ResolutionStrategyEngine(settings, ResolutionConfig(**config))


def mixed_batch():
    return [
        make_item("a", window(9), priority=PriorityTier.URGENT, service_type="surgery"),
        make_item("b", window(9, 30)),
        make_item("c", window(9, 45), priority=PriorityTier.LOW),
        make_item("d", window(14), priority=PriorityTier.LOW),
    ]


@pytest.mark.asyncio
@pytest.mark.parametrize("strategy", list(ResolutionStrategy))
async def test_one_decision_per_conflict(settings, strategy):
    """Every strategy decides every conflict exactly once."""
    items = mixed_batch()
    schedules = [ExistingSchedule(id="x", window=window(14, 30))]
    report = await classify(settings, items, schedules)

    outcome = engine(settings).resolve(
        report.conflicts, items, strategy, existing_schedules=report.nearby_schedules
    )

    assert len(report.conflicts) == 4
    assert len(outcome.decisions) == len(report.conflicts)
    assert [d.conflict_id for d in outcome.decisions] == [c.id for c in report.conflicts]
    assert all(c.is_closed for c in report.conflicts)


@pytest.mark.asyncio
async def test_five_urgent_visits_spread_across_the_day(settings):
    """Five overlapping urgent 90 minute visits end up in separate slots inside 08:00-18:00."""
    items = [
        make_item(f"d{n}", window(9, 0, 90), priority=PriorityTier.URGENT) for n in range(1, 6)
    ]
    report = await classify(settings, items)

    outcome = engine(settings, max_attempts=20).resolve(report.conflicts, items, "auto")

    assert len(outcome.decisions) == 10
    assert all(d.succeeded for d in outcome.decisions)
    starts = sorted(i.proposed_window.start.time() for i in items)
    assert starts == [time(9, 0), time(10, 30), time(12, 0), time(13, 30), time(15, 0)]
    for i, a in enumerate(items):
        assert a.proposed_window.start.time() >= time(8, 0)
        assert a.proposed_window.end.time() <= time(18, 0)
        for b in items[i + 1 :]:
            assert not windows_overlap(a.proposed_window, b.proposed_window)
    cleared = [d for d in outcome.decisions if d.rationale == CLEARED_RATIONALE]
    assert len(cleared) == 6


@pytest.mark.asyncio
async def test_lower_priority_item_moves(settings):
    """For internal conflicts the lower priority party is moved."""
    items = [make_item("a", window(9), priority=PriorityTier.LOW), make_item("b", window(9), priority=PriorityTier.HIGH)]
    report = await classify(settings, items)

    outcome = engine(settings).resolve(report.conflicts, items, ResolutionStrategy.AUTO)

    decision = outcome.decisions[0]
    assert decision.item_id == "a"
    assert decision.action == ResolutionAction.RESCHEDULE
    assert decision.target_window == window(10)
    assert decision.attempts == 2
    assert decision.confidence == 95
    assert items[0].proposed_window == window(10)
    assert items[1].proposed_window == window(9)
    assert outcome.moved == {"a": window(10)}


@pytest.mark.asyncio
async def test_external_conflict_moves_batch_item(settings):
    """Existing bookings are never moved; the batch item is."""
    items = [make_item("a", window(9), priority=PriorityTier.LOW)]
    schedules = [ExistingSchedule(id="x", window=window(9), priority=PriorityTier.LOW)]
    report = await classify(settings, items, schedules)

    outcome = engine(settings).resolve(
        report.conflicts, items, "auto", existing_schedules=report.nearby_schedules
    )

    assert outcome.decisions[0].item_id == "a"
    assert items[0].proposed_window == window(10)


@pytest.mark.asyncio
async def test_buffer_is_kept_between_moved_visits(settings):
    """Candidates keep the configured buffer to other visits."""
    items = [make_item("a", window(9)), make_item("b", window(9))]
    report = await classify(settings, items)

    engine(settings, buffer_minutes=15).resolve(report.conflicts, items, "auto")

    assert items[1].proposed_window == window(10, 30)


@pytest.mark.asyncio
async def test_exhausted_search_is_escalated(settings):
    """When every candidate collides, the decision fails and is escalated."""
    items = [make_item("a", window(9))]
    schedules = [ExistingSchedule(id="busy", window=window(8, 0, 600))]
    report = await classify(settings, items, schedules)

    outcome = engine(settings, max_attempts=3, max_days_delay=0).resolve(
        report.conflicts, items, "auto", existing_schedules=report.nearby_schedules
    )

    decision = outcome.decisions[0]
    assert decision.action == ResolutionAction.RESCHEDULE
    assert not decision.succeeded
    assert decision.escalated
    assert decision.attempts == 3
    assert decision.target_window is None
    assert items[0].proposed_window == window(9)


@pytest.mark.asyncio
async def test_search_stays_inside_lookup_radius(settings):
    """Candidates reaching past the bookings looked up for the item are never tried."""
    narrow = settings.model_copy(update={"check_radius_days": 0})
    items = [make_item("a", window(9)), make_item("b", window(9))]
    report = await classify(narrow, items)

    outcome = engine(narrow).resolve(report.conflicts, items, "auto")

    decision = outcome.decisions[0]
    assert not decision.succeeded
    assert decision.escalated
    assert decision.attempts == 0
    assert items[1].proposed_window == window(9)


@pytest.mark.asyncio
async def test_search_radius_turns_back_before_unknown_days(settings):
    """With a one day radius the search turns back instead of landing two days out."""
    near = settings.model_copy(update={"check_radius_days": 1})
    items = [make_item("a", window(8, 0, 600)), make_item("b", window(8, 0, 600))]
    schedules = [ExistingSchedule(id="thursday", window=window(8, 0, 600, day=13))]
    report = await classify(near, items, schedules)

    engine(near).resolve(
        report.conflicts, items, "auto", existing_schedules=report.nearby_schedules
    )

    # Thursday is booked and Friday lies outside the lookup, so Tuesday it is
    assert items[1].proposed_window == window(8, 0, 600, day=11)


@pytest.mark.asyncio
async def test_falls_back_to_opposite_direction(settings):
    """When later slots run out of working hours, earlier slots are tried."""
    items = [make_item("a", window(16, 30)), make_item("b", window(16, 30))]
    report = await classify(settings, items)

    outcome = engine(settings, max_days_delay=0).resolve(report.conflicts, items, "auto")

    assert items[1].proposed_window == window(15, 30)
    assert outcome.decisions[0].attempts == 3


@pytest.mark.asyncio
async def test_lunch_hour_avoided(settings):
    """With avoid_lunch_hour, candidates touching 12:00-13:00 are skipped."""
    items = [make_item("a", window(11)), make_item("b", window(11))]
    report = await classify(settings, items)

    engine(settings, avoid_lunch_hour=True).resolve(report.conflicts, items, "auto")

    assert items[1].proposed_window == window(13)


@pytest.mark.asyncio
async def test_weekend_skipped(settings):
    """Candidates on a weekend are skipped unless allowed."""
    items = [make_item("a", window(8, 0, 600, day=14)), make_item("b", window(8, 0, 600, day=14))]
    report = await classify(settings, items)

    engine(settings, max_attempts=20).resolve(report.conflicts, items, "auto")

    # Friday is full, so the search lands on Monday the 17th
    assert items[1].proposed_window == window(8, 0, 600, day=17)


@pytest.mark.asyncio
async def test_skip_strategy_leaves_windows(settings):
    """The skip strategy decides every conflict without moving anything."""
    items = mixed_batch()
    report = await classify(settings, items)

    outcome = engine(settings).resolve(report.conflicts, items, "skip")

    assert {d.action for d in outcome.decisions} == {ResolutionAction.SKIP}
    assert all(d.confidence == 100 for d in outcome.decisions)
    assert outcome.moved == {}
    assert [i.proposed_window for i in items] == [i.proposed_window for i in mixed_batch()]


async def manual_pair(settings):
    """Two batch items booked at the same time."""
    items = [make_item("a", window(9)), make_item("b", window(9))]
    report = await classify(settings, items)
    return items, report.conflicts


class TestManual:
    @pytest.mark.asyncio
    async def test_reschedule_to_free_target(self, settings):
        """A free target window is applied to the subject."""
        items, conflicts = await manual_pair(settings)
        actions = {"internal:a:b": ManualAction(action="reschedule_manual", target_window=window(11))}

        outcome = engine(settings).resolve(conflicts, items, "manual", manual_actions=actions)

        assert outcome.decisions[0].succeeded
        assert items[0].proposed_window == window(11)

    @pytest.mark.asyncio
    async def test_reschedule_to_busy_target_fails(self, settings):
        """A target overlapping another visit is refused."""
        items, conflicts = await manual_pair(settings)
        actions = {"internal:a:b": ManualAction(action="reschedule_manual", target_window=window(9, 30))}

        outcome = engine(settings).resolve(conflicts, items, "manual", manual_actions=actions)

        decision = outcome.decisions[0]
        assert not decision.succeeded
        assert decision.escalated
        assert items[0].proposed_window == window(9)

    @pytest.mark.asyncio
    async def test_reschedule_without_target_fails(self, settings):
        """reschedule_manual needs a target window."""
        items, conflicts = await manual_pair(settings)
        actions = {"internal:a:b": ManualAction(action="reschedule_manual")}

        outcome = engine(settings).resolve(conflicts, items, "manual", manual_actions=actions)

        assert not outcome.decisions[0].succeeded

    @pytest.mark.asyncio
    async def test_force_is_flagged(self, settings):
        """Forcing keeps the overlap and flags the risk."""
        items, conflicts = await manual_pair(settings)
        actions = {"internal:a:b": ManualAction(action="force")}

        outcome = engine(settings).resolve(conflicts, items, "manual", manual_actions=actions)

        decision = outcome.decisions[0]
        assert decision.action == ResolutionAction.FORCE
        assert decision.risk_flagged
        assert decision.confidence == 50
        assert decision.succeeded

    @pytest.mark.asyncio
    @pytest.mark.parametrize("action", ["skip", "cancel", "negotiate"])
    async def test_actions_without_target(self, settings, action):
        """skip, cancel and negotiate need no target."""
        items, conflicts = await manual_pair(settings)
        actions = {"internal:a:b": ManualAction(action=action)}

        outcome = engine(settings).resolve(conflicts, items, "manual", manual_actions=actions)

        assert outcome.decisions[0].action == ResolutionAction(action)
        assert outcome.decisions[0].succeeded

    @pytest.mark.asyncio
    async def test_missing_instruction_is_escalated(self, settings):
        """A conflict without an instruction still gets a decision, marked failed."""
        items, conflicts = await manual_pair(settings)

        outcome = engine(settings).resolve(conflicts, items, "manual")

        decision = outcome.decisions[0]
        assert not decision.succeeded
        assert decision.escalated
        assert decision.rationale == "no manual instruction supplied"


class TestSmart:
    @pytest.mark.asyncio
    async def test_low_severity_low_priority_is_skipped(self, settings):
        """Small overlaps between low priority visits are kept."""
        items = [
            make_item("a", window(9), priority=PriorityTier.LOW, resource_id="n1"),
            make_item("b", window(9, 50), priority=PriorityTier.LOW, resource_id="n2"),
        ]
        report = await classify(settings, items)

        outcome = engine(settings).resolve(report.conflicts, items, "smart")

        decision = outcome.decisions[0]
        assert decision.smart_action == SmartAction.SKIP
        assert decision.action == ResolutionAction.SKIP
        assert decision.confidence == 90

    @pytest.mark.asyncio
    async def test_medium_severity_is_rescheduled(self, settings):
        """Medium conflicts are moved automatically with a combined confidence."""
        items = [make_item("a", window(9)), make_item("b", window(9, 30))]
        report = await classify(settings, items)

        outcome = engine(settings).resolve(report.conflicts, items, "smart")

        decision = outcome.decisions[0]
        assert decision.smart_action == SmartAction.AUTO_RESCHEDULE
        assert decision.action == ResolutionAction.RESCHEDULE
        assert decision.confidence == 85
        assert items[1].proposed_window == window(10)

    @pytest.mark.asyncio
    async def test_critical_urgent_goes_to_manual_review(self, settings):
        """Critical conflicts on urgent visits are escalated for review."""
        items = [
            make_item("a", window(9), priority=PriorityTier.URGENT, service_type="surgery"),
            make_item("b", window(9), priority=PriorityTier.URGENT, service_type="surgery"),
        ]
        report = await classify(settings, items)

        outcome = engine(settings).resolve(report.conflicts, items, "smart")

        decision = outcome.decisions[0]
        assert decision.smart_action == SmartAction.MANUAL_REVIEW
        assert decision.action == ResolutionAction.RESCHEDULE_MANUAL
        assert decision.escalated
        assert decision.target_window is None
        assert items[1].proposed_window == window(9)

    @pytest.mark.asyncio
    async def test_low_confidence_falls_back_to_manual_review(self, settings):
        """A combined confidence under the threshold is not applied."""
        items = [make_item("a", window(9)), make_item("b", window(9, 30))]
        report = await classify(settings, items)

        outcome = engine(settings, smart_min_confidence=90).resolve(report.conflicts, items, "smart")

        decision = outcome.decisions[0]
        assert decision.smart_action == SmartAction.MANUAL_REVIEW
        assert not decision.succeeded
        assert items[1].proposed_window == window(9, 30)

    @pytest.mark.asyncio
    async def test_injected_table(self, settings):
        """The decision table can be replaced."""
        def always_negotiate(severity, kind, priority):
            return SmartRule(action=SmartAction.NEGOTIATE, confidence=70, rationale="call the family")

        items = [make_item("a", window(9)), make_item("b", window(9, 30))]
        report = await classify(settings, items)

        outcome = ResolutionStrategyEngine(settings, smart_table=always_negotiate).resolve(
            report.conflicts, items, "smart"
        )

        assert outcome.decisions[0].action == ResolutionAction.NEGOTIATE
        assert outcome.decisions[0].rationale == "call the family"

    @pytest.mark.asyncio
    async def test_rule_follows_the_visit_being_moved(self, settings):
        """An urgent visit clashing with a low priority one moves the low priority visit automatically."""
        items = [
            make_item("a", window(9), priority=PriorityTier.URGENT, service_type="surgery"),
            make_item("b", window(9), priority=PriorityTier.LOW),
        ]
        report = await classify(settings, items)
        assert report.conflicts[0].severity == Severity.CRITICAL

        outcome = engine(settings).resolve(report.conflicts, items, "smart")

        decision = outcome.decisions[0]
        assert decision.item_id == "b"
        assert decision.smart_action == SmartAction.AUTO_RESCHEDULE
        assert decision.succeeded
        assert items[0].proposed_window == window(9)
        assert items[1].proposed_window == window(10)
