"""
Resolution strategies for detected conflicts.

Every strategy yields exactly one ``ResolutionDecision`` per input conflict
and attaches it to the conflict. Only the automatic search (``auto`` and the
auto branch of ``smart``) and the manual ``reschedule_manual``/``force``
actions move an item, and they do so by replacing its ``proposed_window``.
"""

from datetime import datetime, timedelta
from typing import Dict, Iterable, Iterator, List, Mapping, Optional, Sequence

from loguru import logger
from pydantic import BaseModel, Field

from .config import EngineSettings
from .conflict_classifier import sort_conflicts
from .domain import (
    AdjustmentItem,
    Conflict,
    ConflictKind,
    ExistingSchedule,
    PriorityTier,
    ResolutionAction,
    ResolutionDecision,
    SmartAction,
    TimeWindow,
)
from .errors import ResolutionExhausted
from .overlap import windows_overlap
from .strategy_models import (
    ManualAction,
    ResolutionConfig,
    ResolutionStrategy,
    SmartTable,
    default_smart_table,
)

PRIORITY_RANK: Dict[PriorityTier, int] = {
    PriorityTier.LOW: 0,
    PriorityTier.MEDIUM: 1,
    PriorityTier.HIGH: 2,
    PriorityTier.URGENT: 3,
}

CLEARED_RATIONALE = "no overlap remains after earlier reschedules"


class ResolutionOutcome(BaseModel):
    """Decisions for a batch, in conflict order."""

    strategy: ResolutionStrategy
    decisions: List[ResolutionDecision] = Field(default_factory=list)
    moved: Dict[str, TimeWindow] = Field(default_factory=dict)


class _Candidate(BaseModel):
    window: TimeWindow
    attempts: int
    confidence: float


class ResolutionStrategyEngine:
    """Produces one decision per conflict using the chosen strategy."""

    def __init__(
        self,
        settings: Optional[EngineSettings] = None,
        config: Optional[ResolutionConfig] = None,
        smart_table: SmartTable = default_smart_table,
    ):
        self.settings = settings or EngineSettings()
        self.config = config or ResolutionConfig()
        self.smart_table = smart_table
        # Window each item was looked up with; bookings are only known around it
        self._lookup_windows: Dict[str, TimeWindow] = {}

    @property
    def buffer_minutes(self) -> int:
        if self.config.buffer_minutes is not None:
            return self.config.buffer_minutes
        return self.settings.buffer_minutes

    # Working set

    def _mover(self, conflict: Conflict, items: Mapping[str, AdjustmentItem]) -> AdjustmentItem:
        """The item whose window gets moved for a conflict."""
        subject = items[conflict.subject.id]
        if conflict.kind == ConflictKind.EXTERNAL:
            return subject
        counterpart = items[conflict.counterpart.id]
        if PRIORITY_RANK[subject.priority] < PRIORITY_RANK[counterpart.priority]:
            return subject
        return counterpart

    def _still_overlaps(
        self, conflict: Conflict, items: Mapping[str, AdjustmentItem]
    ) -> bool:
        subject_window = items[conflict.subject.id].proposed_window
        if conflict.kind == ConflictKind.INTERNAL:
            other_window = items[conflict.counterpart.id].proposed_window
        else:
            other_window = conflict.counterpart.window
        return windows_overlap(subject_window, other_window, self.buffer_minutes)

    def _collides(
        self,
        window: TimeWindow,
        mover_id: str,
        items: Mapping[str, AdjustmentItem],
        schedules: Sequence[ExistingSchedule],
    ) -> bool:
        for item_id, item in items.items():
            if item_id != mover_id and windows_overlap(
                window, item.proposed_window, self.buffer_minutes
            ):
                return True
        for schedule in schedules:
            if schedule.id not in items and windows_overlap(
                window, schedule.window, self.buffer_minutes
            ):
                return True
        return False

    # Candidate search

    def _within_rules(self, window: TimeWindow) -> bool:
        """Working hours, weekend and lunch constraints for a candidate."""
        config = self.config
        start, end = window.start, window.end
        if end.date() != start.date():
            return False
        if start.time() < config.work_start or end.time() > config.work_end:
            return False
        if not config.allow_weekend and start.weekday() >= 5:
            return False
        if config.avoid_lunch_hour:
            lunch_start = datetime.combine(start.date(), config.lunch_start, tzinfo=start.tzinfo)
            lunch_end = datetime.combine(start.date(), config.lunch_end, tzinfo=start.tzinfo)
            if start < lunch_end and end > lunch_start:
                return False
        return True

    def _candidates(self, item: AdjustmentItem) -> Iterator[TimeWindow]:
        """Yield candidate windows, preferred direction first.

        Each direction stops once it moves more than ``max_days_delay``
        calendar days away from the original date. Candidates breaking the
        working rules, or reaching past the bookings looked up for the item,
        are dropped without being yielded.
        """
        config = self.config
        lookup = self._lookup_windows.get(item.id)
        radius = timedelta(days=self.settings.check_radius_days)
        buffer = timedelta(minutes=self.buffer_minutes)
        horizon = config.max_days_delay
        origin = item.original_window.start.date()
        current = item.proposed_window
        directions = (1, -1) if config.prefer == "later" else (-1, 1)

        for sign in directions:
            k = 1
            while True:
                candidate = current.shifted(sign * k * config.step_minutes)
                offset = (candidate.start.date() - origin).days
                if sign > 0 and offset > horizon:
                    break
                if sign < 0 and offset < -horizon:
                    break
                k += 1
                if abs(offset) > horizon or not self._within_rules(candidate):
                    continue
                if lookup is not None and (
                    candidate.start - buffer < lookup.start - radius
                    or candidate.end + buffer > lookup.end + radius
                ):
                    continue
                yield candidate

    def find_slot(
        self,
        item: AdjustmentItem,
        items: Mapping[str, AdjustmentItem],
        schedules: Sequence[ExistingSchedule],
    ) -> _Candidate:
        """Search for a conflict-free window without moving anything.

        Raises:
            ResolutionExhausted: if ``max_attempts`` candidates all collide
        """
        max_attempts = self.config.max_attempts
        attempts = 0
        for candidate in self._candidates(item):
            attempts += 1
            if not self._collides(candidate, item.id, items, schedules):
                confidence = max(0.0, 100 - (attempts - 1) * (100 / max_attempts))
                return _Candidate(window=candidate, attempts=attempts, confidence=round(confidence, 2))
            if attempts >= max_attempts:
                break
        raise ResolutionExhausted(item.id, attempts)

    # Strategies

    def _auto(
        self,
        conflict: Conflict,
        items: Dict[str, AdjustmentItem],
        schedules: Sequence[ExistingSchedule],
        outcome: ResolutionOutcome,
        strategy: str = "auto",
    ) -> ResolutionDecision:
        mover = self._mover(conflict, items)
        if not self._still_overlaps(conflict, items):
            return ResolutionDecision(
                conflict_id=conflict.id,
                item_id=mover.id,
                action=ResolutionAction.RESCHEDULE,
                target_window=mover.proposed_window,
                confidence=100,
                rationale=CLEARED_RATIONALE,
                strategy=strategy,
            )

        try:
            found = self.find_slot(mover, items, schedules)
        except ResolutionExhausted as e:
            logger.warning(str(e))
            return ResolutionDecision(
                conflict_id=conflict.id,
                item_id=mover.id,
                action=ResolutionAction.RESCHEDULE,
                confidence=0,
                rationale=str(e),
                strategy=strategy,
                succeeded=False,
                escalated=True,
                attempts=e.attempts,
            )

        self._move(mover.id, found.window, items, outcome)
        return ResolutionDecision(
            conflict_id=conflict.id,
            item_id=mover.id,
            action=ResolutionAction.RESCHEDULE,
            target_window=found.window,
            confidence=found.confidence,
            rationale=f"moved to {found.window} after {found.attempts} attempts",
            strategy=strategy,
            attempts=found.attempts,
        )

    def _manual(
        self,
        conflict: Conflict,
        instruction: Optional[ManualAction],
        items: Dict[str, AdjustmentItem],
        schedules: Sequence[ExistingSchedule],
        outcome: ResolutionOutcome,
    ) -> ResolutionDecision:
        subject_id = conflict.subject.id
        if instruction is None:
            return ResolutionDecision(
                conflict_id=conflict.id,
                item_id=subject_id,
                action=ResolutionAction.SKIP,
                confidence=0,
                rationale="no manual instruction supplied",
                strategy="manual",
                succeeded=False,
                escalated=True,
            )

        action = instruction.action
        if action == ResolutionAction.RESCHEDULE:
            return self._auto(conflict, items, schedules, outcome, strategy="manual")

        if action == ResolutionAction.RESCHEDULE_MANUAL:
            target = instruction.target_window
            if target is None:
                reason = "reschedule_manual requires a target window"
            elif self._collides(target, subject_id, items, schedules):
                reason = f"target {target} overlaps another visit"
            else:
                self._move(subject_id, target, items, outcome)
                return ResolutionDecision(
                    conflict_id=conflict.id,
                    item_id=subject_id,
                    action=action,
                    target_window=target,
                    confidence=100,
                    rationale=instruction.note or f"moved to {target} by hand",
                    strategy="manual",
                )
            return ResolutionDecision(
                conflict_id=conflict.id,
                item_id=subject_id,
                action=action,
                target_window=target,
                confidence=0,
                rationale=reason,
                strategy="manual",
                succeeded=False,
                escalated=True,
            )

        if action == ResolutionAction.FORCE:
            if instruction.target_window is not None:
                self._move(subject_id, instruction.target_window, items, outcome)
            return ResolutionDecision(
                conflict_id=conflict.id,
                item_id=subject_id,
                action=action,
                target_window=items[subject_id].proposed_window,
                confidence=50,
                rationale=instruction.note or "forced despite overlap",
                strategy="manual",
                risk_flagged=True,
            )

        return ResolutionDecision(
            conflict_id=conflict.id,
            item_id=subject_id,
            action=action,
            confidence=100,
            rationale=instruction.note or f"{action.value} requested",
            strategy="manual",
        )

    def _smart(
        self,
        conflict: Conflict,
        items: Dict[str, AdjustmentItem],
        schedules: Sequence[ExistingSchedule],
        outcome: ResolutionOutcome,
    ) -> ResolutionDecision:
        mover = self._mover(conflict, items)
        rule = self.smart_table(conflict.severity, conflict.kind, mover.priority)

        def manual_review(confidence: float, rationale: str, attempts: int = 0) -> ResolutionDecision:
            return ResolutionDecision(
                conflict_id=conflict.id,
                item_id=mover.id,
                action=ResolutionAction.RESCHEDULE_MANUAL,
                confidence=confidence,
                rationale=rationale,
                strategy="smart",
                succeeded=False,
                escalated=True,
                attempts=attempts,
                smart_action=SmartAction.MANUAL_REVIEW,
            )

        if rule.action == SmartAction.SKIP:
            return ResolutionDecision(
                conflict_id=conflict.id,
                item_id=conflict.subject.id,
                action=ResolutionAction.SKIP,
                confidence=rule.confidence,
                rationale=rule.rationale,
                strategy="smart",
                smart_action=rule.action,
            )
        if rule.action == SmartAction.NEGOTIATE:
            return ResolutionDecision(
                conflict_id=conflict.id,
                item_id=conflict.subject.id,
                action=ResolutionAction.NEGOTIATE,
                confidence=rule.confidence,
                rationale=rule.rationale,
                strategy="smart",
                smart_action=rule.action,
            )
        if rule.action == SmartAction.MANUAL_REVIEW:
            return manual_review(rule.confidence, rule.rationale)

        if not self._still_overlaps(conflict, items):
            return ResolutionDecision(
                conflict_id=conflict.id,
                item_id=mover.id,
                action=ResolutionAction.RESCHEDULE,
                target_window=mover.proposed_window,
                confidence=rule.confidence,
                rationale=CLEARED_RATIONALE,
                strategy="smart",
                smart_action=rule.action,
            )

        try:
            found = self.find_slot(mover, items, schedules)
        except ResolutionExhausted as e:
            logger.warning(f"Smart reschedule fell back to manual review: {e}")
            return manual_review(rule.confidence, f"{rule.rationale}; {e}", e.attempts)

        combined = round(rule.confidence * found.confidence / 100, 2)
        if combined < self.config.smart_min_confidence:
            return manual_review(
                combined,
                f"{rule.rationale}; confidence {combined:g} below {self.config.smart_min_confidence:g}",
                found.attempts,
            )

        self._move(mover.id, found.window, items, outcome)
        return ResolutionDecision(
            conflict_id=conflict.id,
            item_id=mover.id,
            action=ResolutionAction.RESCHEDULE,
            target_window=found.window,
            confidence=combined,
            rationale=f"{rule.rationale}; moved to {found.window}",
            strategy="smart",
            attempts=found.attempts,
            smart_action=rule.action,
        )

    def _move(
        self,
        item_id: str,
        window: TimeWindow,
        items: Dict[str, AdjustmentItem],
        outcome: ResolutionOutcome,
    ) -> None:
        items[item_id].proposed_window = window
        outcome.moved[item_id] = window
        logger.debug(f"Item {item_id} moved to {window}")

    def resolve(
        self,
        conflicts: Sequence[Conflict],
        items: Iterable[AdjustmentItem],
        strategy: ResolutionStrategy,
        existing_schedules: Sequence[ExistingSchedule] = (),
        manual_actions: Optional[Mapping[str, ManualAction]] = None,
    ) -> ResolutionOutcome:
        """Decide every conflict with one strategy.

        Args:
            conflicts: Conflicts from the classifier
            items: Batch items; moved items get a new ``proposed_window``
            strategy: auto, manual, skip or smart
            existing_schedules: Bookings known around the batch, read-only
            manual_actions: Instructions keyed by conflict id (manual strategy)

        Returns:
            ResolutionOutcome with exactly one decision per conflict
        """
        strategy = ResolutionStrategy(strategy)
        item_map = {item.id: item for item in items}
        schedules = list(existing_schedules)
        manual_actions = manual_actions or {}
        outcome = ResolutionOutcome(strategy=strategy)
        self._lookup_windows = {item_id: item.proposed_window for item_id, item in item_map.items()}

        for conflict in sort_conflicts(conflicts):
            if strategy == ResolutionStrategy.SKIP:
                decision = ResolutionDecision(
                    conflict_id=conflict.id,
                    item_id=conflict.subject.id,
                    action=ResolutionAction.SKIP,
                    confidence=100,
                    rationale="skip strategy keeps proposed windows",
                    strategy="skip",
                )
            elif strategy == ResolutionStrategy.MANUAL:
                decision = self._manual(
                    conflict, manual_actions.get(conflict.id), item_map, schedules, outcome
                )
            elif strategy == ResolutionStrategy.SMART:
                decision = self._smart(conflict, item_map, schedules, outcome)
            else:
                decision = self._auto(conflict, item_map, schedules, outcome)

            conflict.resolution = decision
            outcome.decisions.append(decision)

        failed = sum(1 for d in outcome.decisions if not d.succeeded)
        logger.info(
            f"Resolved {len(outcome.decisions)} conflicts with {strategy.value} "
            f"({len(outcome.moved)} items moved, {failed} unresolved)"
        )
        return outcome
