"""
Conflict detection and severity scoring for a batch of adjustments.

Two passes run over the batch:

1. Internal: every unordered pair of batch items is compared on their
   proposed windows.
2. External: each item's proposed window is checked against the bookings
   the schedule store returns around it. Lookups run concurrently, bounded
   by a semaphore, and each worker hands back its own partial list which
   the classifier merges.

A failed or timed-out lookup never aborts the run. It is logged, recorded
in the report, and the item is treated as having no external conflicts.
"""

import asyncio
import inspect
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple, Union

import logfire
from loguru import logger

from .config import EngineSettings
from .domain import (
    AdjustmentItem,
    Conflict,
    ConflictKind,
    ExistingSchedule,
    PriorityTier,
    Severity,
)
from .errors import LookupFailure
from .overlap import detect_overlap
from .response import (
    ConflictReport,
    ConflictStatistics,
    LookupFailureInfo,
    ProgressUpdate,
    Recommendation,
)

Party = Union[AdjustmentItem, ExistingSchedule]
ProgressCallback = Callable[[ProgressUpdate], object]

PRIORITY_SCORES: Dict[PriorityTier, float] = {
    PriorityTier.LOW: 0.25,
    PriorityTier.MEDIUM: 0.5,
    PriorityTier.HIGH: 0.75,
    PriorityTier.URGENT: 1.0,
}

SERVICE_CRITICALITY: Dict[str, float] = {
    "surgery": 1.0,
    "medication": 0.8,
    "rehabilitation": 0.6,
    "nursing": 0.6,
    "routine": 0.4,
    "checkup": 0.3,
}
DEFAULT_SERVICE_CRITICALITY = 0.5


def priority_score(subject: AdjustmentItem, counterpart: Party) -> float:
    """Score the higher of the two priorities."""
    return max(PRIORITY_SCORES[subject.priority], PRIORITY_SCORES[counterpart.priority])


def service_criticality(subject: AdjustmentItem, counterpart: Party) -> float:
    """Score the more critical of the two service types."""
    return max(
        SERVICE_CRITICALITY.get(subject.service_type, DEFAULT_SERVICE_CRITICALITY),
        SERVICE_CRITICALITY.get(counterpart.service_type, DEFAULT_SERVICE_CRITICALITY),
    )


def resource_indicator(subject: AdjustmentItem, counterpart: Party) -> float:
    """1 when both visits may need the same caregiver, 0 when they are known to differ."""
    if subject.resource_id and counterpart.resource_id:
        return 0.0 if subject.resource_id != counterpart.resource_id else 1.0
    return 1.0


Scorer = Callable[[AdjustmentItem, Party], float]


class SeverityScorers:
    """Pluggable scoring functions for the non-overlap severity factors.

    Each scorer takes ``(subject, counterpart)`` and returns a value in [0, 1].
    """

    def __init__(
        self,
        priority: Scorer = priority_score,
        service: Scorer = service_criticality,
        resource: Scorer = resource_indicator,
    ):
        self.priority = priority
        self.service = service
        self.resource = resource


def bucket_severity(score: float) -> Severity:
    if score >= 80:
        return Severity.CRITICAL
    if score >= 60:
        return Severity.HIGH
    if score >= 40:
        return Severity.MEDIUM
    return Severity.LOW


def _unit(value: float) -> float:
    return min(1.0, max(0.0, value))


class ConflictClassifier:
    """Finds and scores conflicts for a batch of adjustment items."""

    def __init__(
        self,
        settings: Optional[EngineSettings] = None,
        scorers: Optional[SeverityScorers] = None,
    ):
        self.settings = settings or EngineSettings()
        self.scorers = scorers or SeverityScorers()

    def severity_score(
        self, subject: AdjustmentItem, counterpart: Party, overlap_minutes: float
    ) -> float:
        """Weighted severity in [0, 100], non-decreasing in the overlap."""
        weights = self.settings.severity_weights
        duration = subject.proposed_window.duration_minutes
        overlap_ratio = 1.0 if duration == 0 else _unit(overlap_minutes / duration)

        raw = (
            weights.overlap * overlap_ratio
            + weights.priority * _unit(self.scorers.priority(subject, counterpart))
            + weights.service * _unit(self.scorers.service(subject, counterpart))
            + weights.resource * _unit(self.scorers.resource(subject, counterpart))
        )
        return round(min(100.0, max(0.0, raw * 100)), 2)

    def _build_conflict(
        self,
        conflict_id: str,
        kind: ConflictKind,
        subject: AdjustmentItem,
        counterpart: Party,
        counterpart_window,
    ) -> Optional[Conflict]:
        result = detect_overlap(
            subject.proposed_window, counterpart_window, self.settings.buffer_minutes
        )
        if not result.has_conflict:
            return None

        score = self.severity_score(subject, counterpart, result.overlap_minutes)
        return Conflict(
            id=conflict_id,
            kind=kind,
            subject=subject,
            counterpart=counterpart,
            overlap_minutes=result.overlap_minutes,
            overlap_type=result.overlap_type,
            severity=bucket_severity(score),
            severity_score=score,
        )

    async def _report_progress(
        self, callback: Optional[ProgressCallback], phase: str, processed: int, total: int
    ) -> None:
        if callback is not None:
            outcome = callback(ProgressUpdate(phase=phase, processed=processed, total=total))
            if inspect.isawaitable(outcome):
                await outcome
        await asyncio.sleep(0)

    async def detect_internal(
        self,
        items: Sequence[AdjustmentItem],
        progress_callback: Optional[ProgressCallback] = None,
    ) -> List[Conflict]:
        """Compare every unordered pair of batch items."""
        conflicts: List[Conflict] = []
        total = len(items) * (len(items) - 1) // 2
        processed = 0

        for i in range(len(items)):
            for j in range(i + 1, len(items)):
                a, b = items[i], items[j]
                conflict = self._build_conflict(
                    f"internal:{a.id}:{b.id}",
                    ConflictKind.INTERNAL,
                    a,
                    b,
                    b.proposed_window,
                )
                if conflict is not None:
                    conflicts.append(conflict)

                processed += 1
                if processed % self.settings.batch_size == 0:
                    await self._report_progress(progress_callback, "internal", processed, total)

        await self._report_progress(progress_callback, "internal", processed, total)
        return conflicts

    async def _check_item(
        self,
        item: AdjustmentItem,
        store,
        semaphore: asyncio.Semaphore,
        batch_ids: frozenset,
    ) -> Tuple[AdjustmentItem, List[ExistingSchedule], List[Conflict], Optional[LookupFailure]]:
        async with semaphore:
            try:
                lookup = store.find_schedules_near(
                    item.proposed_window, self.settings.check_radius_days
                )
                if self.settings.lookup_timeout_seconds:
                    schedules = await asyncio.wait_for(
                        lookup, timeout=self.settings.lookup_timeout_seconds
                    )
                else:
                    schedules = await lookup
            except Exception as e:
                failure = LookupFailure(item.id, e)
                logger.warning(f"Schedule lookup failed for item {item.id}: {e!r}")
                return item, [], [], failure

        nearby = [s for s in schedules if s.id not in batch_ids]
        conflicts = []
        for schedule in nearby:
            conflict = self._build_conflict(
                f"external:{item.id}:{schedule.id}",
                ConflictKind.EXTERNAL,
                item,
                schedule,
                schedule.window,
            )
            if conflict is not None:
                conflicts.append(conflict)
        return item, nearby, conflicts, None

    async def detect_external(
        self,
        items: Sequence[AdjustmentItem],
        store,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> Tuple[List[Conflict], List[ExistingSchedule], List[LookupFailureInfo]]:
        """Check each item against existing bookings with bounded concurrency."""
        semaphore = asyncio.Semaphore(self.settings.max_concurrent_checks)
        batch_ids = frozenset(item.id for item in items)
        tasks = [
            asyncio.ensure_future(self._check_item(item, store, semaphore, batch_ids))
            for item in items
        ]

        conflicts: List[Conflict] = []
        nearby: Dict[str, ExistingSchedule] = {}
        failures: List[LookupFailureInfo] = []
        completed = 0

        for next_done in asyncio.as_completed(tasks):
            item, schedules, partial, failure = await next_done
            conflicts.extend(partial)
            for schedule in schedules:
                nearby.setdefault(schedule.id, schedule)
            if failure is not None:
                failures.append(LookupFailureInfo(item_id=item.id, error=str(failure)))

            completed += 1
            if completed % self.settings.batch_size == 0:
                await self._report_progress(progress_callback, "external", completed, len(tasks))

        await self._report_progress(progress_callback, "external", completed, len(tasks))

        failures.sort(key=lambda f: f.item_id)
        schedules_sorted = sorted(nearby.values(), key=lambda s: (s.window.start, s.id))
        return conflicts, schedules_sorted, failures

    async def classify(
        self,
        items: Sequence[AdjustmentItem],
        store=None,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> ConflictReport:
        """Detect, score and sort all conflicts for a batch.

        Args:
            items: Batch items, compared on their proposed windows
            store: Schedule store for external lookups; None skips the external pass
            progress_callback: Called with a ProgressUpdate every ``batch_size`` steps

        Returns:
            ConflictReport with conflicts sorted by score desc, proposed start, id
        """
        with logfire.span("classify conflicts", item_count=len(items)):
            internal = await self.detect_internal(items, progress_callback)

            external: List[Conflict] = []
            nearby: List[ExistingSchedule] = []
            failures: List[LookupFailureInfo] = []
            if store is not None and items:
                external, nearby, failures = await self.detect_external(
                    items, store, progress_callback
                )

            conflicts = sort_conflicts(internal + external)
            statistics = ConflictStatistics(
                total_items=len(items),
                internal_conflicts=len(internal),
                external_conflicts=len(external),
            )
            for conflict in conflicts:
                statistics.by_severity[conflict.severity] += 1

            logger.info(
                f"Detected {len(internal)} internal and {len(external)} external conflicts "
                f"across {len(items)} items ({len(failures)} lookup failures)"
            )
            logfire.info(
                "conflicts classified",
                internal=len(internal),
                external=len(external),
                lookup_failures=len(failures),
            )

            return ConflictReport(
                conflicts=conflicts,
                statistics=statistics,
                nearby_schedules=nearby,
                lookup_failures=failures,
                recommendations=recommend(conflicts),
            )


def sort_conflicts(conflicts: Iterable[Conflict]) -> List[Conflict]:
    """Order by severity score desc, then proposed start asc, then id."""
    return sorted(
        conflicts,
        key=lambda c: (-c.severity_score, c.subject.proposed_window.start, c.id),
    )


def recommend(conflicts: Sequence[Conflict]) -> List[Recommendation]:
    """Suggest a strategy per severity bucket present in the run."""
    recommendations = []
    for severity in (Severity.CRITICAL, Severity.HIGH, Severity.MEDIUM, Severity.LOW):
        count = sum(1 for c in conflicts if c.severity == severity)
        if not count:
            continue
        if severity == Severity.CRITICAL:
            strategy, description = "manual", f"{count} critical conflicts need manual handling"
        else:
            strategy, description = "auto", f"{count} {severity.value} conflicts can be rescheduled automatically"
        recommendations.append(
            Recommendation(
                severity=severity,
                conflict_count=count,
                strategy=strategy,
                description=description,
            )
        )
    return recommendations
