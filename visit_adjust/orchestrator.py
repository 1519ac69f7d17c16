"""
Batch orchestration: detection, resolution, permission and commit.

``BatchOrchestrator.run_batch`` always returns a ``BatchReport``. Recoverable
errors (malformed items, lookup failures, exhausted searches, denied
permissions, failed commits) end up on the affected item's outcome and
never abort the rest of the batch.

A commit reserves one unit of the requester's daily usage before the store
is touched and gives it back if the write fails. Items sent for approval
hold their reservation until the case is decided, so open cases count
towards the daily limit.
"""

from collections import defaultdict
from datetime import datetime
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

import logfire
from cachetools import TTLCache
from loguru import logger

from .approval_models import ApprovalCase, CaseStatus
from .approval_workflow import ApprovalWorkflowEngine, build_template
from .cache import CachedScheduleStore, make_cache
from .config import EngineSettings
from .conflict_classifier import ConflictClassifier, ProgressCallback, SeverityScorers
from .domain import (
    AdjustmentItem,
    Conflict,
    ConflictKind,
    ResolutionAction,
    ResolutionDecision,
    TimeWindow,
)
from .errors import PermissionDenied, ValidationError
from .permission_models import AdjustmentRequest
from .permission_service import PermissionEvaluator, ensure_permitted
from .ports import InMemoryUsageCounter, StaticPermissionConfigProvider
from .resolution import ResolutionStrategyEngine
from .response import BatchReport, ItemDisposition, ItemOutcome
from .strategy_models import ManualAction, ResolutionConfig, ResolutionStrategy, default_smart_table

# Actions that keep both parties of a conflict where they are
_HOLDING_ACTIONS = (ResolutionAction.SKIP, ResolutionAction.NEGOTIATE)


def _decisions_by_item(
    conflicts: Sequence[Conflict], decisions: Sequence[ResolutionDecision]
) -> Dict[str, List[ResolutionDecision]]:
    """Group decisions by the items they settle, in decision order.

    A decision belongs to the item it names. For an internal conflict whose
    overlap is left in place (held or unresolved) it also belongs to the
    other party.
    """
    by_id = {conflict.id: conflict for conflict in conflicts}
    by_item: Dict[str, List[ResolutionDecision]] = defaultdict(list)
    for decision in decisions:
        by_item[decision.item_id].append(decision)
        conflict = by_id.get(decision.conflict_id)
        if conflict is None or conflict.kind != ConflictKind.INTERNAL:
            continue
        if decision.action in _HOLDING_ACTIONS or not decision.succeeded:
            for party in (conflict.subject.id, conflict.counterpart.id):
                if party != decision.item_id:
                    by_item[party].append(decision)
    return by_item


def _disposition_from_decisions(decisions: Sequence[ResolutionDecision]) -> Optional[ItemDisposition]:
    """Disposition forced by resolution decisions, or None if the item may be committed."""
    actions = {d.action for d in decisions}
    if ResolutionAction.CANCEL in actions:
        return ItemDisposition.CANCELLED
    if any(not d.succeeded or d.escalated for d in decisions):
        return ItemDisposition.NEEDS_ATTENTION
    if ResolutionAction.NEGOTIATE in actions:
        return ItemDisposition.NEGOTIATING
    if ResolutionAction.SKIP in actions:
        return ItemDisposition.SKIPPED
    return None


class BatchOrchestrator:
    """Runs a batch of adjustments end to end."""

    def __init__(
        self,
        store,
        config_provider=None,
        usage_counter=None,
        notifications=None,
        persistence=None,
        settings: Optional[EngineSettings] = None,
        resolution_config: Optional[ResolutionConfig] = None,
        holidays=None,
        scorers: Optional[SeverityScorers] = None,
        smart_table=default_smart_table,
        cache: Optional[TTLCache] = None,
        id_factory=None,
    ):
        """Wire the engine components around the given ports.

        Args:
            store: ScheduleStore with bookings; wrapped in a TTL cache
            config_provider: PermissionConfigProvider, defaults to the stock profiles
            usage_counter: UsageCounter, defaults to an in-memory counter
            notifications: NotificationGateway for workflow events
            persistence: PersistenceStore for cases and conflicts
        """
        self.settings = settings or EngineSettings()
        self.cache = cache if cache is not None else make_cache(self.settings.cache_ttl_seconds)
        self.store = CachedScheduleStore(store, self.cache)
        self.config_provider = config_provider or StaticPermissionConfigProvider()
        self.usage_counter = usage_counter or InMemoryUsageCounter()
        self.persistence = persistence

        self.classifier = ConflictClassifier(self.settings, scorers)
        self.evaluator = PermissionEvaluator(self.config_provider, self.settings, holidays)
        self.resolver = ResolutionStrategyEngine(self.settings, resolution_config, smart_table)
        self.workflow = ApprovalWorkflowEngine(
            persistence=persistence,
            notifications=notifications,
            on_approved=self._on_case_approved,
            on_rejected=self._on_case_rejected,
            id_factory=id_factory,
        )

        # Commit result of each case approved through the callback
        self._approval_results: Dict[str, Optional[str]] = {}
        self.committed: Dict[str, TimeWindow] = {}
        self.commit_errors: Dict[str, str] = {}

    # Usage reservations

    async def _reserve(self, requester: str, now: datetime) -> Optional[str]:
        try:
            await self.usage_counter.increment(requester, now)
        except Exception as e:
            logger.warning(f"Failed to reserve daily usage for {requester}: {e!r}")
            return f"usage reservation failed: {e!r}"
        return None

    async def _release(self, requester: str, reserved_on: datetime) -> None:
        try:
            await self.usage_counter.release(requester, reserved_on)
        except Exception as e:
            logger.error(f"Failed to release daily usage for {requester}: {e!r}")

    # Commit

    async def _apply(
        self, item_id: str, window: TimeWindow, requester: str, reserved_on: datetime
    ) -> Optional[str]:
        """Write one reserved adjustment. Returns an error message instead of raising."""
        try:
            await self.store.apply_adjustment(item_id, window)
        except Exception as e:
            message = f"commit failed: {e!r}"
            logger.warning(f"Failed to commit item {item_id}: {e!r}")
            self.commit_errors[item_id] = message
            await self._release(requester, reserved_on)
            return message
        self.committed[item_id] = window
        self.commit_errors.pop(item_id, None)
        logger.info(f"Committed item {item_id} to {window}")
        return None

    async def _on_case_approved(self, case: ApprovalCase) -> None:
        # Commit exactly what the approvers reviewed
        request = case.request
        self._approval_results[case.id] = await self._apply(
            request.request_id, request.proposed_window, request.requester, case.created_at
        )

    async def _on_case_rejected(self, case: ApprovalCase) -> None:
        logger.info(f"Releasing usage held by rejected case {case.id}")
        await self._release(case.request.requester, case.created_at)

    async def _save_conflicts(self, conflicts) -> None:
        if self.persistence is None:
            return
        for conflict in conflicts:
            try:
                await self.persistence.save_conflict(conflict)
            except Exception as e:
                logger.warning(f"Failed to persist conflict {conflict.id}: {e!r}")

    def _split_valid(
        self, items: Sequence[AdjustmentItem], outcomes: List[Optional[ItemOutcome]]
    ) -> List[Tuple[int, AdjustmentItem]]:
        valid: List[Tuple[int, AdjustmentItem]] = []
        seen = set()
        for index, item in enumerate(items):
            try:
                if item.id in seen:
                    raise ValidationError(f"duplicate item id {item.id}")
                if item.original_window.duration_minutes <= 0 or item.proposed_window.duration_minutes <= 0:
                    raise ValidationError(f"item {item.id} has an empty time window")
            except ValidationError as e:
                logger.warning(f"Rejected malformed item: {e}")
                outcomes[index] = ItemOutcome(
                    item_id=item.id, disposition=ItemDisposition.INVALID, errors=[str(e)]
                )
                continue
            seen.add(item.id)
            valid.append((index, item))
        return valid

    async def _settle_item(
        self,
        item: AdjustmentItem,
        decisions: Sequence[ResolutionDecision],
        requester: str,
        now: datetime,
    ) -> ItemOutcome:
        outcome = ItemOutcome(
            item_id=item.id,
            disposition=ItemDisposition.COMMITTED,
            final_window=item.proposed_window,
            decisions=[d.conflict_id for d in decisions],
            risk_flagged=any(d.risk_flagged for d in decisions),
        )

        forced = _disposition_from_decisions(decisions)
        if forced is not None:
            outcome.disposition = forced
            outcome.errors = [d.rationale for d in decisions if not d.succeeded]
            return outcome

        open_case = self.workflow.active_case_for(item.id)
        if open_case is not None:
            outcome.case_id = open_case.id
            outcome.tier = open_case.tier
            reviewed = open_case.request.proposed_window
            if reviewed == item.proposed_window:
                outcome.disposition = ItemDisposition.AWAITING_APPROVAL
            else:
                logger.warning(f"Item {item.id} changed while case {open_case.id} is open")
                outcome.disposition = ItemDisposition.NEEDS_ATTENTION
                outcome.errors = [f"approval case {open_case.id} is still open for {reviewed}"]
            return outcome

        request = AdjustmentRequest(
            request_id=item.id,
            original_window=item.original_window,
            proposed_window=item.proposed_window,
            requester=requester,
            reason_code=item.reason_code,
            is_emergency=item.is_emergency,
            patient_type=item.patient_type,
            service_type=item.service_type,
            weather=item.weather,
        )
        try:
            tier = self.evaluator.determine_tier(request, now)
            profile = self.config_provider.get_profile(tier)
            usage = await self.usage_counter.get_daily_count(requester, now)
            result = self.evaluator.validate(request, profile, now, usage)
            outcome.tier = tier
            outcome.validation = result
            ensure_permitted(result)
        except ValidationError as e:
            outcome.disposition = ItemDisposition.INVALID
            outcome.errors = [str(e)]
            return outcome
        except PermissionDenied as e:
            logger.warning(f"Item {item.id} denied: {e}")
            outcome.disposition = ItemDisposition.DENIED
            outcome.errors = list(e.errors)
            return outcome

        error = await self._reserve(requester, now)
        if error is None and result.required_approval:
            case = await self.workflow.create_case(
                request, build_template(tier, result.impact_score), now
            )
            outcome.case_id = case.id
            if case.status != CaseStatus.APPROVED:
                outcome.disposition = ItemDisposition.AWAITING_APPROVAL
                return outcome
            # Auto-approved on creation, so the approval callback already ran
            error = self._approval_results.pop(case.id, "commit did not run")
        elif error is None:
            error = await self._apply(item.id, item.proposed_window, requester, now)

        if error is not None:
            outcome.disposition = ItemDisposition.FAILED
            outcome.errors = [error]
        return outcome

    async def run_batch(
        self,
        items: Sequence[AdjustmentItem],
        strategy: ResolutionStrategy,
        requester: str,
        now: datetime,
        manual_actions: Optional[Mapping[str, ManualAction]] = None,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> BatchReport:
        """Detect, resolve, validate and commit a batch of adjustments.

        Args:
            items: Proposed adjustments; the caller's objects are not modified
            strategy: Resolution strategy for every conflict
            requester: User submitting the batch
            now: Reference time for notice, usage and approval timestamps
            manual_actions: Instructions keyed by conflict id (manual strategy)
            progress_callback: Receives detection progress updates

        Returns:
            BatchReport covering every item, conflict and decision
        """
        strategy = ResolutionStrategy(strategy)
        items = [item.model_copy(deep=True) for item in items]
        outcomes: List[Optional[ItemOutcome]] = [None] * len(items)

        with logfire.span("run batch", strategy=strategy.value, item_count=len(items)):
            indexed = self._split_valid(items, outcomes)
            valid = [item for _, item in indexed]

            report = await self.classifier.classify(valid, self.store, progress_callback)

            with logfire.span("resolve conflicts", conflicts=len(report.conflicts)):
                resolution = self.resolver.resolve(
                    report.conflicts,
                    valid,
                    strategy,
                    existing_schedules=report.nearby_schedules,
                    manual_actions=manual_actions,
                )
            await self._save_conflicts(report.conflicts)
            by_item = _decisions_by_item(report.conflicts, resolution.decisions)

            with logfire.span("settle items", items=len(valid)):
                for index, item in indexed:
                    outcomes[index] = await self._settle_item(
                        item, by_item.get(item.id, []), requester, now
                    )

            batch = BatchReport(
                strategy=strategy.value,
                requester=requester,
                started_at=now,
                items=outcomes,
                conflicts=report.conflicts,
                decisions=resolution.decisions,
                lookup_failures=report.lookup_failures,
                recommendations=report.recommendations,
            )

            counts = {d.value: n for d, n in batch.counts.items()}
            logger.info(f"Batch by {requester} finished: {counts}")
            logfire.info("batch finished", requester=requester, strategy=strategy.value, **counts)
            return batch
