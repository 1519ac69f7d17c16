"""
Approval workflow: templates per tier and a role-gated state machine.

A case walks its steps in order. Exactly one step is pending while the
case is open; earlier steps are approved and later ones wait. A rejection
ends the case and cancels the steps that never started. Decisions on the
same case are serialized with a per-case ``asyncio.Lock``.
"""

import asyncio
import inspect
import itertools
from datetime import datetime
from typing import Callable, Dict, List, Optional

from loguru import logger

from .approval_models import (
    ApprovalCase,
    ApprovalDecision,
    ApprovalStep,
    ApproverRole,
    CaseStatus,
    HistoryEntry,
    StepStatus,
    StepTemplate,
    WorkflowEvent,
    WorkflowTemplate,
)
from .errors import (
    AuthorizationError,
    CaseNotFoundError,
    DuplicateDecisionError,
    WorkflowIntegrityError,
)
from .permission_models import AdjustmentRequest, PermissionTier

SYSTEM_ACTOR = "system"


def build_template(tier: PermissionTier, impact_score: float = 0.0) -> WorkflowTemplate:
    """Build the approval steps for a tier; higher impact adds stricter steps."""
    tier = PermissionTier(tier)
    if tier == PermissionTier.NORMAL:
        steps = [
            StepTemplate(
                role=ApproverRole.SENIOR_RECORDER,
                name="Senior recorder review",
                auto_approve=impact_score < 30,
            )
        ]
    elif tier == PermissionTier.ADVANCED:
        steps = [StepTemplate(role=ApproverRole.SENIOR_RECORDER, name="Senior recorder review")]
        if impact_score > 60:
            steps.append(StepTemplate(role=ApproverRole.SUPERVISOR, name="Supervisor review"))
    elif tier == PermissionTier.EMERGENCY:
        steps = [
            StepTemplate(
                role=ApproverRole.SUPERVISOR,
                name="Supervisor emergency review",
                urgent=True,
                deadline_hours=2,
            )
        ]
        if impact_score > 70:
            steps.append(StepTemplate(role=ApproverRole.ADMIN, name="Admin sign-off"))
    else:
        steps = [StepTemplate(role=ApproverRole.ADMIN, name="Admin record", auto_approve=True)]

    return WorkflowTemplate(tier=tier, impact_score=impact_score, steps=steps)


def _default_id_factory() -> Callable[[], str]:
    counter = itertools.count(1)
    return lambda: f"case-{next(counter):06d}"


class ApprovalWorkflowEngine:
    """Creates approval cases and applies approver decisions to them."""

    def __init__(
        self,
        persistence=None,
        notifications=None,
        on_approved: Optional[Callable[[ApprovalCase], object]] = None,
        on_rejected: Optional[Callable[[ApprovalCase], object]] = None,
        id_factory: Optional[Callable[[], str]] = None,
    ):
        """Initialize the workflow engine.

        Args:
            persistence: PersistenceStore receiving a snapshot after each transition
            notifications: NotificationGateway told about each transition
            on_approved: Called with the case once its last step is approved
            on_rejected: Called with the case when an approver rejects it
            id_factory: Produces case ids
        """
        self.persistence = persistence
        self.notifications = notifications
        self.on_approved = on_approved
        self.on_rejected = on_rejected
        self.id_factory = id_factory or _default_id_factory()
        self._cases: Dict[str, ApprovalCase] = {}
        self._active_by_request: Dict[str, str] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    # Side effects

    async def _persist(self, case: ApprovalCase) -> None:
        if self.persistence is None:
            return
        try:
            await self.persistence.save_case(case)
        except Exception as e:
            logger.warning(f"Failed to persist approval case {case.id}: {e!r}")

    async def _notify(self, kind: str, case: ApprovalCase, now: datetime, **details) -> None:
        if self.notifications is None:
            return
        event = WorkflowEvent(
            kind=kind,
            case_id=case.id,
            request_id=case.request.request_id,
            status=case.status,
            at=now,
            details=details,
        )
        try:
            await self.notifications.notify(event)
        except Exception as e:
            logger.warning(f"Notification {kind} for case {case.id} failed: {e!r}")

    async def _fire(self, callback, case: ApprovalCase) -> None:
        if callback is None:
            return
        result = callback(case)
        if inspect.isawaitable(result):
            await result

    # Transitions

    def _record(
        self,
        case: ApprovalCase,
        now: datetime,
        action: str,
        actor: str,
        step_index: Optional[int] = None,
        comments: Optional[str] = None,
    ) -> None:
        case.history.append(
            HistoryEntry(at=now, action=action, actor=actor, step_index=step_index, comments=comments)
        )
        case.updated_at = now

    def _ensure_open(self, case: ApprovalCase) -> None:
        if case.status.is_terminal:
            raise WorkflowIntegrityError(
                f"approval case {case.id} is already {case.status.value}"
            )

    def _start_step(self, case: ApprovalCase, index: int, now: datetime) -> None:
        self._ensure_open(case)
        step = case.steps[index]
        if step.status != StepStatus.WAITING:
            raise WorkflowIntegrityError(
                f"step {index} of case {case.id} cannot start from {step.status.value}"
            )
        case.current_step_index = index
        step.status = StepStatus.PENDING
        step.started_at = now
        self._record(case, now, "step_started", SYSTEM_ACTOR, index)

    def _resolve_step(
        self,
        case: ApprovalCase,
        decision: ApprovalDecision,
        actor: str,
        now: datetime,
        comments: Optional[str] = None,
    ) -> ApprovalStep:
        self._ensure_open(case)
        step = case.current_step
        if step.status != StepStatus.PENDING:
            raise WorkflowIntegrityError(
                f"step {step.index} of case {case.id} is {step.status.value}, not pending"
            )
        step.status = (
            StepStatus.APPROVED if decision == ApprovalDecision.APPROVE else StepStatus.REJECTED
        )
        step.decision = decision
        step.decided_by = actor
        step.decided_at = now
        step.comments = comments
        return step

    async def _advance(self, case: ApprovalCase, now: datetime) -> None:
        """Move past approved steps, auto-approving where the template allows."""
        while True:
            self._ensure_open(case)
            step = case.current_step
            if step.status == StepStatus.PENDING and step.auto_approve:
                self._resolve_step(case, ApprovalDecision.APPROVE, SYSTEM_ACTOR, now, "auto-approved")
                self._record(case, now, "auto_approved", SYSTEM_ACTOR, step.index)
            if step.status != StepStatus.APPROVED:
                return

            if step.index == len(case.steps) - 1:
                case.status = CaseStatus.APPROVED
                self._record(case, now, "case_approved", step.decided_by or SYSTEM_ACTOR)
                logger.info(f"Approval case {case.id} approved")
                await self._persist(case)
                await self._notify("case_approved", case, now)
                await self._fire(self.on_approved, case)
                return

            self._start_step(case, step.index + 1, now)
            case.status = CaseStatus.IN_PROGRESS

    # Public API

    async def create_case(
        self,
        request: AdjustmentRequest,
        template: WorkflowTemplate,
        now: datetime,
    ) -> ApprovalCase:
        """Open a case for a request, or return the one already open for it."""
        existing_id = self._active_by_request.get(request.request_id)
        if existing_id is not None:
            existing = self._cases[existing_id]
            if not existing.status.is_terminal:
                logger.debug(f"Reusing open case {existing.id} for request {request.request_id}")
                return existing

        urgent = any(step.urgent for step in template.steps)
        tags = [template.tier.value]
        if template.impact_score > 70:
            tags.append("high_impact")
        if request.is_emergency:
            tags.append("emergency")

        case = ApprovalCase(
            id=self.id_factory(),
            request=request,
            tier=template.tier,
            impact_score=template.impact_score,
            steps=[
                ApprovalStep(
                    index=i,
                    role=step.role,
                    name=step.name,
                    auto_approve=step.auto_approve,
                    urgent=step.urgent,
                    deadline_hours=step.deadline_hours,
                )
                for i, step in enumerate(template.steps)
            ],
            priority="urgent" if urgent else "normal",
            tags=tags,
            created_at=now,
            updated_at=now,
        )
        self._cases[case.id] = case
        self._active_by_request[request.request_id] = case.id
        self._locks[case.id] = asyncio.Lock()

        self._record(case, now, "created", request.requester)
        self._start_step(case, 0, now)
        logger.info(
            f"Approval case {case.id} opened for request {request.request_id} "
            f"({template.tier.value}, {len(case.steps)} steps)"
        )

        async with self._locks[case.id]:
            await self._persist(case)
            await self._notify("case_created", case, now, steps=len(case.steps))
            await self._advance(case, now)
            if not case.status.is_terminal:
                await self._persist(case)
        return case

    async def get_case(self, case_id: str) -> ApprovalCase:
        case = self._cases.get(case_id)
        if case is None and self.persistence is not None:
            case = await self.persistence.get_case(case_id)
            if case is not None:
                self._cases[case.id] = case
                self._locks.setdefault(case.id, asyncio.Lock())
                if not case.status.is_terminal:
                    self._active_by_request.setdefault(case.request.request_id, case.id)
        if case is None:
            raise CaseNotFoundError(f"approval case {case_id} not found")
        return case

    async def submit_decision(
        self,
        case_id: str,
        approver_role: ApproverRole,
        decision: ApprovalDecision,
        now: datetime,
        approver_id: Optional[str] = None,
        comments: Optional[str] = None,
    ) -> ApprovalCase:
        """Apply an approver's decision to the current step of a case.

        Raises:
            CaseNotFoundError: unknown case id
            DuplicateDecisionError: case already finished or step already decided
            AuthorizationError: role does not match the current step
        """
        case = await self.get_case(case_id)
        approver_role = ApproverRole(approver_role)
        decision = ApprovalDecision(decision)

        async with self._locks.setdefault(case.id, asyncio.Lock()):
            step = case.current_step
            if case.status.is_terminal or step.status.is_resolved:
                raise DuplicateDecisionError(
                    f"case {case.id} step {step.index} was already decided ({case.status.value})"
                )
            if approver_role != step.role:
                raise AuthorizationError(
                    f"{approver_role.value} cannot decide step {step.index} of case {case.id}, "
                    f"{step.role.value} required"
                )

            actor = approver_id or approver_role.value
            self._resolve_step(case, decision, actor, now, comments)
            label = "approved" if decision == ApprovalDecision.APPROVE else "rejected"
            self._record(case, now, label, actor, step.index, comments)

            if decision == ApprovalDecision.REJECT:
                case.status = CaseStatus.REJECTED
                for later in case.steps[step.index + 1 :]:
                    later.status = StepStatus.CANCELLED
                    self._record(case, now, "cancelled", SYSTEM_ACTOR, later.index)
                self._record(case, now, "case_rejected", actor, comments=comments)
                logger.info(f"Approval case {case.id} rejected at step {step.index}")
                await self._persist(case)
                await self._notify("case_rejected", case, now, step_index=step.index)
                await self._fire(self.on_rejected, case)
                return case

            await self._advance(case, now)
            if not case.status.is_terminal:
                await self._persist(case)
                await self._notify("step_approved", case, now, step_index=step.index)
            return case

    def overdue_steps(self, case_id: str, now: datetime) -> List[ApprovalStep]:
        """Pending steps of a case whose soft deadline has passed."""
        case = self._cases.get(case_id)
        if case is None:
            raise CaseNotFoundError(f"approval case {case_id} not found")
        return [
            step
            for step in case.steps
            if step.status == StepStatus.PENDING and step.deadline is not None and step.deadline < now
        ]

    def active_case_for(self, request_id: str) -> Optional[ApprovalCase]:
        case_id = self._active_by_request.get(request_id)
        if case_id is None:
            return None
        case = self._cases[case_id]
        return None if case.status.is_terminal else case

    def list_cases(
        self,
        requester: Optional[str] = None,
        approver_role: Optional[ApproverRole] = None,
        status: Optional[CaseStatus] = None,
    ) -> List[ApprovalCase]:
        """Cases known to this engine, newest first.

        Args:
            requester: Only cases submitted by this user
            approver_role: Only open cases whose current step waits on this role
            status: Only cases in this status
        """
        role = ApproverRole(approver_role) if approver_role is not None else None
        wanted = CaseStatus(status) if status is not None else None
        cases = []
        for case in self._cases.values():
            if requester is not None and case.request.requester != requester:
                continue
            if role is not None and (case.status.is_terminal or case.current_step.role != role):
                continue
            if wanted is not None and case.status != wanted:
                continue
            cases.append(case)
        return sorted(cases, key=lambda c: (c.created_at, c.id), reverse=True)
