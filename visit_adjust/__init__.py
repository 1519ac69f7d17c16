"""Batch visit time-adjustment engine."""

from .approval_models import ApprovalCase, ApprovalDecision, ApproverRole, CaseStatus
from .approval_workflow import ApprovalWorkflowEngine, build_template
from .conflict_classifier import ConflictClassifier, SeverityScorers
from .domain import AdjustmentItem, Conflict, ExistingSchedule, PriorityTier, TimeWindow
from .orchestrator import BatchOrchestrator
from .permission_models import AdjustmentRequest, PermissionProfile, PermissionTier
from .permission_service import PermissionEvaluator
from .resolution import ResolutionStrategyEngine
from .response import BatchReport, ItemDisposition
from .strategy_models import ManualAction, ResolutionConfig, ResolutionStrategy

__all__ = [
    "AdjustmentItem",
    "AdjustmentRequest",
    "ApprovalCase",
    "ApprovalDecision",
    "ApprovalWorkflowEngine",
    "ApproverRole",
    "BatchOrchestrator",
    "BatchReport",
    "CaseStatus",
    "Conflict",
    "ConflictClassifier",
    "ExistingSchedule",
    "ItemDisposition",
    "ManualAction",
    "PermissionEvaluator",
    "PermissionProfile",
    "PermissionTier",
    "PriorityTier",
    "ResolutionConfig",
    "ResolutionStrategy",
    "ResolutionStrategyEngine",
    "SeverityScorers",
    "TimeWindow",
    "build_template",
]
