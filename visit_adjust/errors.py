"""Error types raised by the adjustment engine."""

from typing import List, Optional


class AdjustmentError(Exception):
    """Base class for all engine errors."""

    pass


class ValidationError(AdjustmentError):
    """Malformed request, e.g. a missing or inverted time window."""

    pass


class PermissionDenied(AdjustmentError):
    """One or more hard permission rules were violated."""

    def __init__(self, errors: List[str]):
        self.errors = list(errors)
        super().__init__("; ".join(self.errors) or "permission denied")


class LookupFailure(AdjustmentError):
    """The schedule store could not be queried for an item."""

    def __init__(self, item_id: str, cause: Optional[BaseException] = None):
        self.item_id = item_id
        self.cause = cause
        super().__init__(f"schedule lookup failed for item {item_id}: {cause!r}")


class AuthorizationError(AdjustmentError):
    """Approver role does not match the current approval step."""

    pass


class DuplicateDecisionError(AdjustmentError):
    """A decision was submitted for a step that is already resolved."""

    pass


class CaseNotFoundError(AdjustmentError):
    """No approval case exists with the given id."""

    pass


class ResolutionExhausted(AdjustmentError):
    """No valid alternative window was found within the attempt budget."""

    def __init__(self, item_id: str, attempts: int):
        self.item_id = item_id
        self.attempts = attempts
        super().__init__(
            f"no conflict-free window found for item {item_id} after {attempts} attempts"
        )


class WorkflowIntegrityError(AdjustmentError):
    """A terminal approval case was mutated. Indicates a programming error."""

    pass
