"""Error taxonomy for the annotation review engine.

Every failure an engine operation can report is a ``WorkflowError`` carrying an
``ErrorKind``. The tool layer turns these into explicit ``{"error", "kind"}``
results so callers handle each kind instead of parsing messages.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Any


class ErrorKind(StrEnum):
    VALIDATION = "validation"
    PERMISSION = "permission"
    NOT_FOUND = "not_found"
    STATE_CONFLICT = "state_conflict"
    NO_ELIGIBLE_REVIEWERS = "no_eligible_reviewers"
    INTERNAL = "internal"


class WorkflowError(Exception):
    """Base class for all engine failures."""

    kind: ErrorKind = ErrorKind.INTERNAL

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_result(self) -> dict[str, Any]:
        result: dict[str, Any] = {"error": self.message, "kind": str(self.kind)}
        result.update(self.details)
        return result


class InvalidInput(WorkflowError):
    kind = ErrorKind.VALIDATION


class PermissionDenied(WorkflowError):
    kind = ErrorKind.PERMISSION


class NotFound(WorkflowError):
    kind = ErrorKind.NOT_FOUND


class StateConflict(WorkflowError):
    """Operation is not valid for the current lifecycle state."""

    kind = ErrorKind.STATE_CONFLICT
    reason: str = "state_conflict"

    def __init__(self, message: str, current_status: str | None = None, **details: Any) -> None:
        if current_status is not None:
            details["current_status"] = current_status
        details.setdefault("reason", self.reason)
        super().__init__(message, **details)
        self.current_status = current_status


class AlreadyCompleted(StateConflict):
    reason = "already_completed"


class AlreadyFinalized(StateConflict):
    reason = "already_finalized"


class InvalidTaskState(StateConflict):
    reason = "invalid_task_state"


class NotReadyForReview(StateConflict):
    reason = "not_ready_for_review"


class ReviewInProgress(StateConflict):
    reason = "review_in_progress"


class NoEligibleReviewers(WorkflowError):
    """Review is mandatory but nobody can perform it."""

    kind = ErrorKind.NO_ELIGIBLE_REVIEWERS


class StorageError(WorkflowError):
    """Storage failure; never retried by the engine."""

    kind = ErrorKind.INTERNAL
