"""State machine for task lifecycle transitions and review decision mapping."""

from __future__ import annotations

from annotation_review.models import AnnotationReviewStatus, ReviewStatus, TaskStatus

VALID_TASK_TRANSITIONS: dict[TaskStatus, set[TaskStatus]] = {
    TaskStatus.UNASSIGNED: set(),  # assignment happens outside the engine
    TaskStatus.ANNOTATING: {
        TaskStatus.IN_REVIEW,
        TaskStatus.COMPLETED,  # auto-approve
    },
    TaskStatus.IN_REVIEW: {
        TaskStatus.COMPLETED,
        TaskStatus.CHANGES_NEEDED,
    },
    TaskStatus.CHANGES_NEEDED: {
        TaskStatus.IN_REVIEW,  # resubmit
        TaskStatus.COMPLETED,
        TaskStatus.CHANGES_NEEDED,
    },
    TaskStatus.COMPLETED: set(),  # terminal
}

# Task states from which an annotator may submit for completion.
COMPLETABLE_TASK_STATES: frozenset[TaskStatus] = frozenset(
    {TaskStatus.ANNOTATING, TaskStatus.CHANGES_NEEDED}
)
# Task states in which a reviewer may act.
REVIEWABLE_TASK_STATES: frozenset[TaskStatus] = frozenset(
    {TaskStatus.IN_REVIEW, TaskStatus.CHANGES_NEEDED}
)
FINALIZED_ANNOTATION_STATES: frozenset[AnnotationReviewStatus] = frozenset(
    {AnnotationReviewStatus.APPROVED, AnnotationReviewStatus.REJECTED}
)

DECISION_MAPPING: dict[ReviewStatus, tuple[AnnotationReviewStatus, TaskStatus]] = {
    ReviewStatus.APPROVED: (AnnotationReviewStatus.APPROVED, TaskStatus.COMPLETED),
    ReviewStatus.REJECTED: (AnnotationReviewStatus.REJECTED, TaskStatus.CHANGES_NEEDED),
    # changes_requested leaves the annotation pending until it is resubmitted
    ReviewStatus.CHANGES_REQUESTED: (
        AnnotationReviewStatus.PENDING,
        TaskStatus.CHANGES_NEEDED,
    ),
}


def validate_task_transition(current: TaskStatus, target: TaskStatus) -> None:
    """Validate a task state transition. Raises ValueError if invalid."""
    allowed = VALID_TASK_TRANSITIONS.get(current)
    if allowed is None:
        raise ValueError(f"Unknown state: {current}")
    if target not in allowed:
        raise ValueError(
            f"Invalid transition: {current} -> {target}. "
            f"Valid targets from {current}: {sorted(allowed)}"
        )


def map_decision(status: ReviewStatus) -> tuple[AnnotationReviewStatus, TaskStatus]:
    """Return the (annotation review status, task status) image of a decision."""
    try:
        return DECISION_MAPPING[status]
    except KeyError:
        raise ValueError(f"Not a review decision: {status}") from None


def validate_review_transition(current: ReviewStatus, target: ReviewStatus) -> None:
    """Only pending reviews may change; decided reviews are immutable."""
    if current != ReviewStatus.PENDING:
        raise ValueError(
            f"Invalid transition: {current} -> {target}. Decided reviews are immutable."
        )
