"""Reviewer-initiated transitions: creating and amending review decisions."""

from __future__ import annotations

import logging
import uuid
from typing import Any

import aiosqlite
from pydantic import ValidationError

from annotation_review.audit import record_event
from annotation_review.db import (
    AppContext,
    find_pending_review,
    insert_review,
    load_annotation,
    load_project_settings,
    load_review,
    load_task,
    next_review_round,
    set_annotation_review_status,
    set_task_status,
)
from annotation_review.errors import (
    AlreadyFinalized,
    InvalidInput,
    NotReadyForReview,
    PermissionDenied,
    ReviewInProgress,
)
from annotation_review.models import (
    DECISION_STATUSES,
    MESSAGE_REQUIRED_STATUSES,
    Annotation,
    AuditEventType,
    Capability,
    Review,
    ReviewEligibility,
    ReviewPatch,
    ReviewStatus,
    Task,
)
from annotation_review.state_machine import (
    FINALIZED_ANNOTATION_STATES,
    REVIEWABLE_TASK_STATES,
    map_decision,
    validate_review_transition,
    validate_task_transition,
)

logger = logging.getLogger("annotation_review")


def _parse_status(status: str | ReviewStatus) -> ReviewStatus:
    try:
        return ReviewStatus(status)
    except ValueError:
        allowed = ", ".join(s.value for s in ReviewStatus)
        raise InvalidInput(f"Status must be one of: {allowed}", field="status") from None


def _normalize_message(message: str | None) -> str | None:
    if message is None:
        return None
    stripped = message.strip()
    return stripped if stripped else None


def _check_message(app: AppContext, status: ReviewStatus, message: str | None) -> None:
    if status in MESSAGE_REQUIRED_STATUSES and message is None:
        raise InvalidInput(
            "Message is required when rejecting or requesting changes",
            field="message",
        )
    limit = app.config.message_max_length
    if message is not None and len(message) > limit:
        raise InvalidInput(f"Message cannot exceed {limit} characters", field="message")


async def can_user_review(
    app: AppContext,
    db: aiosqlite.Connection,
    project_id: int,
    reviewer_id: int,
    annotator_id: int,
) -> ReviewEligibility:
    """Check self-review rules, membership, and the review capability."""
    settings = await load_project_settings(db, project_id)
    if reviewer_id == annotator_id and not settings.allow_self_review:
        return ReviewEligibility(
            can_review=False, reason="Self-review is not allowed for this project"
        )
    if not await app.permissions.is_project_member(project_id, reviewer_id):
        return ReviewEligibility(can_review=False, reason="User is not a member of this project")
    if not await app.permissions.has_permission(
        project_id, reviewer_id, Capability.REVIEW_ANNOTATIONS
    ):
        return ReviewEligibility(
            can_review=False,
            reason="User does not have permission to review annotations",
        )
    return ReviewEligibility(can_review=True)


async def _apply_decision(
    db: aiosqlite.Connection,
    annotation: Annotation,
    task: Task,
    status: ReviewStatus,
) -> None:
    """Propagate a decision to the annotation and task of the same transaction."""
    annotation_status, task_status = map_decision(status)
    try:
        validate_task_transition(task.status, task_status)
    except ValueError as exc:
        raise NotReadyForReview(str(exc), current_status=str(task.status)) from exc
    await set_annotation_review_status(db, annotation.id, annotation_status)
    await set_task_status(db, task.id, task_status)


async def create_review(
    app: AppContext,
    project_id: int,
    annotation_id: int,
    reviewer_id: int,
    status: str | ReviewStatus,
    message: str | None = None,
) -> Review:
    """Record a reviewer's decision (or claim) on an annotation.

    A decision (approved, rejected, changes_requested) is written together
    with its image on the annotation and task. ``pending`` records a claim:
    it opens a round for the reviewer without touching annotation or task.

    When the caller already owns the annotation's pending round (it was
    assigned to them on completion) the decision resolves that round in
    place. A pending round owned by someone else is a ReviewInProgress
    conflict, and so is losing a race to the pending-review unique index.
    """
    decision = _parse_status(status)
    normalized = _normalize_message(message)
    _check_message(app, decision, normalized)

    if not await app.permissions.has_permission(
        project_id, reviewer_id, Capability.REVIEW_ANNOTATIONS
    ):
        raise PermissionDenied("You do not have permission to review annotations")

    async with app.transaction() as db:
        annotation = await load_annotation(db, annotation_id, project_id)
        if annotation.review_status in FINALIZED_ANNOTATION_STATES:
            raise AlreadyFinalized(
                "This annotation is already finalized. "
                "Rejected annotations require re-submission.",
                current_status=str(annotation.review_status),
            )
        task = await load_task(db, annotation.task_id)
        if task.status not in REVIEWABLE_TASK_STATES:
            raise NotReadyForReview(
                "This annotation is not ready for review. "
                "Task must be in 'in_review' or 'changes_needed' state.",
                current_status=str(task.status),
            )
        pending = await find_pending_review(db, annotation_id)
        owns_pending = pending is not None and pending.reviewer_id == reviewer_id
        if pending is not None and not (owns_pending and decision in DECISION_STATUSES):
            raise ReviewInProgress(
                "A pending review already exists for this annotation",
                existing_review_id=pending.id,
            )
        if (
            annotation.assigned_reviewer_id is not None
            and annotation.assigned_reviewer_id != reviewer_id
        ):
            raise PermissionDenied("This annotation is assigned to another reviewer")
        eligibility = await can_user_review(
            app, db, project_id, reviewer_id, annotation.user_id
        )
        if not eligibility.can_review:
            raise PermissionDenied(eligibility.reason or "Cannot review this annotation")

        if pending is not None:
            await db.execute(
                """UPDATE reviews SET status = ?, message = ?, updated_at = datetime('now')
                   WHERE id = ?""",
                (str(decision), normalized, pending.id),
            )
            review = await load_review(db, pending.id)
        else:
            review = await insert_review(
                db,
                Review(
                    id=str(uuid.uuid4()),
                    annotation_id=annotation_id,
                    task_id=task.id,
                    project_id=project_id,
                    reviewer_id=reviewer_id,
                    status=decision,
                    message=normalized,
                    review_round=await next_review_round(db, annotation_id),
                ),
            )
        if decision in DECISION_STATUSES:
            await _apply_decision(db, annotation, task, decision)
        await record_event(
            db,
            AuditEventType.REVIEW_DECIDED if pending is not None else AuditEventType.REVIEW_CREATED,
            annotation_id=annotation_id,
            review_id=review.id,
            project_id=project_id,
            actor=reviewer_id,
            old_status=str(pending.status) if pending is not None else None,
            new_status=str(decision),
            metadata={"review_round": review.review_round, "task_status": str(task.status)},
        )

    logger.info(
        "create_review -> %s %s by %s (round=%s)",
        annotation_id,
        decision.upper() if decision in DECISION_STATUSES else "claimed",
        reviewer_id,
        review.review_round,
    )
    return review


async def update_review(
    app: AppContext,
    review_id: str,
    reviewer_id: int,
    patch: ReviewPatch | dict[str, Any],
) -> Review:
    """Amend a pending review owned by the caller.

    Decided reviews are immutable; a changed decision needs a new round.
    A status change propagates to annotation and task atomically, while a
    message-only edit touches only the review row.
    """
    if not isinstance(patch, ReviewPatch):
        try:
            patch = ReviewPatch.model_validate(patch)
        except ValidationError as exc:
            details = [
                {"field": ".".join(str(part) for part in err["loc"]), "message": err["msg"]}
                for err in exc.errors()
            ]
            raise InvalidInput("Validation failed", details=details) from exc
    if patch.status is None and patch.message is None:
        raise InvalidInput("Nothing to update: provide status and/or message")

    async with app.transaction() as db:
        review = await load_review(db, review_id)
        if review.reviewer_id != reviewer_id:
            raise PermissionDenied("You can only update your own reviews")
        if not await app.permissions.has_permission(
            review.project_id, reviewer_id, Capability.REVIEW_ANNOTATIONS
        ):
            raise PermissionDenied("You do not have permission to update reviews")
        new_status = patch.status if patch.status is not None else review.status
        try:
            validate_review_transition(review.status, new_status)
        except ValueError as exc:
            raise AlreadyFinalized(
                "Cannot update a finalized review. "
                "The annotation must go through another review round.",
                current_status=str(review.status),
            ) from exc
        new_message = patch.message if patch.message is not None else review.message
        _check_message(app, new_status, new_message)

        status_changed = new_status != review.status
        if status_changed:
            annotation = await load_annotation(db, review.annotation_id)
            task = await load_task(db, review.task_id)
            await _apply_decision(db, annotation, task, new_status)
        await db.execute(
            """UPDATE reviews SET status = ?, message = ?, updated_at = datetime('now')
               WHERE id = ?""",
            (str(new_status), new_message, review_id),
        )
        await record_event(
            db,
            AuditEventType.REVIEW_UPDATED,
            annotation_id=review.annotation_id,
            review_id=review_id,
            project_id=review.project_id,
            actor=reviewer_id,
            old_status=str(review.status),
            new_status=str(new_status),
            metadata={"message_changed": patch.message is not None},
        )
        updated = await load_review(db, review_id)

    logger.info(
        "update_review -> %s %s by %s",
        review_id[:8],
        new_status.upper() if status_changed else "message_edited",
        reviewer_id,
    )
    return updated
