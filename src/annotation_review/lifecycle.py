"""Annotation completion: the annotator-side entry into the review workflow."""

from __future__ import annotations

import logging
import uuid

from annotation_review.audit import record_event
from annotation_review.db import (
    AppContext,
    find_pending_review,
    insert_review,
    load_annotation,
    load_task,
    next_review_round,
    set_task_status,
)
from annotation_review.errors import (
    AlreadyCompleted,
    InvalidTaskState,
    PermissionDenied,
    ReviewInProgress,
)
from annotation_review.models import (
    AnnotationReviewStatus,
    AuditEventType,
    CompletionResult,
    Review,
    ReviewStatus,
    TaskStatus,
    WorkflowMode,
)
from annotation_review.policy import determine_workflow_mode
from annotation_review.state_machine import COMPLETABLE_TASK_STATES, validate_task_transition

logger = logging.getLogger("annotation_review")


async def complete_annotation(
    app: AppContext,
    annotation_id: int,
    user_id: int,
) -> CompletionResult:
    """Submit a finished annotation and advance its task.

    Preconditions are checked inside the same BEGIN IMMEDIATE transaction that
    performs the writes, and all of them run before the first write:

    - the caller is the annotator,
    - the annotation is still pending (not approved or rejected),
    - the task is annotating or changes_needed,
    - no review round is currently pending.

    Auto-approve completes the task and records an approved, auto-approved
    review authored by the annotator. Review-required moves the task to
    in_review and, when a reviewer was resolved, opens a pending round for
    them. Without a reviewer no review row is created and the annotation
    waits to be claimed.
    """
    async with app.transaction() as db:
        annotation = await load_annotation(db, annotation_id)
        if annotation.user_id != user_id:
            raise PermissionDenied(
                "Only the annotator can complete this annotation",
                annotation_id=annotation_id,
            )
        if annotation.review_status != AnnotationReviewStatus.PENDING:
            raise AlreadyCompleted(
                f"Annotation {annotation_id} is already {annotation.review_status}",
                current_status=str(annotation.review_status),
            )

        task = await load_task(db, annotation.task_id)
        if task.status == TaskStatus.IN_REVIEW:
            raise AlreadyCompleted(
                f"Annotation {annotation_id} was already submitted and is awaiting review",
                current_status=str(task.status),
            )
        if task.status not in COMPLETABLE_TASK_STATES:
            raise InvalidTaskState(
                f"Task {task.id} cannot be completed from '{task.status}'",
                current_status=str(task.status),
            )

        pending = await find_pending_review(db, annotation_id)
        if pending is not None:
            raise ReviewInProgress(
                "A pending review already exists for this annotation",
                existing_review_id=pending.id,
            )

        review_round = await next_review_round(db, annotation_id)
        workflow = await determine_workflow_mode(
            db, app.permissions, annotation.project_id, user_id
        )

        if workflow.mode == WorkflowMode.AUTO_APPROVE:
            target_task = TaskStatus.COMPLETED
            target_annotation = AnnotationReviewStatus.APPROVED
            assigned_reviewer = None
        else:
            target_task = TaskStatus.IN_REVIEW
            target_annotation = AnnotationReviewStatus.PENDING
            assigned_reviewer = workflow.assigned_reviewer
        try:
            validate_task_transition(task.status, target_task)
        except ValueError as exc:
            raise InvalidTaskState(str(exc), current_status=str(task.status)) from exc

        await set_task_status(db, task.id, target_task)
        await db.execute(
            """UPDATE annotations
               SET review_status = ?, assigned_reviewer_id = ?, updated_at = datetime('now')
               WHERE id = ?""",
            (str(target_annotation), assigned_reviewer, annotation_id),
        )
        await record_event(
            db,
            AuditEventType.ANNOTATION_COMPLETED,
            annotation_id=annotation_id,
            project_id=annotation.project_id,
            actor=user_id,
            old_status=str(task.status),
            new_status=str(target_task),
            metadata={"workflow_mode": str(workflow.mode), "review_round": review_round},
        )

        review: Review | None = None
        if workflow.mode == WorkflowMode.AUTO_APPROVE:
            review = await insert_review(
                db,
                Review(
                    id=str(uuid.uuid4()),
                    annotation_id=annotation_id,
                    task_id=task.id,
                    project_id=annotation.project_id,
                    reviewer_id=user_id,
                    status=ReviewStatus.APPROVED,
                    is_auto_approved=True,
                    review_round=review_round,
                ),
            )
            await record_event(
                db,
                AuditEventType.REVIEW_AUTO_APPROVED,
                annotation_id=annotation_id,
                review_id=review.id,
                project_id=annotation.project_id,
                actor=user_id,
                new_status=str(ReviewStatus.APPROVED),
            )
        elif assigned_reviewer is not None:
            review = await insert_review(
                db,
                Review(
                    id=str(uuid.uuid4()),
                    annotation_id=annotation_id,
                    task_id=task.id,
                    project_id=annotation.project_id,
                    reviewer_id=assigned_reviewer,
                    status=ReviewStatus.PENDING,
                    review_round=review_round,
                ),
            )
            await record_event(
                db,
                AuditEventType.REVIEW_ASSIGNED,
                annotation_id=annotation_id,
                review_id=review.id,
                project_id=annotation.project_id,
                actor=user_id,
                new_status=str(ReviewStatus.PENDING),
                metadata={"reviewer_id": assigned_reviewer},
            )

    if workflow.mode == WorkflowMode.AUTO_APPROVE:
        logger.info(
            "complete_annotation -> %s auto_approved (round=%s)", annotation_id, review_round
        )
    else:
        logger.info(
            "complete_annotation -> %s review_required (reviewer=%s, round=%s)",
            annotation_id,
            assigned_reviewer if assigned_reviewer is not None else "unassigned",
            review_round,
        )
    return CompletionResult(
        requires_review=workflow.mode == WorkflowMode.REVIEW_REQUIRED,
        assigned_reviewer=assigned_reviewer,
        review=review,
    )
