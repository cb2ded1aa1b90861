"""Workflow policy: decide whether a submission is auto-approved or reviewed."""

from __future__ import annotations

import logging

import aiosqlite

from annotation_review.allocator import get_eligible_reviewers, select_reviewer_by_workload
from annotation_review.db import load_project_settings
from annotation_review.errors import NoEligibleReviewers
from annotation_review.models import (
    CurrentWorkflowMode,
    ReviewMode,
    WorkflowMode,
    WorkflowResult,
)
from annotation_review.permissions import PermissionOracle

logger = logging.getLogger("annotation_review")


async def determine_workflow_mode(
    db: aiosqlite.Connection,
    permissions: PermissionOracle,
    project_id: int,
    annotator_id: int,
) -> WorkflowResult:
    """Determine the workflow mode for an annotation submission.

    1. always-skip -> auto-approve, without looking up reviewers.
    2. Eligible reviewers exclude the annotator unless self review is allowed.
    3. always-required -> review-required, or NoEligibleReviewers when nobody
       qualifies. This branch never degrades to auto-approve.
    4. auto -> auto-approve when nobody qualifies, review-required otherwise.

    When review is required and auto_assign_reviewer is on, the least-loaded
    reviewer is attached to the result.
    """
    settings = await load_project_settings(db, project_id)

    if settings.review_mode == ReviewMode.ALWAYS_SKIP:
        return WorkflowResult(mode=WorkflowMode.AUTO_APPROVE)

    exclude_user_id = None if settings.allow_self_review else annotator_id
    eligible = await get_eligible_reviewers(db, permissions, project_id, exclude_user_id)

    if not eligible:
        if settings.review_mode == ReviewMode.ALWAYS_REQUIRED:
            raise NoEligibleReviewers(
                "Review is required but no eligible reviewers are available for this "
                "project. Assign a member with the review_annotations capability or "
                "change the review settings.",
                project_id=project_id,
            )
        return WorkflowResult(mode=WorkflowMode.AUTO_APPROVE)

    result = WorkflowResult(mode=WorkflowMode.REVIEW_REQUIRED)
    if settings.auto_assign_reviewer:
        result.assigned_reviewer = select_reviewer_by_workload(eligible)
    return result


async def resolve_current_workflow_mode(
    db: aiosqlite.Connection,
    permissions: PermissionOracle,
    project_id: int,
    user_id: int,
) -> CurrentWorkflowMode:
    """Display-only workflow mode for settings screens.

    Must not be used to complete an annotation: a missing reviewer in
    always-required mode is reported as a sentinel instead of an error.
    """
    try:
        result = await determine_workflow_mode(db, permissions, project_id, user_id)
    except NoEligibleReviewers:
        logger.info("workflow mode -> project %s has no eligible reviewers", project_id)
        return CurrentWorkflowMode.NO_ELIGIBLE_REVIEWERS
    return CurrentWorkflowMode(str(result.mode))
