"""Tests for review decisions, claims, and amendments."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from annotation_review.db import AppContext
from annotation_review.decisions import can_user_review, create_review, update_review
from annotation_review.errors import (
    AlreadyFinalized,
    InvalidInput,
    NotFound,
    NotReadyForReview,
    PermissionDenied,
    ReviewInProgress,
)
from annotation_review.lifecycle import complete_annotation
from annotation_review.models import ReviewPatch

if TYPE_CHECKING:
    from conftest import Seeder

ANNOTATOR = 10
REVIEWER = 20
OTHER_REVIEWER = 21


async def _submitted(seed: Seeder, app: AppContext, **project_settings) -> tuple[int, int, str]:
    """Project with one reviewer and an annotation awaiting that reviewer."""
    await seed.project(**project_settings)
    await seed.member(1, ANNOTATOR, upload_files=True)
    await seed.reviewer(1, REVIEWER)
    task_id, annotation_id = await seed.annotated_task(1, ANNOTATOR)
    result = await complete_annotation(app, annotation_id, ANNOTATOR)
    assert result.review is not None
    return task_id, annotation_id, result.review.id


async def _unassigned(seed: Seeder, **project_settings) -> tuple[int, int]:
    """Annotation in review with nobody assigned yet."""
    await seed.project(**project_settings)
    await seed.reviewer(1, REVIEWER)
    await seed.reviewer(1, OTHER_REVIEWER)
    return await seed.annotated_task(1, ANNOTATOR, task_status="in_review")


class TestDecideAssignedRound:
    async def test_approve_completes_task(self, app: AppContext, seed: Seeder) -> None:
        task_id, annotation_id, review_id = await _submitted(seed, app)

        review = await create_review(app, 1, annotation_id, REVIEWER, "approved")

        assert review.id == review_id
        assert review.status == "approved"
        assert review.review_round == 1
        assert await seed.task_status(task_id) == "completed"
        assert (await seed.annotation_row(annotation_id))["review_status"] == "approved"
        assert len(await seed.reviews_for(annotation_id)) == 1

    async def test_changes_requested_then_resubmission_opens_round_two(
        self, app: AppContext, seed: Seeder
    ) -> None:
        task_id, annotation_id, review_id = await _submitted(seed, app)

        review = await create_review(
            app, 1, annotation_id, REVIEWER, "changes_requested", "fix labels"
        )
        assert review.message == "fix labels"
        assert await seed.task_status(task_id) == "changes_needed"
        assert (await seed.annotation_row(annotation_id))["review_status"] == "pending"

        result = await complete_annotation(app, annotation_id, ANNOTATOR)

        assert result.requires_review is True
        assert result.review is not None
        assert result.review.review_round == 2
        assert await seed.task_status(task_id) == "in_review"
        rounds = [
            (r["review_round"], r["status"]) for r in await seed.reviews_for(annotation_id)
        ]
        assert rounds == [(1, "changes_requested"), (2, "pending")]

    async def test_reject_sends_task_back_and_finalizes(
        self, app: AppContext, seed: Seeder
    ) -> None:
        task_id, annotation_id, _ = await _submitted(seed, app)
        await create_review(app, 1, annotation_id, REVIEWER, "rejected", "wrong class")
        assert await seed.task_status(task_id) == "changes_needed"
        assert (await seed.annotation_row(annotation_id))["review_status"] == "rejected"

        with pytest.raises(AlreadyFinalized):
            await create_review(app, 1, annotation_id, REVIEWER, "approved")

    async def test_other_reviewer_cannot_take_pending_round(
        self, app: AppContext, seed: Seeder
    ) -> None:
        _, annotation_id, review_id = await _submitted(seed, app)
        await seed.reviewer(1, OTHER_REVIEWER)
        with pytest.raises(ReviewInProgress) as exc_info:
            await create_review(app, 1, annotation_id, OTHER_REVIEWER, "approved")
        assert exc_info.value.details["existing_review_id"] == review_id

    async def test_decision_event_recorded(self, app: AppContext, seed: Seeder) -> None:
        _, annotation_id, review_id = await _submitted(seed, app)
        await create_review(app, 1, annotation_id, REVIEWER, "approved")
        event = await seed.fetch_one(
            """SELECT event_type, review_id, old_status, new_status FROM audit_events
               ORDER BY id DESC LIMIT 1"""
        )
        assert event == {
            "event_type": "review_decided",
            "review_id": review_id,
            "old_status": "pending",
            "new_status": "approved",
        }


class TestClaims:
    async def test_pending_claim_leaves_task_untouched(
        self, app: AppContext, seed: Seeder
    ) -> None:
        task_id, annotation_id = await _unassigned(seed, auto_assign_reviewer=False)

        review = await create_review(app, 1, annotation_id, REVIEWER, "pending")

        assert review.status == "pending"
        assert review.review_round == 1
        assert await seed.task_status(task_id) == "in_review"
        assert (await seed.annotation_row(annotation_id))["review_status"] == "pending"

    async def test_claimer_decides_claimed_round(self, app: AppContext, seed: Seeder) -> None:
        task_id, annotation_id = await _unassigned(seed, auto_assign_reviewer=False)
        claim = await create_review(app, 1, annotation_id, REVIEWER, "pending")
        decided = await create_review(app, 1, annotation_id, REVIEWER, "approved")
        assert decided.id == claim.id
        assert await seed.task_status(task_id) == "completed"

    async def test_second_claim_conflicts(self, app: AppContext, seed: Seeder) -> None:
        _, annotation_id = await _unassigned(seed, auto_assign_reviewer=False)
        await create_review(app, 1, annotation_id, REVIEWER, "pending")
        with pytest.raises(ReviewInProgress):
            await create_review(app, 1, annotation_id, OTHER_REVIEWER, "pending")
        with pytest.raises(ReviewInProgress):
            await create_review(app, 1, annotation_id, REVIEWER, "pending")

    async def test_unassigned_direct_decision_opens_new_round(
        self, app: AppContext, seed: Seeder
    ) -> None:
        task_id, annotation_id = await _unassigned(seed, auto_assign_reviewer=False)
        review = await create_review(app, 1, annotation_id, OTHER_REVIEWER, "approved")
        assert review.review_round == 1
        assert await seed.task_status(task_id) == "completed"


class TestCreateReviewValidation:
    @pytest.mark.parametrize("status", ["rejected", "changes_requested"])
    @pytest.mark.parametrize("message", [None, "", "   "])
    async def test_negative_decisions_need_message(
        self, app: AppContext, seed: Seeder, status: str, message: str | None
    ) -> None:
        task_id, annotation_id, _ = await _submitted(seed, app)
        with pytest.raises(InvalidInput) as exc_info:
            await create_review(app, 1, annotation_id, REVIEWER, status, message)
        assert exc_info.value.details["field"] == "message"
        assert await seed.task_status(task_id) == "in_review"

    async def test_message_length_limit(self, app: AppContext, seed: Seeder) -> None:
        _, annotation_id, _ = await _submitted(seed, app)
        with pytest.raises(InvalidInput, match="2000"):
            await create_review(app, 1, annotation_id, REVIEWER, "rejected", "x" * 2001)

    async def test_message_is_trimmed(self, app: AppContext, seed: Seeder) -> None:
        _, annotation_id, _ = await _submitted(seed, app)
        review = await create_review(
            app, 1, annotation_id, REVIEWER, "changes_requested", "  tighten boxes \n"
        )
        assert review.message == "tighten boxes"

    async def test_unknown_status(self, app: AppContext, seed: Seeder) -> None:
        _, annotation_id, _ = await _submitted(seed, app)
        with pytest.raises(InvalidInput, match="Status must be one of"):
            await create_review(app, 1, annotation_id, REVIEWER, "maybe")

    async def test_reviewer_needs_capability(self, app: AppContext, seed: Seeder) -> None:
        _, annotation_id, _ = await _submitted(seed, app)
        await seed.member(1, 30, view_reviews=True)
        with pytest.raises(PermissionDenied):
            await create_review(app, 1, annotation_id, 30, "approved")

    async def test_annotation_must_belong_to_project(
        self, app: AppContext, seed: Seeder
    ) -> None:
        _, annotation_id, _ = await _submitted(seed, app)
        await seed.project(2)
        await seed.reviewer(2, REVIEWER)
        with pytest.raises(NotFound):
            await create_review(app, 2, annotation_id, REVIEWER, "approved")

    async def test_task_must_be_reviewable(self, app: AppContext, seed: Seeder) -> None:
        await seed.project()
        await seed.reviewer(1, REVIEWER)
        _, annotation_id = await seed.annotated_task(1, ANNOTATOR, task_status="annotating")
        with pytest.raises(NotReadyForReview) as exc_info:
            await create_review(app, 1, annotation_id, REVIEWER, "approved")
        assert exc_info.value.details["current_status"] == "annotating"

    async def test_assigned_to_someone_else(self, app: AppContext, seed: Seeder) -> None:
        _, annotation_id = await _unassigned(seed)
        await seed.execute(
            "UPDATE annotations SET assigned_reviewer_id = ? WHERE id = ?",
            (REVIEWER, annotation_id),
        )
        with pytest.raises(PermissionDenied, match="assigned to another reviewer"):
            await create_review(app, 1, annotation_id, OTHER_REVIEWER, "approved")

    async def test_self_review_blocked_by_default(self, app: AppContext, seed: Seeder) -> None:
        await seed.project(allow_self_review=False)
        await seed.reviewer(1, ANNOTATOR)
        _, annotation_id = await seed.annotated_task(1, ANNOTATOR, task_status="in_review")
        with pytest.raises(PermissionDenied, match="Self-review"):
            await create_review(app, 1, annotation_id, ANNOTATOR, "approved")

    async def test_self_review_when_allowed(self, app: AppContext, seed: Seeder) -> None:
        await seed.project(allow_self_review=True)
        await seed.reviewer(1, ANNOTATOR)
        task_id, annotation_id = await seed.annotated_task(
            1, ANNOTATOR, task_status="in_review"
        )
        await create_review(app, 1, annotation_id, ANNOTATOR, "approved")
        assert await seed.task_status(task_id) == "completed"


class TestCanUserReview:
    async def test_reasons(self, app: AppContext, seed: Seeder) -> None:
        await seed.project(allow_self_review=False)
        await seed.reviewer(1, REVIEWER)
        await seed.member(1, 30)
        async with app.connect() as db:
            assert (await can_user_review(app, db, 1, REVIEWER, ANNOTATOR)).can_review
            own = await can_user_review(app, db, 1, REVIEWER, REVIEWER)
            outsider = await can_user_review(app, db, 1, 99, ANNOTATOR)
            no_cap = await can_user_review(app, db, 1, 30, ANNOTATOR)
        assert not own.can_review and "Self-review" in (own.reason or "")
        assert not outsider.can_review and "not a member" in (outsider.reason or "")
        assert not no_cap.can_review and "permission" in (no_cap.reason or "")


class TestUpdateReview:
    async def test_message_edit_on_pending_review(self, app: AppContext, seed: Seeder) -> None:
        task_id, _, review_id = await _submitted(seed, app)
        review = await update_review(app, review_id, REVIEWER, {"message": " looking now "})
        assert review.status == "pending"
        assert review.message == "looking now"
        assert await seed.task_status(task_id) == "in_review"

    async def test_status_change_propagates(self, app: AppContext, seed: Seeder) -> None:
        task_id, annotation_id, review_id = await _submitted(seed, app)
        review = await update_review(
            app, review_id, REVIEWER, ReviewPatch(status="changes_requested", message="redo")
        )
        assert review.status == "changes_requested"
        assert await seed.task_status(task_id) == "changes_needed"
        assert (await seed.annotation_row(annotation_id))["review_status"] == "pending"

    async def test_decided_review_is_immutable(self, app: AppContext, seed: Seeder) -> None:
        task_id, annotation_id, review_id = await _submitted(seed, app)
        await create_review(app, 1, annotation_id, REVIEWER, "approved")
        with pytest.raises(AlreadyFinalized) as exc_info:
            await update_review(app, review_id, REVIEWER, {"message": "actually, no"})
        assert exc_info.value.details["current_status"] == "approved"
        assert await seed.task_status(task_id) == "completed"

    async def test_only_owner_may_update(self, app: AppContext, seed: Seeder) -> None:
        _, _, review_id = await _submitted(seed, app)
        await seed.reviewer(1, OTHER_REVIEWER)
        with pytest.raises(PermissionDenied, match="your own reviews"):
            await update_review(app, review_id, OTHER_REVIEWER, {"status": "approved"})

    async def test_empty_patch_rejected(self, app: AppContext, seed: Seeder) -> None:
        _, _, review_id = await _submitted(seed, app)
        with pytest.raises(InvalidInput, match="Nothing to update"):
            await update_review(app, review_id, REVIEWER, {})

    async def test_blank_message_rejected(self, app: AppContext, seed: Seeder) -> None:
        _, _, review_id = await _submitted(seed, app)
        with pytest.raises(InvalidInput) as exc_info:
            await update_review(app, review_id, REVIEWER, {"message": "   "})
        assert exc_info.value.details["details"][0]["field"] == "message"

    async def test_rejection_needs_message(self, app: AppContext, seed: Seeder) -> None:
        _, _, review_id = await _submitted(seed, app)
        with pytest.raises(InvalidInput, match="Message is required"):
            await update_review(app, review_id, REVIEWER, {"status": "rejected"})

    async def test_unknown_review(self, app: AppContext, seed: Seeder) -> None:
        await seed.project()
        with pytest.raises(NotFound):
            await update_review(app, "missing", REVIEWER, {"status": "approved"})
