"""Pydantic models and enums for the annotation review engine."""

from __future__ import annotations

from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field, field_validator


class TaskStatus(StrEnum):
    """Lifecycle states of a unit of work."""

    UNASSIGNED = "unassigned"
    ANNOTATING = "annotating"
    COMPLETED = "completed"
    IN_REVIEW = "in_review"
    CHANGES_NEEDED = "changes_needed"


class AnnotationReviewStatus(StrEnum):
    """Review status of the annotation itself (not of a review decision).

    'pending' covers both "awaiting review" and "awaiting re-submission after
    changes were requested".
    """

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class ReviewStatus(StrEnum):
    """Status of one review round."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    CHANGES_REQUESTED = "changes_requested"


DECISION_STATUSES: frozenset[ReviewStatus] = frozenset(
    {ReviewStatus.APPROVED, ReviewStatus.REJECTED, ReviewStatus.CHANGES_REQUESTED}
)
MESSAGE_REQUIRED_STATUSES: frozenset[ReviewStatus] = frozenset(
    {ReviewStatus.REJECTED, ReviewStatus.CHANGES_REQUESTED}
)


class ReviewMode(StrEnum):
    """Per-project review policy."""

    AUTO = "auto"
    ALWAYS_REQUIRED = "always-required"
    ALWAYS_SKIP = "always-skip"


class WorkflowMode(StrEnum):
    """Resolved policy outcome for one submission."""

    AUTO_APPROVE = "auto-approve"
    REVIEW_REQUIRED = "review-required"


class CurrentWorkflowMode(StrEnum):
    """Display-only workflow mode, including the informational sentinel."""

    AUTO_APPROVE = "auto-approve"
    REVIEW_REQUIRED = "review-required"
    NO_ELIGIBLE_REVIEWERS = "no-eligible-reviewers"


class Capability(StrEnum):
    """Project-level capability names understood by the permission oracle."""

    ADMIN = "admin"
    EDIT_PROJECT = "edit_project"
    DELETE_PROJECT = "delete_project"
    EDIT_MEMBERS = "edit_members"
    EDIT_ROLES = "edit_roles"
    UPLOAD_FILES = "upload_files"
    REVIEW_ANNOTATIONS = "review_annotations"
    VIEW_REVIEWS = "view_reviews"


class AuditEventType(StrEnum):
    """Audit event types for the append-only audit_events table."""

    ANNOTATION_COMPLETED = "annotation_completed"
    REVIEW_AUTO_APPROVED = "review_auto_approved"
    REVIEW_ASSIGNED = "review_assigned"
    REVIEW_CREATED = "review_created"
    REVIEW_DECIDED = "review_decided"
    REVIEW_UPDATED = "review_updated"
    SETTINGS_UPDATED = "settings_updated"


class Task(BaseModel):
    """A unit of work requiring annotation."""

    id: int
    project_id: int
    status: TaskStatus
    assigned_to: int | None = None
    priority: int = 0


class Annotation(BaseModel):
    """One annotator's submitted labeling for a task."""

    id: int
    task_id: int
    project_id: int
    user_id: int
    annotation_data: Any = None
    is_ground_truth: bool = False
    review_status: AnnotationReviewStatus = AnnotationReviewStatus.PENDING
    assigned_reviewer_id: int | None = Field(
        default=None,
        description="Reviewer assigned to act; not the historical reviewer",
    )


class Review(BaseModel):
    """One review round on an annotation."""

    id: str
    annotation_id: int
    task_id: int
    project_id: int
    reviewer_id: int = Field(description="Who performed or will perform the review")
    status: ReviewStatus = ReviewStatus.PENDING
    message: str | None = None
    is_auto_approved: bool = False
    review_round: int = Field(default=1, ge=1)
    created_at: str | None = None
    updated_at: str | None = None


class ProjectReviewSettings(BaseModel):
    """Review configuration stored on the project record."""

    review_mode: ReviewMode = ReviewMode.AUTO
    allow_self_review: bool = False
    auto_assign_reviewer: bool = True


class ProjectReviewSettingsView(ProjectReviewSettings):
    """Settings plus the workflow mode a given member would currently get."""

    project_id: int
    current_workflow_mode: CurrentWorkflowMode


class SettingsPatch(BaseModel):
    """Partial update of project review settings."""

    review_mode: ReviewMode | None = None
    allow_self_review: bool | None = None
    auto_assign_reviewer: bool | None = None

    def changes(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)


class ReviewPatch(BaseModel):
    """Partial update of a pending review."""

    status: ReviewStatus | None = None
    message: str | None = None

    @field_validator("message")
    @classmethod
    def _strip_message(cls, value: str | None) -> str | None:
        if value is None:
            return None
        stripped = value.strip()
        if not stripped:
            raise ValueError("Message cannot be empty")
        return stripped


class EligibleReviewer(BaseModel):
    """A project member allowed to review, with their project-scoped workload."""

    user_id: int
    pending_review_count: int = 0


class WorkflowResult(BaseModel):
    """Outcome of the workflow policy for one submission."""

    mode: WorkflowMode
    assigned_reviewer: int | None = None


class CompletionResult(BaseModel):
    """Result of completing an annotation."""

    requires_review: bool
    assigned_reviewer: int | None = None
    review: Review | None = None


class ReviewEligibility(BaseModel):
    """Whether a user may review a given annotator's work, and why not."""

    can_review: bool
    reason: str | None = None


class ReviewPage(BaseModel):
    """One page of a project's reviews."""

    reviews: list[Review]
    total: int
    page: int
    limit: int
