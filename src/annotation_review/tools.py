"""MCP tool definitions for the annotation review engine."""

from __future__ import annotations

import logging

from fastmcp import Context

from annotation_review import decisions, lifecycle, queries
from annotation_review import settings as review_settings
from annotation_review.allocator import get_eligible_reviewers as _eligible_reviewers
from annotation_review.db import AppContext, load_annotation, load_review
from annotation_review.errors import ErrorKind, PermissionDenied, WorkflowError
from annotation_review.models import Capability
from annotation_review.server import caller_tag, mcp

logger = logging.getLogger("annotation_review")


def mcp_tool(*args, **kwargs):
    """FastMCP tool decorator with legacy `.fn` compatibility for tests/internal calls."""
    raw_tool = mcp.tool

    # Bare decorator usage: @mcp_tool
    if args and callable(args[0]) and len(args) == 1 and not kwargs:
        fn = args[0]
        registered = raw_tool(fn)
        if not hasattr(registered, "fn"):
            registered.fn = registered
        return registered

    decorator = raw_tool(*args, **kwargs)

    def _decorate(fn):
        registered = decorator(fn)
        if not hasattr(registered, "fn"):
            registered.fn = registered
        return registered

    return _decorate


def _app_ctx(ctx: Context) -> AppContext:
    """Resolve the engine AppContext from a FastMCP Context, across versions."""
    if ctx is None:
        raise RuntimeError("Missing MCP context")
    if hasattr(ctx, "lifespan_context"):
        return ctx.lifespan_context
    rc = getattr(ctx, "request_context", None)
    if rc is not None and hasattr(rc, "lifespan_context"):
        return rc.lifespan_context
    fm = getattr(ctx, "fastmcp", None)
    if fm is not None and hasattr(fm, "_lifespan_result"):
        return fm._lifespan_result
    raise RuntimeError("Unable to resolve engine lifespan context")


def _clip(text: str, limit: int = 80) -> str:
    return text if len(text) <= limit else text[: limit - 3] + "..."


def _error_result(tool_name: str, exc: Exception) -> dict:
    if isinstance(exc, WorkflowError):
        logger.info("%s -> %s: %s", tool_name, exc.kind, _clip(exc.message))
        return exc.to_result()
    logger.exception("%s -> unexpected error: %s", tool_name, exc)
    return {"error": f"{tool_name} failed: {exc}", "kind": str(ErrorKind.INTERNAL)}


def _user_tag(user_id: int) -> str:
    return f"user-{user_id}"


async def _require_member(app: AppContext, project_id: int, user_id: int) -> None:
    if not await app.permissions.is_project_member(project_id, user_id):
        raise PermissionDenied("You are not a member of this project")


async def _require_review_visibility(
    app: AppContext,
    project_id: int,
    user_id: int,
    *,
    annotator_id: int | None = None,
    reviewer_id: int | None = None,
) -> None:
    """Annotators and reviewers see their own work; everyone else needs view_reviews."""
    if user_id in (annotator_id, reviewer_id):
        return
    if not await app.permissions.has_permission(project_id, user_id, Capability.VIEW_REVIEWS):
        raise PermissionDenied("You do not have permission to view reviews")


# ---- Workflow transitions ----


@mcp_tool
async def complete_annotation(
    annotation_id: int,
    user_id: int,
    ctx: Context = None,
) -> dict:
    """Submit a finished annotation for review, or auto-approve it.

    Only the annotator may complete their annotation. The project's review
    settings decide the outcome:

    - auto-approve: the task is completed and an approved, auto-approved
      review is recorded.
    - review-required: the task moves to in_review and, when auto-assign is
      on, a pending review is opened for the least-loaded eligible reviewer.

    Returns requires_review, assigned_reviewer and the review (if any).
    Failures come back as {"error", "kind"} with kind one of validation,
    permission, not_found, state_conflict, no_eligible_reviewers, internal.
    """
    caller_tag.set(_user_tag(user_id))
    app = _app_ctx(ctx)
    try:
        result = await lifecycle.complete_annotation(app, annotation_id, user_id)
    except Exception as exc:
        return _error_result("complete_annotation", exc)
    return result.model_dump(mode="json")


@mcp_tool
async def create_review(
    project_id: int,
    annotation_id: int,
    reviewer_id: int,
    status: str,
    message: str | None = None,
    ctx: Context = None,
) -> dict:
    """Record a review decision on an annotation.

    status is one of approved, rejected, changes_requested, or pending to
    claim the annotation without deciding yet. rejected and
    changes_requested require a non-empty message.

    A reviewer holding the annotation's pending round decides that round;
    otherwise a new round is opened. Decisions update the annotation and
    task in the same transaction.
    """
    caller_tag.set(_user_tag(reviewer_id))
    app = _app_ctx(ctx)
    try:
        review = await decisions.create_review(
            app, project_id, annotation_id, reviewer_id, status, message
        )
    except Exception as exc:
        return _error_result("create_review", exc)
    return review.model_dump(mode="json")


@mcp_tool
async def update_review(
    review_id: str,
    reviewer_id: int,
    status: str | None = None,
    message: str | None = None,
    ctx: Context = None,
) -> dict:
    """Amend the status and/or message of your own pending review.

    Decided reviews cannot be changed; the annotation needs another round.
    """
    caller_tag.set(_user_tag(reviewer_id))
    app = _app_ctx(ctx)
    patch: dict = {}
    if status is not None:
        patch["status"] = status
    if message is not None:
        patch["message"] = message
    try:
        review = await decisions.update_review(app, review_id, reviewer_id, patch)
    except Exception as exc:
        return _error_result("update_review", exc)
    return review.model_dump(mode="json")


# ---- Reviewer allocation and settings ----


@mcp_tool
async def get_eligible_reviewers(
    project_id: int,
    user_id: int,
    exclude_user_id: int | None = None,
    ctx: Context = None,
) -> dict:
    """List project members who may review, with their pending workload."""
    caller_tag.set(_user_tag(user_id))
    app = _app_ctx(ctx)
    try:
        await _require_member(app, project_id, user_id)
        async with app.connect() as db:
            reviewers = await _eligible_reviewers(db, app.permissions, project_id, exclude_user_id)
    except Exception as exc:
        return _error_result("get_eligible_reviewers", exc)
    return {
        "project_id": project_id,
        "reviewers": [reviewer.model_dump(mode="json") for reviewer in reviewers],
        "count": len(reviewers),
    }


@mcp_tool
async def get_project_review_settings(
    project_id: int,
    user_id: int,
    ctx: Context = None,
) -> dict:
    """Return review settings and the workflow mode that applies to the caller."""
    caller_tag.set(_user_tag(user_id))
    app = _app_ctx(ctx)
    try:
        view = await review_settings.get_project_review_settings(app, project_id, user_id)
    except Exception as exc:
        return _error_result("get_project_review_settings", exc)
    return view.model_dump(mode="json")


@mcp_tool
async def update_project_review_settings(
    project_id: int,
    user_id: int,
    review_mode: str | None = None,
    allow_self_review: bool | None = None,
    auto_assign_reviewer: bool | None = None,
    ctx: Context = None,
) -> dict:
    """Partially update review settings. Requires the edit_project capability.

    review_mode is one of auto, always-required, always-skip.
    """
    caller_tag.set(_user_tag(user_id))
    app = _app_ctx(ctx)
    patch = {
        "review_mode": review_mode,
        "allow_self_review": allow_self_review,
        "auto_assign_reviewer": auto_assign_reviewer,
    }
    try:
        updated = await review_settings.update_project_review_settings(
            app, project_id, patch, user_id
        )
    except Exception as exc:
        return _error_result("update_project_review_settings", exc)
    return {"project_id": project_id, **updated.model_dump(mode="json")}


# ---- Review listings ----


@mcp_tool
async def get_review(
    review_id: str,
    user_id: int,
    ctx: Context = None,
) -> dict:
    """Fetch one review. Visible to its reviewer and to members with view_reviews."""
    caller_tag.set(_user_tag(user_id))
    app = _app_ctx(ctx)
    try:
        async with app.connect() as db:
            review = await load_review(db, review_id)
            annotation = await load_annotation(db, review.annotation_id)
        await _require_review_visibility(
            app,
            review.project_id,
            user_id,
            annotator_id=annotation.user_id,
            reviewer_id=review.reviewer_id,
        )
    except Exception as exc:
        return _error_result("get_review", exc)
    return review.model_dump(mode="json")


@mcp_tool
async def list_annotation_reviews(
    project_id: int,
    annotation_id: int,
    user_id: int,
    ctx: Context = None,
) -> dict:
    """List every review round of an annotation, newest round first."""
    caller_tag.set(_user_tag(user_id))
    app = _app_ctx(ctx)
    try:
        async with app.connect() as db:
            annotation = await load_annotation(db, annotation_id, project_id)
        await _require_review_visibility(
            app, project_id, user_id, annotator_id=annotation.user_id
        )
        reviews = await queries.list_annotation_reviews(app, annotation_id)
    except Exception as exc:
        return _error_result("list_annotation_reviews", exc)
    return {
        "annotation_id": annotation_id,
        "reviews": [review.model_dump(mode="json") for review in reviews],
    }


@mcp_tool
async def list_project_reviews(
    project_id: int,
    user_id: int,
    status: str | None = None,
    reviewer_id: int | None = None,
    page: int = 1,
    limit: int | None = None,
    ctx: Context = None,
) -> dict:
    """Page through a project's reviews, newest first. Requires view_reviews."""
    caller_tag.set(_user_tag(user_id))
    app = _app_ctx(ctx)
    try:
        await _require_review_visibility(app, project_id, user_id)
        result = await queries.list_project_reviews(
            app, project_id, status=status, reviewer_id=reviewer_id, page=page, limit=limit
        )
    except Exception as exc:
        return _error_result("list_project_reviews", exc)
    return result.model_dump(mode="json")


@mcp_tool
async def list_assigned_reviews(
    user_id: int,
    project_id: int | None = None,
    ctx: Context = None,
) -> dict:
    """List the caller's pending reviews, optionally within one project."""
    caller_tag.set(_user_tag(user_id))
    app = _app_ctx(ctx)
    try:
        if project_id is not None:
            await _require_member(app, project_id, user_id)
        reviews = await queries.list_assigned_reviews(app, user_id, project_id)
    except Exception as exc:
        return _error_result("list_assigned_reviews", exc)
    return {
        "reviews": [review.model_dump(mode="json") for review in reviews],
        "count": len(reviews),
    }


@mcp_tool
async def get_audit_log(
    annotation_id: int,
    user_id: int,
    ctx: Context = None,
) -> dict:
    """Return the transition history of one annotation in order."""
    caller_tag.set(_user_tag(user_id))
    app = _app_ctx(ctx)
    try:
        async with app.connect() as db:
            annotation = await load_annotation(db, annotation_id)
        await _require_review_visibility(
            app, annotation.project_id, user_id, annotator_id=annotation.user_id
        )
        events = await queries.get_audit_log(app, annotation_id)
    except Exception as exc:
        return _error_result("get_audit_log", exc)
    return {"annotation_id": annotation_id, "events": events, "count": len(events)}
