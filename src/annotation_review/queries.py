"""Read-only review listings and the transition audit log."""

from __future__ import annotations

import json

from annotation_review.db import AppContext, load_annotation, load_review, review_from_row
from annotation_review.errors import InvalidInput
from annotation_review.models import Review, ReviewPage, ReviewStatus


async def get_review(app: AppContext, review_id: str) -> Review:
    async with app.connect() as db:
        return await load_review(db, review_id)


async def list_annotation_reviews(app: AppContext, annotation_id: int) -> list[Review]:
    """All review rounds of an annotation, newest round first."""
    async with app.connect() as db:
        await load_annotation(db, annotation_id)
        cursor = await db.execute(
            "SELECT * FROM reviews WHERE annotation_id = ? ORDER BY review_round DESC",
            (annotation_id,),
        )
        rows = await cursor.fetchall()
    return [review_from_row(row) for row in rows]


async def list_project_reviews(
    app: AppContext,
    project_id: int,
    status: str | None = None,
    reviewer_id: int | None = None,
    page: int = 1,
    limit: int | None = None,
) -> ReviewPage:
    """Paginated project reviews, newest first, optionally filtered."""
    if limit is None:
        limit = app.config.default_page_size
    if page < 1:
        raise InvalidInput("page must be at least 1", field="page")
    if limit < 1 or limit > app.config.max_page_size:
        raise InvalidInput(
            f"limit must be between 1 and {app.config.max_page_size}", field="limit"
        )
    conditions = ["project_id = ?"]
    params: list[object] = [project_id]
    if status is not None:
        try:
            params.append(str(ReviewStatus(status)))
        except ValueError:
            raise InvalidInput(f"Unknown review status: {status}", field="status") from None
        conditions.append("status = ?")
    if reviewer_id is not None:
        conditions.append("reviewer_id = ?")
        params.append(reviewer_id)
    where_clause = "WHERE " + " AND ".join(conditions)

    async with app.connect() as db:
        cursor = await db.execute(f"SELECT COUNT(*) AS n FROM reviews {where_clause}", params)
        total = int((await cursor.fetchone())["n"])
        cursor = await db.execute(
            f"""SELECT * FROM reviews {where_clause}
                ORDER BY created_at DESC, rowid DESC
                LIMIT ? OFFSET ?""",
            [*params, limit, (page - 1) * limit],
        )
        rows = await cursor.fetchall()
    return ReviewPage(
        reviews=[review_from_row(row) for row in rows],
        total=total,
        page=page,
        limit=limit,
    )


async def list_assigned_reviews(
    app: AppContext,
    user_id: int,
    project_id: int | None = None,
) -> list[Review]:
    """Pending reviews the user is expected to act on."""
    query = "SELECT * FROM reviews WHERE reviewer_id = ? AND status = 'pending'"
    params: list[int] = [user_id]
    if project_id is not None:
        query += " AND project_id = ?"
        params.append(project_id)
    query += " ORDER BY created_at DESC, rowid DESC"
    async with app.connect() as db:
        cursor = await db.execute(query, params)
        rows = await cursor.fetchall()
    return [review_from_row(row) for row in rows]


async def get_audit_log(app: AppContext, annotation_id: int | None = None) -> list[dict]:
    """Transition events in insertion order, optionally for one annotation."""
    query = (
        "SELECT id, annotation_id, review_id, project_id, event_type, actor, "
        "old_status, new_status, metadata, created_at FROM audit_events"
    )
    params: tuple[int, ...] = ()
    if annotation_id is not None:
        query += " WHERE annotation_id = ?"
        params = (annotation_id,)
    query += " ORDER BY id ASC"
    async with app.connect() as db:
        cursor = await db.execute(query, params)
        rows = await cursor.fetchall()
    events = []
    for row in rows:
        parsed_metadata = None
        if row["metadata"] is not None:
            try:
                parsed_metadata = json.loads(row["metadata"])
            except (json.JSONDecodeError, TypeError):
                parsed_metadata = row["metadata"]
        events.append({
            "id": row["id"],
            "annotation_id": row["annotation_id"],
            "review_id": row["review_id"],
            "project_id": row["project_id"],
            "event_type": row["event_type"],
            "actor": row["actor"],
            "old_status": row["old_status"],
            "new_status": row["new_status"],
            "metadata": parsed_metadata,
            "created_at": row["created_at"],
        })
    return events
