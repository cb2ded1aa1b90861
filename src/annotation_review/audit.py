"""Audit event recording helper for the annotation review engine."""

from __future__ import annotations

import json

import aiosqlite


async def record_event(
    db: aiosqlite.Connection,
    event_type: str,
    *,
    annotation_id: int | None = None,
    review_id: str | None = None,
    project_id: int | None = None,
    actor: int | None = None,
    old_status: str | None = None,
    new_status: str | None = None,
    metadata: dict | None = None,
) -> None:
    """Record an audit event within the current transaction.

    Must be called INSIDE an existing BEGIN IMMEDIATE...COMMIT block.
    The caller is responsible for transaction management.
    """
    metadata_json = json.dumps(metadata) if metadata else None
    await db.execute(
        """INSERT INTO audit_events
           (annotation_id, review_id, project_id, event_type, actor,
            old_status, new_status, metadata, created_at)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))""",
        (
            annotation_id,
            review_id,
            project_id,
            event_type,
            actor,
            old_status,
            new_status,
            metadata_json,
        ),
    )
