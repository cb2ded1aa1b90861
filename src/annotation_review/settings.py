"""Project review settings: read with the current workflow mode, and update."""

from __future__ import annotations

import logging
from typing import Any

from pydantic import ValidationError

from annotation_review.audit import record_event
from annotation_review.db import AppContext, load_project_settings
from annotation_review.errors import InvalidInput, PermissionDenied
from annotation_review.models import (
    AuditEventType,
    Capability,
    ProjectReviewSettings,
    ProjectReviewSettingsView,
    SettingsPatch,
)
from annotation_review.policy import resolve_current_workflow_mode

logger = logging.getLogger("annotation_review")

_SETTINGS_COLUMNS = ("review_mode", "allow_self_review", "auto_assign_reviewer")


async def get_project_review_settings(
    app: AppContext,
    project_id: int,
    user_id: int,
) -> ProjectReviewSettingsView:
    """Return settings and the workflow mode the caller would get right now."""
    if not await app.permissions.is_project_member(project_id, user_id):
        raise PermissionDenied("You are not a member of this project")
    async with app.connect() as db:
        settings = await load_project_settings(db, project_id)
        mode = await resolve_current_workflow_mode(db, app.permissions, project_id, user_id)
    return ProjectReviewSettingsView(
        project_id=project_id,
        current_workflow_mode=mode,
        **settings.model_dump(),
    )


async def update_project_review_settings(
    app: AppContext,
    project_id: int,
    patch: SettingsPatch | dict[str, Any],
    user_id: int,
) -> ProjectReviewSettings:
    """Apply a partial settings update; requires the edit_project capability."""
    if not isinstance(patch, SettingsPatch):
        try:
            patch = SettingsPatch.model_validate(patch)
        except ValidationError as exc:
            details = [
                {"field": ".".join(str(part) for part in err["loc"]), "message": err["msg"]}
                for err in exc.errors()
            ]
            raise InvalidInput("Validation failed", details=details) from exc
    changes = patch.changes()
    if not changes:
        raise InvalidInput("Nothing to update: provide at least one setting")
    if not await app.permissions.has_permission(project_id, user_id, Capability.EDIT_PROJECT):
        raise PermissionDenied("You do not have permission to edit this project")

    async with app.transaction() as db:
        before = await load_project_settings(db, project_id)
        columns = [column for column in _SETTINGS_COLUMNS if column in changes]
        assignments = ", ".join(f"{column} = ?" for column in columns)
        params: list[Any] = [
            int(changes[column]) if isinstance(changes[column], bool) else str(changes[column])
            for column in columns
        ]
        await db.execute(
            f"UPDATE projects SET {assignments}, updated_at = datetime('now') WHERE id = ?",
            [*params, project_id],
        )
        after = await load_project_settings(db, project_id)
        await record_event(
            db,
            AuditEventType.SETTINGS_UPDATED,
            project_id=project_id,
            actor=user_id,
            old_status=str(before.review_mode),
            new_status=str(after.review_mode),
            metadata={key: str(value) for key, value in changes.items()},
        )

    logger.info(
        "update_project_review_settings -> project %s %s",
        project_id,
        ", ".join(f"{key}={value}" for key, value in changes.items()),
    )
    return after
