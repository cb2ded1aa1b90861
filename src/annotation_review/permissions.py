"""Typed capability set and the permission oracle consumed by the engine."""

from __future__ import annotations

import json
from collections.abc import Callable
from contextlib import AbstractAsyncContextManager
from typing import Protocol

import aiosqlite
from pydantic import BaseModel, ConfigDict

from annotation_review.models import Capability


class CapabilitySet(BaseModel):
    """Fixed set of project capabilities granted to a member."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    admin: bool = False
    edit_project: bool = False
    delete_project: bool = False
    edit_members: bool = False
    edit_roles: bool = False
    upload_files: bool = False
    review_annotations: bool = False
    view_reviews: bool = False

    def grants(self, capability: Capability) -> bool:
        return bool(getattr(self, str(capability)))

    @classmethod
    def from_json(cls, raw: str | None) -> CapabilitySet:
        if not raw:
            return cls()
        try:
            payload = json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            return cls()
        if not isinstance(payload, dict):
            return cls()
        # Only literal true grants a capability.
        return cls(**{key: value is True for key, value in payload.items()})


class PermissionOracle(Protocol):
    """Answers capability questions on behalf of the membership service."""

    async def has_permission(
        self, project_id: int, user_id: int, capability: Capability
    ) -> bool: ...

    async def is_project_member(self, project_id: int, user_id: int) -> bool: ...

    async def members_with(self, project_id: int, capability: Capability) -> list[int]: ...


class MembershipOracle:
    """Permission oracle backed by the ``project_members`` table."""

    def __init__(
        self,
        connect: Callable[[], AbstractAsyncContextManager[aiosqlite.Connection]],
    ) -> None:
        self._connect = connect

    async def capabilities(self, project_id: int, user_id: int) -> CapabilitySet | None:
        async with self._connect() as db:
            cursor = await db.execute(
                "SELECT capabilities FROM project_members WHERE project_id = ? AND user_id = ?",
                (project_id, user_id),
            )
            row = await cursor.fetchone()
        if row is None:
            return None
        return CapabilitySet.from_json(row["capabilities"])

    async def has_permission(
        self, project_id: int, user_id: int, capability: Capability
    ) -> bool:
        caps = await self.capabilities(project_id, user_id)
        return caps is not None and caps.grants(capability)

    async def is_project_member(self, project_id: int, user_id: int) -> bool:
        return await self.capabilities(project_id, user_id) is not None

    async def members_with(self, project_id: int, capability: Capability) -> list[int]:
        async with self._connect() as db:
            cursor = await db.execute(
                "SELECT user_id, capabilities FROM project_members WHERE project_id = ?",
                (project_id,),
            )
            rows = await cursor.fetchall()
        return sorted(
            row["user_id"]
            for row in rows
            if CapabilitySet.from_json(row["capabilities"]).grants(capability)
        )
