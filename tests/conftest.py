"""Shared test fixtures for the annotation review engine."""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import pytest

from annotation_review.db import AppContext, initialize_database


@dataclass
class _MockFastMCP:
    """Stands in for the FastMCP instance so ctx.fastmcp._lifespan_result works."""

    _lifespan_result: AppContext


@dataclass
class MockContext:
    """Minimal mock for fastmcp.Context that provides fastmcp._lifespan_result."""

    fastmcp: _MockFastMCP

    @property
    def lifespan_context(self) -> AppContext:
        return self.fastmcp._lifespan_result


@dataclass
class Seeder:
    """Writes fixture rows straight into the store, outside the engine."""

    app: AppContext

    async def execute(self, sql: str, params: tuple | list = ()) -> int:
        async with self.app.connect() as db:
            cursor = await db.execute(sql, params)
            return cursor.lastrowid

    async def fetch_one(self, sql: str, params: tuple | list = ()) -> dict[str, Any] | None:
        async with self.app.connect() as db:
            cursor = await db.execute(sql, params)
            row = await cursor.fetchone()
        return dict(row) if row is not None else None

    async def fetch_all(self, sql: str, params: tuple | list = ()) -> list[dict[str, Any]]:
        async with self.app.connect() as db:
            cursor = await db.execute(sql, params)
            rows = await cursor.fetchall()
        return [dict(row) for row in rows]

    async def project(
        self,
        project_id: int = 1,
        *,
        review_mode: str = "auto",
        allow_self_review: bool = False,
        auto_assign_reviewer: bool = True,
    ) -> int:
        await self.execute(
            """INSERT INTO projects (id, name, review_mode, allow_self_review, auto_assign_reviewer)
               VALUES (?, ?, ?, ?, ?)""",
            (
                project_id,
                f"project-{project_id}",
                review_mode,
                int(allow_self_review),
                int(auto_assign_reviewer),
            ),
        )
        return project_id

    async def member(self, project_id: int, user_id: int, **capabilities: bool) -> None:
        await self.execute(
            "INSERT INTO project_members (project_id, user_id, capabilities) VALUES (?, ?, ?)",
            (project_id, user_id, json.dumps(capabilities)),
        )

    async def reviewer(self, project_id: int, user_id: int) -> None:
        await self.member(project_id, user_id, review_annotations=True, view_reviews=True)

    async def task(self, project_id: int, status: str = "annotating") -> int:
        return await self.execute(
            "INSERT INTO tasks (project_id, status) VALUES (?, ?)",
            (project_id, status),
        )

    async def annotation(
        self,
        task_id: int,
        project_id: int,
        user_id: int,
        review_status: str = "pending",
    ) -> int:
        return await self.execute(
            """INSERT INTO annotations
                   (task_id, project_id, user_id, annotation_data, review_status)
               VALUES (?, ?, ?, ?, ?)""",
            (task_id, project_id, user_id, json.dumps({"label": "cat"}), review_status),
        )

    async def annotated_task(
        self,
        project_id: int,
        annotator_id: int,
        task_status: str = "annotating",
    ) -> tuple[int, int]:
        task_id = await self.task(project_id, task_status)
        annotation_id = await self.annotation(task_id, project_id, annotator_id)
        return task_id, annotation_id

    async def pending_review(
        self,
        annotation_id: int,
        reviewer_id: int,
        review_id: str = "pending-review",
        review_round: int = 1,
    ) -> str:
        row = await self.fetch_one(
            "SELECT task_id, project_id FROM annotations WHERE id = ?", (annotation_id,)
        )
        assert row is not None
        await self.execute(
            """INSERT INTO reviews (id, annotation_id, task_id, project_id, reviewer_id,
                                    status, review_round)
               VALUES (?, ?, ?, ?, ?, 'pending', ?)""",
            (
                review_id,
                annotation_id,
                row["task_id"],
                row["project_id"],
                reviewer_id,
                review_round,
            ),
        )
        return review_id

    async def task_status(self, task_id: int) -> str:
        row = await self.fetch_one("SELECT status FROM tasks WHERE id = ?", (task_id,))
        assert row is not None
        return row["status"]

    async def annotation_row(self, annotation_id: int) -> dict[str, Any]:
        row = await self.fetch_one("SELECT * FROM annotations WHERE id = ?", (annotation_id,))
        assert row is not None
        return row

    async def reviews_for(self, annotation_id: int) -> list[dict[str, Any]]:
        return await self.fetch_all(
            "SELECT * FROM reviews WHERE annotation_id = ? ORDER BY review_round",
            (annotation_id,),
        )


@pytest.fixture
async def app(tmp_path: Path) -> AppContext:
    """File-backed store so concurrent operations get real separate connections."""
    db_path = tmp_path / "reviews.sqlite3"
    await initialize_database(db_path)
    return AppContext(db_path=db_path)


@pytest.fixture
def seed(app: AppContext) -> Seeder:
    return Seeder(app)


@pytest.fixture
def ctx(app: AppContext) -> MockContext:
    """Create a MockContext wrapping the file-backed app fixture."""
    return MockContext(fastmcp=_MockFastMCP(_lifespan_result=app))
