"""Database schema management, per-request transactions, and server lifespan."""

from __future__ import annotations

import json
import logging
import os
import sys
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager, suppress
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import aiosqlite
from fastmcp import FastMCP

from annotation_review.config_schema import EngineConfig, load_engine_config
from annotation_review.errors import NotFound, ReviewInProgress, StorageError
from annotation_review.models import (
    Annotation,
    AnnotationReviewStatus,
    ProjectReviewSettings,
    Review,
    Task,
    TaskStatus,
)
from annotation_review.permissions import MembershipOracle, PermissionOracle

DB_FILENAME = "annotation_review.sqlite3"
DB_CONFIG_DIRNAME = "annotation-review-engine"
DB_PATH_ENV_VAR = "REVIEW_ENGINE_DB_PATH"
CONFIG_PATH_ENV_VAR = "REVIEW_ENGINE_CONFIG_PATH"
logger = logging.getLogger("annotation_review")

SCHEMA_SQL = """\
CREATE TABLE IF NOT EXISTS projects (
    id                      INTEGER PRIMARY KEY,
    name                    TEXT NOT NULL,
    review_mode             TEXT NOT NULL DEFAULT 'auto'
                            CHECK(review_mode IN ('auto','always-required','always-skip')),
    allow_self_review       INTEGER NOT NULL DEFAULT 0,
    auto_assign_reviewer    INTEGER NOT NULL DEFAULT 1,
    created_at              TEXT NOT NULL DEFAULT (datetime('now')),
    updated_at              TEXT NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS project_members (
    project_id      INTEGER NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
    user_id         INTEGER NOT NULL,
    capabilities    TEXT NOT NULL DEFAULT '{}',
    created_at      TEXT NOT NULL DEFAULT (datetime('now')),
    PRIMARY KEY (project_id, user_id)
);

CREATE TABLE IF NOT EXISTS tasks (
    id              INTEGER PRIMARY KEY,
    project_id      INTEGER NOT NULL REFERENCES projects(id),
    status          TEXT NOT NULL DEFAULT 'unassigned'
                    CHECK(status IN ('unassigned','annotating','completed',
                                     'in_review','changes_needed')),
    assigned_to     INTEGER,
    priority        INTEGER NOT NULL DEFAULT 0,
    created_at      TEXT NOT NULL DEFAULT (datetime('now')),
    updated_at      TEXT NOT NULL DEFAULT (datetime('now'))
);
CREATE INDEX IF NOT EXISTS idx_tasks_project ON tasks(project_id);

CREATE TABLE IF NOT EXISTS annotations (
    id                  INTEGER PRIMARY KEY,
    task_id             INTEGER NOT NULL REFERENCES tasks(id),
    project_id          INTEGER NOT NULL REFERENCES projects(id),
    user_id             INTEGER NOT NULL,
    annotation_data     TEXT,
    is_ground_truth     INTEGER NOT NULL DEFAULT 0,
    review_status       TEXT NOT NULL DEFAULT 'pending'
                        CHECK(review_status IN ('pending','approved','rejected')),
    created_at          TEXT NOT NULL DEFAULT (datetime('now')),
    updated_at          TEXT NOT NULL DEFAULT (datetime('now'))
);
CREATE INDEX IF NOT EXISTS idx_annotations_task ON annotations(task_id);

CREATE TABLE IF NOT EXISTS reviews (
    id                  TEXT PRIMARY KEY,
    annotation_id       INTEGER NOT NULL REFERENCES annotations(id) ON DELETE CASCADE,
    task_id             INTEGER NOT NULL REFERENCES tasks(id),
    project_id          INTEGER NOT NULL REFERENCES projects(id),
    reviewer_id         INTEGER NOT NULL,
    status              TEXT NOT NULL DEFAULT 'pending'
                        CHECK(status IN ('pending','approved','rejected','changes_requested')),
    message             TEXT,
    is_auto_approved    INTEGER NOT NULL DEFAULT 0,
    review_round        INTEGER NOT NULL DEFAULT 1 CHECK(review_round >= 1),
    created_at          TEXT NOT NULL DEFAULT (datetime('now')),
    updated_at          TEXT NOT NULL DEFAULT (datetime('now'))
);
CREATE INDEX IF NOT EXISTS idx_reviews_annotation ON reviews(annotation_id);
CREATE INDEX IF NOT EXISTS idx_reviews_task ON reviews(task_id);
CREATE INDEX IF NOT EXISTS idx_reviews_project ON reviews(project_id);
CREATE INDEX IF NOT EXISTS idx_reviews_reviewer ON reviews(reviewer_id);
CREATE INDEX IF NOT EXISTS idx_reviews_status ON reviews(status);
"""

SCHEMA_MIGRATIONS: list[str] = [
    # Assigned reviewer is who should act; reviews.reviewer_id is who did.
    "ALTER TABLE annotations ADD COLUMN assigned_reviewer_id INTEGER",
    # Only one pending review per annotation, enforced by storage.
    """CREATE UNIQUE INDEX IF NOT EXISTS idx_reviews_annotation_pending
       ON reviews(annotation_id) WHERE status = 'pending'""",
    """CREATE UNIQUE INDEX IF NOT EXISTS idx_reviews_annotation_round
       ON reviews(annotation_id, review_round)""",
    # Transition audit trail
    """CREATE TABLE IF NOT EXISTS audit_events (
        id              INTEGER PRIMARY KEY AUTOINCREMENT,
        annotation_id   INTEGER,
        review_id       TEXT,
        project_id      INTEGER,
        event_type      TEXT NOT NULL,
        actor           INTEGER,
        old_status      TEXT,
        new_status      TEXT,
        metadata        TEXT,
        created_at      TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))
    )""",
    "CREATE INDEX IF NOT EXISTS idx_audit_annotation ON audit_events(annotation_id)",
    "CREATE INDEX IF NOT EXISTS idx_audit_type ON audit_events(event_type)",
]


@dataclass
class AppContext:
    """Engine context: where the store lives and how to reach collaborators.

    Holds no connection. Every operation opens its own connection through
    ``connect()`` or ``transaction()``.
    """

    db_path: Path
    config: EngineConfig = field(default_factory=EngineConfig)
    permissions: PermissionOracle | None = None

    def __post_init__(self) -> None:
        self.db_path = Path(self.db_path)
        if self.permissions is None:
            self.permissions = MembershipOracle(self.connect)

    @asynccontextmanager
    async def connect(self) -> AsyncIterator[aiosqlite.Connection]:
        """Open a request-scoped connection in autocommit mode."""
        db = await aiosqlite.connect(
            str(self.db_path),
            isolation_level=None,  # CRITICAL: enables manual BEGIN IMMEDIATE
        )
        try:
            db.row_factory = aiosqlite.Row
            await db.execute(f"PRAGMA busy_timeout={int(self.config.busy_timeout_ms)}")
            await db.execute("PRAGMA foreign_keys=ON")
            yield db
        finally:
            await db.close()

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """Run the block as one BEGIN IMMEDIATE...COMMIT unit.

        Any exception, cancellation included, rolls the whole unit back.
        Storage errors surface as StorageError.
        """
        async with self.connect() as db:
            try:
                await db.execute("BEGIN IMMEDIATE")
                yield db
                await db.execute("COMMIT")
            except aiosqlite.Error as exc:
                await _rollback_quietly(db)
                logger.exception("transaction -> database error: %s", exc)
                raise StorageError(f"Database error: {exc}") from exc
            except BaseException:
                await _rollback_quietly(db)
                raise


async def ensure_schema(db: aiosqlite.Connection) -> None:
    """Create tables and indexes if they don't exist, then apply migrations."""
    await db.executescript(SCHEMA_SQL)
    for migration in SCHEMA_MIGRATIONS:
        try:
            await db.execute(migration)
        except aiosqlite.OperationalError as exc:
            # Idempotent migration: ignore only duplicate-column errors.
            if "duplicate column name" not in str(exc).lower():
                raise


async def initialize_database(db_path: Path) -> None:
    """Create the database file, switch it to WAL, and apply the schema."""
    db_path.parent.mkdir(parents=True, exist_ok=True)
    async with aiosqlite.connect(str(db_path), isolation_level=None) as db:
        db.row_factory = aiosqlite.Row
        await db.execute("PRAGMA journal_mode=WAL")
        await db.execute("PRAGMA synchronous=NORMAL")
        await db.execute("PRAGMA foreign_keys=ON")
        await ensure_schema(db)


async def _rollback_quietly(db: aiosqlite.Connection) -> None:
    with suppress(Exception):
        await db.execute("ROLLBACK")


# ---- Row loaders ----


def _task_from_row(row: aiosqlite.Row) -> Task:
    return Task(
        id=row["id"],
        project_id=row["project_id"],
        status=row["status"],
        assigned_to=row["assigned_to"],
        priority=row["priority"],
    )


def _annotation_from_row(row: aiosqlite.Row) -> Annotation:
    data: Any = row["annotation_data"]
    if data is not None:
        try:
            data = json.loads(data)
        except (json.JSONDecodeError, TypeError):
            pass
    return Annotation(
        id=row["id"],
        task_id=row["task_id"],
        project_id=row["project_id"],
        user_id=row["user_id"],
        annotation_data=data,
        is_ground_truth=bool(row["is_ground_truth"]),
        review_status=row["review_status"],
        assigned_reviewer_id=row["assigned_reviewer_id"],
    )


def review_from_row(row: aiosqlite.Row) -> Review:
    return Review(
        id=row["id"],
        annotation_id=row["annotation_id"],
        task_id=row["task_id"],
        project_id=row["project_id"],
        reviewer_id=row["reviewer_id"],
        status=row["status"],
        message=row["message"],
        is_auto_approved=bool(row["is_auto_approved"]),
        review_round=row["review_round"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


async def load_task(db: aiosqlite.Connection, task_id: int) -> Task:
    cursor = await db.execute(
        "SELECT id, project_id, status, assigned_to, priority FROM tasks WHERE id = ?",
        (task_id,),
    )
    row = await cursor.fetchone()
    if row is None:
        raise NotFound(f"Task not found: {task_id}")
    return _task_from_row(row)


async def load_annotation(
    db: aiosqlite.Connection,
    annotation_id: int,
    project_id: int | None = None,
) -> Annotation:
    query = (
        "SELECT id, task_id, project_id, user_id, annotation_data, is_ground_truth, "
        "review_status, assigned_reviewer_id FROM annotations WHERE id = ?"
    )
    params: list[int] = [annotation_id]
    if project_id is not None:
        query += " AND project_id = ?"
        params.append(project_id)
    cursor = await db.execute(query, params)
    row = await cursor.fetchone()
    if row is None:
        raise NotFound(f"Annotation not found: {annotation_id}")
    return _annotation_from_row(row)


async def load_review(db: aiosqlite.Connection, review_id: str) -> Review:
    cursor = await db.execute("SELECT * FROM reviews WHERE id = ?", (review_id,))
    row = await cursor.fetchone()
    if row is None:
        raise NotFound(f"Review not found: {review_id}")
    return review_from_row(row)


async def load_project_settings(
    db: aiosqlite.Connection, project_id: int
) -> ProjectReviewSettings:
    cursor = await db.execute(
        """SELECT review_mode, allow_self_review, auto_assign_reviewer
           FROM projects WHERE id = ?""",
        (project_id,),
    )
    row = await cursor.fetchone()
    if row is None:
        raise NotFound(f"Project not found: {project_id}")
    return ProjectReviewSettings(
        review_mode=row["review_mode"],
        allow_self_review=bool(row["allow_self_review"]),
        auto_assign_reviewer=bool(row["auto_assign_reviewer"]),
    )


async def find_pending_review(
    db: aiosqlite.Connection, annotation_id: int
) -> Review | None:
    cursor = await db.execute(
        "SELECT * FROM reviews WHERE annotation_id = ? AND status = 'pending'",
        (annotation_id,),
    )
    row = await cursor.fetchone()
    return review_from_row(row) if row is not None else None


async def next_review_round(db: aiosqlite.Connection, annotation_id: int) -> int:
    """Compute max(review_round) + 1; call inside the inserting transaction."""
    cursor = await db.execute(
        "SELECT COALESCE(MAX(review_round), 0) AS max_round FROM reviews WHERE annotation_id = ?",
        (annotation_id,),
    )
    row = await cursor.fetchone()
    return int(row["max_round"]) + 1


def _is_pending_review_conflict(exc: aiosqlite.IntegrityError) -> bool:
    # idx_reviews_annotation_pending reports only the annotation_id column;
    # the round index also names review_round.
    return str(exc).strip().endswith("reviews.annotation_id")


async def insert_review(db: aiosqlite.Connection, review: Review) -> Review:
    """Insert a review row and return it as stored.

    A second pending review for the same annotation is rejected by the
    partial unique index and reported as ReviewInProgress.
    """
    try:
        await db.execute(
            """INSERT INTO reviews (id, annotation_id, task_id, project_id, reviewer_id,
                                    status, message, is_auto_approved, review_round,
                                    created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, datetime('now'), datetime('now'))""",
            (
                review.id,
                review.annotation_id,
                review.task_id,
                review.project_id,
                review.reviewer_id,
                str(review.status),
                review.message,
                1 if review.is_auto_approved else 0,
                review.review_round,
            ),
        )
    except aiosqlite.IntegrityError as exc:
        if _is_pending_review_conflict(exc):
            raise ReviewInProgress(
                "A pending review already exists for this annotation",
                annotation_id=review.annotation_id,
            ) from exc
        raise
    return await load_review(db, review.id)


async def set_task_status(db: aiosqlite.Connection, task_id: int, status: TaskStatus) -> None:
    await db.execute(
        "UPDATE tasks SET status = ?, updated_at = datetime('now') WHERE id = ?",
        (str(status), task_id),
    )


async def set_annotation_review_status(
    db: aiosqlite.Connection,
    annotation_id: int,
    status: AnnotationReviewStatus,
) -> None:
    await db.execute(
        "UPDATE annotations SET review_status = ?, updated_at = datetime('now') WHERE id = ?",
        (str(status), annotation_id),
    )


# ---- Configuration and lifespan ----


def default_user_config_dir() -> Path:
    """Resolve a cross-platform user config directory for engine state."""
    xdg_config_home = os.environ.get("XDG_CONFIG_HOME")
    if xdg_config_home:
        return Path(xdg_config_home).expanduser() / DB_CONFIG_DIRNAME

    if os.name == "nt":
        appdata = os.environ.get("APPDATA")
        if appdata:
            return Path(appdata).expanduser() / DB_CONFIG_DIRNAME
        return Path.home() / "AppData" / "Roaming" / DB_CONFIG_DIRNAME

    if sys.platform == "darwin":
        return Path.home() / "Library" / "Application Support" / DB_CONFIG_DIRNAME

    return Path.home() / ".config" / DB_CONFIG_DIRNAME


def resolve_db_path() -> Path:
    """Resolve the database path.

    Priority:
    1) Explicit REVIEW_ENGINE_DB_PATH environment variable
    2) Standard user config directory (~/.config, APPDATA, or Application Support)
    """
    configured_path = os.environ.get(DB_PATH_ENV_VAR)
    if configured_path:
        return Path(configured_path).expanduser()

    return default_user_config_dir() / DB_FILENAME


def resolve_config_path() -> Path:
    configured_path = os.environ.get(CONFIG_PATH_ENV_VAR)
    if configured_path:
        return Path(configured_path).expanduser()
    return Path.cwd() / ".annotation-review" / "config.json"


def load_config_or_default(config_path: Path) -> EngineConfig:
    try:
        return load_engine_config(config_path)
    except FileNotFoundError:
        logger.info("No config file, using engine defaults (%s)", config_path)
    except Exception as exc:
        logger.warning("Failed to load review_engine config; using defaults: %s", exc)
    return EngineConfig()


@asynccontextmanager
async def engine_lifespan(server: FastMCP) -> AsyncIterator[AppContext]:
    """Initialize SQLite with WAL mode at server startup."""
    del server
    db_path = resolve_db_path()
    config_path = resolve_config_path()
    if os.environ.get(CONFIG_PATH_ENV_VAR):
        logger.info("Using config path override from %s: %s", CONFIG_PATH_ENV_VAR, config_path)
    config = load_config_or_default(config_path)
    await initialize_database(db_path)
    ctx = AppContext(db_path=db_path, config=config)
    logger.info("Review engine ready - db=%s", db_path)
    try:
        yield ctx
    finally:
        async with aiosqlite.connect(str(db_path), isolation_level=None) as db:
            await db.execute("PRAGMA wal_checkpoint(TRUNCATE)")
