"""FastMCP server entry point for the annotation review engine."""

from __future__ import annotations

import contextvars
import json
import logging
import os
from datetime import UTC, datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path

from fastmcp import FastMCP

from annotation_review.db import default_user_config_dir, engine_lifespan

ENGINE_LOG_DIR_ENV_VAR = "REVIEW_ENGINE_LOG_DIR"
ENGINE_LOG_MAX_BYTES_ENV_VAR = "REVIEW_ENGINE_LOG_MAX_BYTES"
ENGINE_LOG_BACKUPS_ENV_VAR = "REVIEW_ENGINE_LOG_BACKUPS"
DEFAULT_ENGINE_LOG_MAX_BYTES = 5 * 1024 * 1024
DEFAULT_ENGINE_LOG_BACKUPS = 5
DEFAULT_PORT = 8322

mcp = FastMCP(
    "annotation-review-engine",
    instructions=(
        "Annotation review workflow engine. "
        "Completes annotations, assigns reviewers, and records review decisions."
    ),
    lifespan=engine_lifespan,
)

# ContextVar holding the caller identity for log lines.
# Default "engine" is used for internal/system actions.
caller_tag: contextvars.ContextVar[str] = contextvars.ContextVar("caller_tag", default="engine")

# Import tools to register them with @mcp.tool.
# This import MUST come AFTER mcp is created to avoid circular imports.
from annotation_review import tools  # noqa: F401, E402


class _CallerFormatter(logging.Formatter):
    """Log formatter that injects the caller_tag ContextVar into each record."""

    def format(self, record: logging.LogRecord) -> str:
        record.caller_tag = caller_tag.get("engine")  # type: ignore[attr-defined]
        return super().format(record)


class _JsonFormatter(logging.Formatter):
    """Structured JSON formatter for engine logfile events."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, object] = {
            "ts": datetime.now(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z"),
            "level": record.levelname.lower(),
            "logger": record.name,
            "caller_tag": getattr(record, "caller_tag", caller_tag.get("engine")),
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, separators=(",", ":"))


def _resolve_engine_log_dir() -> Path:
    override = os.environ.get(ENGINE_LOG_DIR_ENV_VAR)
    if override:
        return Path(override).expanduser()
    return default_user_config_dir() / "engine-logs"


def _read_positive_int_env(name: str, default: int, minimum: int) -> int:
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    if value < minimum:
        return default
    return value


def _configure_logging() -> None:
    """Configure concise engine logs with stream and structured rotating logfile handlers."""
    logger = logging.getLogger("annotation_review")
    logger.setLevel(logging.INFO)
    logger.propagate = False

    has_stream_handler = any(
        getattr(handler, "_review_engine_stream_handler", False)
        for handler in logger.handlers
    )
    if not has_stream_handler:
        handler = logging.StreamHandler()
        handler._review_engine_stream_handler = True  # type: ignore[attr-defined]
        handler.setLevel(logging.INFO)
        handler.setFormatter(
            _CallerFormatter(
                "%(asctime)s [%(caller_tag)s] %(message)s",
                "%H:%M:%S",
            )
        )
        logger.addHandler(handler)

    if not any(
        getattr(handler, "_review_engine_file_handler", False) for handler in logger.handlers
    ):
        log_dir = _resolve_engine_log_dir()
        log_dir.mkdir(parents=True, exist_ok=True)
        log_max_bytes = _read_positive_int_env(
            ENGINE_LOG_MAX_BYTES_ENV_VAR,
            DEFAULT_ENGINE_LOG_MAX_BYTES,
            1024,
        )
        log_backups = _read_positive_int_env(
            ENGINE_LOG_BACKUPS_ENV_VAR,
            DEFAULT_ENGINE_LOG_BACKUPS,
            1,
        )
        file_handler = RotatingFileHandler(
            log_dir / "engine.jsonl",
            maxBytes=log_max_bytes,
            backupCount=log_backups,
            encoding="utf-8",
        )
        file_handler._review_engine_file_handler = True  # type: ignore[attr-defined]
        file_handler.setLevel(logging.INFO)
        file_handler.setFormatter(_JsonFormatter())
        logger.addHandler(file_handler)


_configure_logging()


def main() -> None:
    """Run the review engine server.

    Set REVIEW_ENGINE_HOST / REVIEW_ENGINE_PORT to override the bind address.
    Default is 127.0.0.1:8322.

    Storage:
    - Default DB path is user-scoped config dir:
      Linux: ~/.config/annotation-review-engine/annotation_review.sqlite3
      macOS: ~/Library/Application Support/annotation-review-engine/annotation_review.sqlite3
      Windows: %APPDATA%/annotation-review-engine/annotation_review.sqlite3
    - Set REVIEW_ENGINE_DB_PATH to override with an explicit SQLite file path.
    """
    _configure_logging()
    host = os.environ.get("REVIEW_ENGINE_HOST", "127.0.0.1")
    port = _read_positive_int_env("REVIEW_ENGINE_PORT", DEFAULT_PORT, 1)
    mcp.run(
        transport="streamable-http",
        host=host,
        port=port,
        stateless_http=True,
    )


if __name__ == "__main__":
    main()
