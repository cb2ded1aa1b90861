"""Engine configuration schema."""

from __future__ import annotations

import json
from pathlib import Path

from pydantic import BaseModel, Field, model_validator

CONFIG_SECTION = "review_engine"


class EngineConfig(BaseModel):
    """Validated review engine runtime configuration."""

    busy_timeout_ms: int = Field(default=5000, ge=100)
    message_max_length: int = Field(default=2000, ge=1, le=10000)
    default_page_size: int = Field(default=20, ge=1, le=100)
    max_page_size: int = Field(default=100, ge=1, le=500)

    @model_validator(mode="after")
    def _validate_page_sizes(self) -> EngineConfig:
        if self.max_page_size < self.default_page_size:
            raise ValueError(
                f"max_page_size ({self.max_page_size}) must be >= "
                f"default_page_size ({self.default_page_size})"
            )
        return self


def load_engine_config(config_path: str | Path) -> EngineConfig:
    """Load engine config from a JSON file.

    Returns:
    - Default EngineConfig when the review_engine section is missing or null.
    - EngineConfig validated from the section otherwise.
    Raises:
    - FileNotFoundError if config file is missing.
    - pydantic ValidationError on invalid values.
    - json.JSONDecodeError for malformed JSON.
    """
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(path)

    payload = json.loads(path.read_text(encoding="utf-8"))
    section = payload.get(CONFIG_SECTION) if isinstance(payload, dict) else None
    if section is None:
        return EngineConfig()
    if not isinstance(section, dict):
        raise ValueError(f"{CONFIG_SECTION} must be an object when provided")

    return EngineConfig.model_validate(section)
