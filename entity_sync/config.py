"""
entity_sync/config.py -- Engine settings persisted as ``settings.json``.

Missing or unreadable files and invalid values fall back to defaults, so a
damaged settings file never stops the engine from starting.
"""

from __future__ import annotations

import logging

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from entity_sync.utils import safe_read_json, safe_write_json

logger = logging.getLogger(__name__)

AUTO_BOOK = "auto"


class EngineSettings(BaseModel):
    """User-tunable engine settings."""

    model_config = ConfigDict(extra="ignore", validate_assignment=True)

    auto_sync_enabled: bool = True
    external_sync_enabled: bool = False
    source_panel_id: str = "interaction"
    organization_panel_id: str = "organization"
    target_world_book: str = AUTO_BOOK
    auto_book_name: str = "Entity Codex"
    debounce_wait_seconds: float = Field(default=0.5, ge=0)
    debounce_max_wait_seconds: float = Field(default=3.0, ge=0)
    match_nameless_by_index: bool = True

    @model_validator(mode="after")
    def _check_debounce_window(self) -> EngineSettings:
        if self.debounce_max_wait_seconds < self.debounce_wait_seconds:
            raise ValueError("debounce_max_wait_seconds must be >= debounce_wait_seconds")
        return self

    @property
    def world_book_name(self) -> str:
        """The book entries are written to; ``"auto"`` means ``auto_book_name``."""
        if not self.target_world_book.strip() or self.target_world_book == AUTO_BOOK:
            return self.auto_book_name
        return self.target_world_book


def load_settings(path: str) -> EngineSettings:
    """Load settings from *path*, falling back to defaults."""
    data = safe_read_json(path, default=None)
    if not isinstance(data, dict):
        return EngineSettings()
    try:
        return EngineSettings.model_validate(data)
    except ValidationError as exc:
        logger.warning("Invalid settings in %s; using defaults.\n%s", path, exc)
        return EngineSettings()


def save_settings(path: str, settings: EngineSettings) -> None:
    """Atomically write *settings* to *path*."""
    safe_write_json(path, settings.model_dump(mode="json"))
