"""
entity_sync/paths.py -- Path resolution for engine data.

Uses platformdirs for the user data directory so that per-conversation
entity databases, the world book, and settings persist across upgrades.
An explicit directory always wins over the platform default.
"""

from __future__ import annotations

import os

from platformdirs import user_data_dir

_APP_NAME = "EntitySync"
_APP_AUTHOR = "EntitySync"

# Environment override, mainly for the CLI and for sandboxed test runs.
DATA_DIR_ENV = "ENTITY_SYNC_DATA_DIR"


def get_user_data_dir() -> str:
    """Return the platform-appropriate user data directory."""
    path = user_data_dir(_APP_NAME, _APP_AUTHOR)
    os.makedirs(path, exist_ok=True)
    return path


def resolve_data_dir(explicit: str | None = None) -> str:
    """Return the data directory to use, creating it if needed.

    Order: *explicit* argument, then ``$ENTITY_SYNC_DATA_DIR``, then the
    platformdirs default.
    """
    path = explicit or os.environ.get(DATA_DIR_ENV)
    if not path:
        return get_user_data_dir()
    path = os.path.abspath(path)
    os.makedirs(path, exist_ok=True)
    return path


def settings_path(data_dir: str) -> str:
    """Return the location of ``settings.json`` inside *data_dir*."""
    return os.path.join(data_dir, "settings.json")


def world_book_path(data_dir: str) -> str:
    """Return the location of the SQLite world-book database."""
    return os.path.join(data_dir, "runtime", "world_book.db")


def entities_dir(data_dir: str) -> str:
    """Return the root directory for per-conversation entity databases."""
    return os.path.join(data_dir, "entities")
