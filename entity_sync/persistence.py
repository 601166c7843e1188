"""
entity_sync/persistence.py -- Storage collaborators for entity databases.

The store only needs a logical read/write contract: one JSON-serialisable
blob per (entity kind, conversation id).  ``JsonFilePersistence`` keeps each
blob in its own file, written atomically; ``MemoryPersistence`` keeps them
in a dict for embedding and tests.
"""

from __future__ import annotations

import copy
import os
from typing import Protocol

from entity_sync.utils import safe_filename, safe_read_json, safe_write_json


class DatabasePersistence(Protocol):
    """Read/write contract used by ``EntityStore``."""

    def load(self, chat_id: str) -> dict | None:
        """Return the stored blob for *chat_id*, or None if there is none."""

    def save(self, chat_id: str, blob: dict) -> None:
        """Replace the stored blob for *chat_id*."""


class JsonFilePersistence:
    """One JSON file per conversation under ``<root>/<namespace>/``.

    Conversation ids are arbitrary strings, so file names are derived with
    ``safe_filename`` (sanitised stem plus a short hash).
    """

    def __init__(self, root: str, namespace: str):
        self.directory = os.path.join(str(root), namespace)

    def path_for(self, chat_id: str) -> str:
        return os.path.join(self.directory, f"{safe_filename(chat_id)}.json")

    def load(self, chat_id: str) -> dict | None:
        data = safe_read_json(self.path_for(chat_id))
        return data if isinstance(data, dict) else None

    def save(self, chat_id: str, blob: dict) -> None:
        safe_write_json(self.path_for(chat_id), blob)


class MemoryPersistence:
    """In-memory persistence; blobs are deep-copied on the way in and out."""

    def __init__(self):
        self.blobs: dict[str, dict] = {}

    def load(self, chat_id: str) -> dict | None:
        blob = self.blobs.get(chat_id)
        return copy.deepcopy(blob) if blob is not None else None

    def save(self, chat_id: str, blob: dict) -> None:
        self.blobs[chat_id] = copy.deepcopy(blob)
