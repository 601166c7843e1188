"""
entity_sync/models/ -- Pydantic v2 models for the entity sync engine.

Submodules:
    base        Entity, EntityDatabase, SyncRecord and the EntityKind enum.
    validators  jsonschema + semantic validation of import snapshots.
"""

from entity_sync.models.base import (
    ENGINE_MARKER,
    Entity,
    EntityDatabase,
    EntityKind,
    SyncRecord,
)
from entity_sync.models.validators import SnapshotImportError, parse_snapshot

__all__ = [
    "ENGINE_MARKER",
    "Entity",
    "EntityDatabase",
    "EntityKind",
    "SnapshotImportError",
    "SyncRecord",
    "parse_snapshot",
]
