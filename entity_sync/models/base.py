"""
entity_sync/models/base.py -- Core record models.

``Entity`` is one NPC or Organization, ``EntityDatabase`` is the
per-conversation record set, and ``SyncRecord`` is the projection of an
entity into the external world book.

Persisted JSON uses camelCase keys (``appearCount``, ``lastChatId``), the
shape the UI layer reads; Python code uses the snake_case attribute names.
"""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

# Marker written on every world-book entry this engine creates.  The dedup
# sweep never touches entries without it.
ENGINE_MARKER = "entity_sync"

SNAPSHOT_VERSION = 1


class EntityKind(str, Enum):
    """The two kinds of entity the engine extracts."""

    NPC = "npc"
    ORGANIZATION = "organization"

    @property
    def prefix(self) -> str:
        """Key prefix used in raw panel data (``npc0.name``, ``org1.type``)."""
        return "org" if self is EntityKind.ORGANIZATION else "npc"

    @property
    def label(self) -> str:
        """Human label used for fallback names (``"NPC 2"``)."""
        return "Organization" if self is EntityKind.ORGANIZATION else "NPC"


class _CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )

    def to_json_dict(self) -> dict:
        """Dump with camelCase aliases, ready for ``json.dump``."""
        return self.model_dump(by_alias=True, mode="json")


class Entity(_CamelModel):
    """A stable record for one NPC or Organization.

    ``id`` is assigned once at creation and never changes, even when the
    display name does.  ``fields`` holds canonical field keys only.
    """

    id: str
    kind: EntityKind = EntityKind.NPC
    name: str = ""
    fields: dict[str, str] = Field(default_factory=dict)
    aliases: list[str] = Field(default_factory=list)
    appear_count: int = 0
    created_at: str = ""
    updated_at: str = ""
    last_seen: str = ""
    last_chat_id: str = ""


class EntityDatabase(_CamelModel):
    """All entities of one kind for exactly one conversation."""

    version: int = SNAPSHOT_VERSION
    chat_id: str
    kind: EntityKind = EntityKind.NPC
    entities: dict[str, Entity] = Field(default_factory=dict)


class SyncRecord(_CamelModel):
    """One entry in the external world book bound to an entity id."""

    external_entry_id: str = ""
    stable_entity_id: str
    name: str
    content: str = ""
    keywords: list[str] = Field(default_factory=list)
    created_by: str = ENGINE_MARKER
    created_at: str = ""
    updated_at: str = ""
