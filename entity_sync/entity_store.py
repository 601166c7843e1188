"""
entity_sync/entity_store.py -- Per-conversation entity database.

Owns the ``EntityDatabase`` of one entity kind for the active conversation
and is the only code that mutates it.  Merges are non-destructive (a blank
incoming value never erases a stored one) and idempotent (re-merging the
same fields reports no change and does not bump ``appearCount``).

Switching conversations swaps the whole database; nothing leaks between
chats.  Every public method takes ``lock`` so a coordinator thread and the
UI thread can share one store.

Usage::

    from entity_sync.entity_store import EntityStore
    from entity_sync.persistence import JsonFilePersistence

    store = EntityStore(JsonFilePersistence(data_dir, "npc"), EntityKind.NPC)
    store.switch_chat("chat-1")
    entity = store.ensure_entity("Aria")
    if store.merge_fields(entity, {"name": "Aria", "mood": "calm"}):
        store.record_observation(entity, "chat-1")
    store.save()
"""

from __future__ import annotations

import json
import logging
import re
import threading
from datetime import datetime, timedelta

from entity_sync.models.base import Entity, EntityDatabase, EntityKind
from entity_sync.models.validators import SnapshotImportError, parse_snapshot
from entity_sync.persistence import DatabasePersistence
from entity_sync.utils import flatten_value, generate_entity_id, now_iso

logger = logging.getLogger(__name__)

SORT_KEYS = {
    "lastSeen": lambda e: e.last_seen,
    "appearCount": lambda e: e.appear_count,
    "name": lambda e: e.name.casefold(),
}
SORT_ORDERS = ("asc", "desc")


def _normalize(name: str) -> str:
    return name.strip().casefold()


class EntityStore:
    """Entity database for one kind, scoped to the active conversation.

    Parameters
    ----------
    persistence : DatabasePersistence
        Where databases are loaded from and saved to.
    kind : EntityKind
        The kind of entity this store holds.
    event_bus : EventBus, optional
        Receives ``entity_created`` / ``entity_updated`` / ``entity_deleted``
        and database signals.
    match_nameless_by_index : bool
        When True, a candidate without a name updates the existing entity at
        the same ordinal position instead of creating a fallback-named one.
    """

    def __init__(
        self,
        persistence: DatabasePersistence,
        kind: EntityKind = EntityKind.NPC,
        *,
        event_bus=None,
        match_nameless_by_index: bool = True,
    ):
        self.persistence = persistence
        self.kind = kind
        self.event_bus = event_bus
        self.match_nameless_by_index = match_nameless_by_index
        self.lock = threading.RLock()
        self._db = EntityDatabase(chat_id="", kind=kind)
        self._placeholder_re = re.compile(
            rf"^(?:npc|org|{re.escape(kind.prefix)})\d+$", re.IGNORECASE,
        )

    # ------------------------------------------------------------------
    # Conversation scope
    # ------------------------------------------------------------------

    @property
    def active_chat_id(self) -> str:
        return self._db.chat_id

    def switch_chat(self, chat_id: str) -> None:
        """Replace the in-memory database with the one stored for *chat_id*.

        A stored blob that fails validation is logged and ignored; the chat
        starts with an empty database.
        """
        with self.lock:
            blob = self.persistence.load(chat_id)
            db = EntityDatabase(chat_id=chat_id, kind=self.kind)
            if blob:
                try:
                    db = parse_snapshot(blob, kind=self.kind, chat_id=chat_id)
                except SnapshotImportError as exc:
                    logger.warning("Stored %s database for chat %s is invalid; "
                                   "starting empty.\n%s", self.kind.value, chat_id, exc)
            self._db = db
            count = len(db.entities)
        logger.debug("Switched %s store to chat %s (%d entities)",
                     self.kind.value, chat_id, count)
        self._emit("database_reloaded", chat_id, count)

    def save(self) -> None:
        """Persist the active database."""
        with self.lock:
            chat_id = self._db.chat_id
            if not chat_id:
                logger.debug("No active chat; %s database not saved", self.kind.value)
                return
            self.persistence.save(chat_id, self._db.to_json_dict())
            count = len(self._db.entities)
        self._emit("database_saved", chat_id, count)

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def get(self, entity_id: str) -> Entity | None:
        with self.lock:
            return self._db.entities.get(entity_id)

    def list_entities(self) -> list[Entity]:
        """Return all entities in creation order."""
        with self.lock:
            return sorted(self._db.entities.values(), key=lambda e: (e.created_at, e.id))

    def find_by_name(self, name: str) -> Entity | None:
        """Case-insensitive lookup over names and aliases."""
        target = _normalize(name)
        if not target:
            return None
        with self.lock:
            for entity in self._db.entities.values():
                if _normalize(entity.name) == target:
                    return entity
            for entity in self._db.entities.values():
                if any(_normalize(alias) == target for alias in entity.aliases):
                    return entity
        return None

    def is_placeholder_name(self, name: str) -> bool:
        """Return True for index placeholders such as ``npc0`` or ``org3``."""
        return bool(self._placeholder_re.match(name.strip()))

    # ------------------------------------------------------------------
    # Merge
    # ------------------------------------------------------------------

    def ensure_entity(self, name: str) -> Entity:
        """Return the entity called *name*, creating it if needed.

        Raises
        ------
        ValueError
            If *name* is blank.
        """
        name = name.strip()
        if not name:
            raise ValueError("Entity name cannot be blank.")
        with self.lock:
            existing = self.find_by_name(name)
            if existing is not None:
                return existing
            entity_id = generate_entity_id(name, self.kind.prefix)
            while entity_id in self._db.entities:
                entity_id = generate_entity_id(name, self.kind.prefix)
            now = self._creation_stamp()
            entity = Entity(
                id=entity_id,
                kind=self.kind,
                name=name,
                created_at=now,
                updated_at=now,
                last_chat_id=self._db.chat_id,
            )
            self._db.entities[entity_id] = entity
        logger.debug("Created %s '%s' (%s)", self.kind.value, name, entity_id)
        self._emit("entity_created", entity_id)
        return entity

    def merge_fields(self, entity: Entity, incoming: dict) -> bool:
        """Merge *incoming* into *entity*; return True if anything changed.

        Blank incoming values are ignored and never erase stored values.
        """
        changed = False
        with self.lock:
            for key, raw_value in incoming.items():
                value = flatten_value(raw_value)
                if not value or entity.fields.get(key) == value:
                    continue
                entity.fields[key] = value
                changed = True
            if changed and entity.fields.get("name"):
                entity.name = entity.fields["name"]
        if changed:
            self._emit("entity_updated", entity.id)
        else:
            logger.debug("Merge into %s changed nothing", entity.id)
        return changed

    def record_observation(self, entity: Entity, chat_id: str | None = None) -> None:
        """Count a changed sighting of *entity* in *chat_id*."""
        with self.lock:
            now = now_iso()
            entity.appear_count += 1
            entity.updated_at = now
            entity.last_seen = now
            entity.last_chat_id = chat_id or self._db.chat_id

    def apply_candidate(self, fields: dict[str, str], ordinal: int) -> tuple[Entity, bool] | None:
        """Merge one grouped bucket; return ``(entity, changed)``.

        Returns None when the bucket has no fields or is named after an index
        placeholder.
        A nameless bucket updates the entity at the same ordinal position
        (when ``match_nameless_by_index`` is set) or gets the fallback name
        ``"{Kind} {ordinal + 1}"``.
        """
        if not fields:
            return None
        name = (fields.get("name") or "").strip()
        with self.lock:
            if name and self.is_placeholder_name(name):
                logger.debug("Skipping placeholder-named %s bucket '%s'", self.kind.value, name)
                return None
            if name:
                entity = self.ensure_entity(name)
                if _normalize(entity.name) != _normalize(name):
                    # Matched through an alias: the rename wins over the old name.
                    fields = {k: v for k, v in fields.items() if k != "name"}
            else:
                entity = self._nameless_target(ordinal)
            changed = self.merge_fields(entity, fields)
            if changed:
                self.record_observation(entity)
            return entity, changed

    def _nameless_target(self, ordinal: int) -> Entity:
        if self.match_nameless_by_index:
            ordered = self.list_entities()
            if 0 <= ordinal < len(ordered):
                return ordered[ordinal]
        return self.ensure_entity(f"{self.kind.label} {ordinal + 1}")

    def rename_entity(self, entity_id: str, new_name: str) -> Entity:
        """Rename an entity, keeping its id and recording the old name as an alias.

        Raises
        ------
        KeyError
            If no entity has *entity_id*.
        ValueError
            If *new_name* is blank or already names another entity.
        """
        new_name = new_name.strip()
        if not new_name:
            raise ValueError("Entity name cannot be blank.")
        with self.lock:
            entity = self._db.entities.get(entity_id)
            if entity is None:
                raise KeyError(f"No {self.kind.value} with id '{entity_id}' in chat "
                               f"'{self._db.chat_id}'.")
            other = self.find_by_name(new_name)
            if other is not None and other.id != entity_id:
                raise ValueError(
                    f"'{new_name}' already names {other.id}. Delete or rename that "
                    f"entity first."
                )
            old_name = entity.name
            if old_name and _normalize(old_name) != _normalize(new_name):
                if all(_normalize(a) != _normalize(old_name) for a in entity.aliases):
                    entity.aliases.append(old_name)
            entity.aliases = [a for a in entity.aliases if _normalize(a) != _normalize(new_name)]
            entity.name = new_name
            entity.fields["name"] = new_name
            entity.updated_at = now_iso()
        self._emit("entity_updated", entity_id)
        self.save()
        return entity

    # ------------------------------------------------------------------
    # Delete
    # ------------------------------------------------------------------

    def delete(self, entity_id: str) -> bool:
        """Delete one entity; return False if it did not exist."""
        with self.lock:
            removed = self._db.entities.pop(entity_id, None)
        if removed is None:
            return False
        logger.info("Deleted %s '%s' (%s)", self.kind.value, removed.name, entity_id)
        self._emit("entity_deleted", entity_id)
        self.save()
        return True

    def delete_many(self, entity_ids) -> int:
        """Delete several entities with a single save; return how many existed."""
        removed = []
        with self.lock:
            for entity_id in entity_ids:
                if self._db.entities.pop(entity_id, None) is not None:
                    removed.append(entity_id)
        for entity_id in removed:
            self._emit("entity_deleted", entity_id)
        if removed:
            self.save()
        return len(removed)

    def cleanup_placeholders(self) -> list[Entity]:
        """Remove entities named after index placeholders; return them."""
        with self.lock:
            doomed = [e for e in self._db.entities.values() if self.is_placeholder_name(e.name)]
            for entity in doomed:
                del self._db.entities[entity.id]
        for entity in doomed:
            self._emit("entity_deleted", entity.id)
        if doomed:
            logger.info("Removed %d placeholder %s entities", len(doomed), self.kind.value)
            self.save()
        return doomed

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    def search(self, text: str = "", sort_by: str = "lastSeen", order: str = "desc") -> list[Entity]:
        """Case-insensitive substring search on names.

        Results are stably sorted by *sort_by* (``lastSeen``, ``appearCount``
        or ``name``); ties are broken by id.

        Raises
        ------
        ValueError
            If *sort_by* or *order* is not recognised.
        """
        if sort_by not in SORT_KEYS:
            raise ValueError(
                f"Cannot sort by '{sort_by}'. Choose one of: {', '.join(SORT_KEYS)}."
            )
        if order not in SORT_ORDERS:
            raise ValueError(f"Sort order must be 'asc' or 'desc', not '{order}'.")
        needle = text.strip().casefold()
        with self.lock:
            matches = [e for e in self._db.entities.values()
                       if needle in e.name.casefold()]
        matches.sort(key=lambda e: e.id)
        matches.sort(key=SORT_KEYS[sort_by], reverse=(order == "desc"))
        return matches

    # ------------------------------------------------------------------
    # Snapshot import / export
    # ------------------------------------------------------------------

    def export(self) -> str:
        """Return the active database as a JSON snapshot."""
        with self.lock:
            data = self._db.to_json_dict()
        return json.dumps(data, ensure_ascii=False, indent=2)

    def import_snapshot(self, text: str) -> int:
        """Replace the active database with *text*; return the entity count.

        All-or-nothing: on any validation failure ``SnapshotImportError`` is
        raised and the current database is untouched.
        """
        with self.lock:
            chat_id = self._db.chat_id
            if not chat_id:
                raise ValueError("No active conversation to import into. Switch to a chat first.")
            db = parse_snapshot(text, kind=self.kind, chat_id=chat_id)
            self._db = db
            count = len(db.entities)
        logger.info("Imported %d %s entities into chat %s", count, self.kind.value, chat_id)
        self.save()
        self._emit("database_reloaded", chat_id, count)
        return count

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _creation_stamp(self) -> str:
        # Creation order drives nameless matching, so stamps must be strictly increasing.
        stamp = now_iso()
        latest = max((e.created_at for e in self._db.entities.values()), default="")
        if latest and stamp <= latest:
            try:
                stamp = (datetime.fromisoformat(latest) + timedelta(microseconds=1)).isoformat()
            except ValueError:
                logger.debug("Unparseable createdAt '%s'; using wall clock", latest)
        return stamp

    def _emit(self, signal_name: str, *args) -> None:
        if self.event_bus is not None:
            getattr(self.event_bus, signal_name).emit(*args)
