"""
entity_sync/world_book.py -- External world-book contract and SQLite adapter.

The world book is the external knowledge store that mirrors entity records.
Entries are bound to entities by ``stable_entity_id`` (never by name), carry
the ``created_by`` marker of this engine, and are deduplicated so that each
entity owns exactly one entry per book.

``SQLiteWorldBook`` implements the ``WorldBookClient`` contract on a local
SQLite file; host applications can supply any other client with the same
methods.

Usage::

    from entity_sync.world_book import SQLiteWorldBook, deduplicate_entries

    with SQLiteWorldBook("runtime/world_book.db") as client:
        book = client.resolve_or_create_book("Entity Codex")
        removed = deduplicate_entries(client, book)
"""

from __future__ import annotations

import json
import logging
import os
import sqlite3
from typing import Protocol

from entity_sync.field_resolver import FieldNameResolver, PanelContext
from entity_sync.models.base import ENGINE_MARKER, Entity, SyncRecord
from entity_sync.utils import now_iso

logger = logging.getLogger(__name__)


class WorldBookClient(Protocol):
    """Operations the sync engine needs from an external world book."""

    def resolve_or_create_book(self, name: str) -> str: ...

    def list_entries(self, book: str) -> list[SyncRecord]: ...

    def create_entry(self, book: str, record: SyncRecord) -> SyncRecord: ...

    def update_entry(self, book: str, entry_id: str, record: SyncRecord) -> SyncRecord: ...

    def delete_entry(self, book: str, entry_id: str) -> bool: ...

    def find_entries(self, book: str, field: str, value: str) -> list[SyncRecord]: ...


# ---------------------------------------------------------------------------
# Schema DDL
# ---------------------------------------------------------------------------

_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS world_books (
    name TEXT PRIMARY KEY,
    created_at TEXT
);

CREATE TABLE IF NOT EXISTS entries (
    entry_id INTEGER PRIMARY KEY AUTOINCREMENT,
    book TEXT NOT NULL,
    stable_entity_id TEXT NOT NULL,
    name TEXT NOT NULL,
    content TEXT DEFAULT '',
    keywords JSON NOT NULL DEFAULT '[]',
    created_by TEXT DEFAULT '',
    created_at TEXT,
    updated_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_entries_book ON entries(book);
CREATE INDEX IF NOT EXISTS idx_entries_stable ON entries(book, stable_entity_id);
"""

# Columns ``find_entries`` may filter on.
_SEARCHABLE_FIELDS = {
    "stable_entity_id": "stable_entity_id",
    "stableEntityId": "stable_entity_id",
    "name": "name",
    "created_by": "created_by",
    "createdBy": "created_by",
}


class SQLiteWorldBook:
    """World book stored in a SQLite database file.

    Parameters
    ----------
    db_path : str
        Path of the database file; parent directories are created.
        ``":memory:"`` gives a throwaway in-memory book.
    """

    def __init__(self, db_path: str):
        self.db_path = str(db_path)
        if self.db_path != ":memory:":
            parent = os.path.dirname(os.path.abspath(self.db_path))
            os.makedirs(parent, exist_ok=True)

        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        if self.db_path != ":memory:":
            self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.executescript(_SCHEMA_SQL)
        self._conn.commit()

    # ------------------------------------------------------------------
    # WorldBookClient
    # ------------------------------------------------------------------

    def resolve_or_create_book(self, name: str) -> str:
        name = name.strip()
        if not name:
            raise ValueError("World book name cannot be blank.")
        self._conn.execute(
            "INSERT OR IGNORE INTO world_books (name, created_at) VALUES (?, ?)",
            (name, now_iso()),
        )
        self._conn.commit()
        return name

    def list_entries(self, book: str) -> list[SyncRecord]:
        rows = self._conn.execute(
            "SELECT * FROM entries WHERE book = ? ORDER BY entry_id", (book,)
        ).fetchall()
        return [self._row_to_record(row) for row in rows]

    def create_entry(self, book: str, record: SyncRecord) -> SyncRecord:
        self._require_book(book)
        now = now_iso()
        created_at = record.created_at or now
        updated_at = record.updated_at or now
        cursor = self._conn.execute(
            """
            INSERT INTO entries
                (book, stable_entity_id, name, content, keywords,
                 created_by, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                book,
                record.stable_entity_id,
                record.name,
                record.content,
                json.dumps(record.keywords, ensure_ascii=False),
                record.created_by,
                created_at,
                updated_at,
            ),
        )
        self._conn.commit()
        return record.model_copy(update={
            "external_entry_id": str(cursor.lastrowid),
            "created_at": created_at,
            "updated_at": updated_at,
        })

    def update_entry(self, book: str, entry_id: str, record: SyncRecord) -> SyncRecord:
        updated_at = record.updated_at or now_iso()
        cursor = self._conn.execute(
            """
            UPDATE entries
               SET stable_entity_id = ?, name = ?, content = ?, keywords = ?,
                   created_by = ?, updated_at = ?
             WHERE book = ? AND entry_id = ?
            """,
            (
                record.stable_entity_id,
                record.name,
                record.content,
                json.dumps(record.keywords, ensure_ascii=False),
                record.created_by,
                updated_at,
                book,
                int(entry_id),
            ),
        )
        self._conn.commit()
        if cursor.rowcount == 0:
            raise KeyError(f"World book '{book}' has no entry {entry_id}.")
        row = self._conn.execute(
            "SELECT * FROM entries WHERE entry_id = ?", (int(entry_id),)
        ).fetchone()
        return self._row_to_record(row)

    def delete_entry(self, book: str, entry_id: str) -> bool:
        cursor = self._conn.execute(
            "DELETE FROM entries WHERE book = ? AND entry_id = ?", (book, int(entry_id))
        )
        self._conn.commit()
        return cursor.rowcount > 0

    def find_entries(self, book: str, field: str, value: str) -> list[SyncRecord]:
        column = _SEARCHABLE_FIELDS.get(field)
        if column is None:
            raise ValueError(
                f"Cannot search world-book entries by '{field}'. "
                f"Searchable fields: stable_entity_id, name, created_by."
            )
        rows = self._conn.execute(
            f"SELECT * FROM entries WHERE book = ? AND {column} = ? ORDER BY entry_id",
            (book, value),
        ).fetchall()
        return [self._row_to_record(row) for row in rows]

    # ------------------------------------------------------------------
    # Connection management
    # ------------------------------------------------------------------

    def close(self) -> None:
        """Close the database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _require_book(self, book: str) -> None:
        row = self._conn.execute("SELECT 1 FROM world_books WHERE name = ?", (book,)).fetchone()
        if row is None:
            raise KeyError(f"World book '{book}' does not exist.")

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> SyncRecord:
        return SyncRecord(
            external_entry_id=str(row["entry_id"]),
            stable_entity_id=row["stable_entity_id"],
            name=row["name"],
            content=row["content"] or "",
            keywords=json.loads(row["keywords"] or "[]"),
            created_by=row["created_by"] or "",
            created_at=row["created_at"] or "",
            updated_at=row["updated_at"] or "",
        )


# ---------------------------------------------------------------------------
# Record formatting
# ---------------------------------------------------------------------------

def format_entity_record(entity: Entity, resolver: FieldNameResolver, ctx: PanelContext) -> SyncRecord:
    """Project *entity* into the ``SyncRecord`` pushed to the world book.

    Profile lines follow the configured field order; user-defined fields
    come after, in the order they were first stored.
    """
    lines = [
        f"# {entity.name}",
        "",
        f"- Type: {ctx.entity_label}",
        f"- Appearances: {entity.appear_count}",
        f"- Last seen: {entity.last_seen or 'never'}",
        "",
        "## Profile",
        "",
    ]
    ordered_keys = [key for key in ctx.keys if key != "name"]
    ordered_keys += [key for key in entity.fields if key not in ctx.keys]
    for key in ordered_keys:
        value = entity.fields.get(key)
        if value:
            lines.append(f"**{resolver.display_label(key, ctx)}**: {value}")
    lines += ["", "---", f"_Maintained by {ENGINE_MARKER} (id: {entity.id})_"]

    keywords = []
    for word in [entity.name, *entity.aliases]:
        if word and word not in keywords:
            keywords.append(word)

    return SyncRecord(
        stable_entity_id=entity.id,
        name=entity.name,
        content="\n".join(lines),
        keywords=keywords,
        created_by=ENGINE_MARKER,
    )


# ---------------------------------------------------------------------------
# Entry maintenance
# ---------------------------------------------------------------------------

def _recency_key(record: SyncRecord):
    entry_id = record.external_entry_id
    return (
        record.updated_at,
        record.created_at,
        int(entry_id) if entry_id.isdigit() else 0,
        entry_id,
    )


def _owned_entries(client: WorldBookClient, book: str, stable_id: str) -> list[SyncRecord]:
    return [
        r for r in client.find_entries(book, "stable_entity_id", stable_id)
        if r.created_by == ENGINE_MARKER
    ]


def upsert_entity_record(client: WorldBookClient, book: str, record: SyncRecord) -> tuple[SyncRecord, bool]:
    """Create or update the entry bound to ``record.stable_entity_id``.

    Returns ``(stored_record, created)``.  When several entries are bound to
    the id, the most recently updated one is rewritten; the dedup sweep
    removes the rest.
    """
    existing = _owned_entries(client, book, record.stable_entity_id)
    if existing:
        target = max(existing, key=_recency_key)
        return client.update_entry(book, target.external_entry_id, record), False
    return client.create_entry(book, record), True


def deduplicate_entries(client: WorldBookClient, book: str) -> list[SyncRecord]:
    """Keep one engine-created entry per stable entity id; return the removed ones.

    The most recently updated entry survives.  Entries created by anything
    else are never touched.
    """
    groups: dict[str, list[SyncRecord]] = {}
    for record in client.list_entries(book):
        if record.created_by != ENGINE_MARKER or not record.stable_entity_id:
            continue
        groups.setdefault(record.stable_entity_id, []).append(record)

    removed: list[SyncRecord] = []
    for stable_id, records in groups.items():
        if len(records) < 2:
            continue
        keep = max(records, key=_recency_key)
        for record in records:
            if record is keep:
                continue
            if client.delete_entry(book, record.external_entry_id):
                removed.append(record)
        logger.info("Deduplicated %s in '%s': kept entry %s",
                    stable_id, book, keep.external_entry_id)
    return removed


def remove_entity_records(client: WorldBookClient, book: str, stable_id: str) -> int:
    """Delete every engine-created entry bound to *stable_id*; return the count."""
    count = 0
    for record in _owned_entries(client, book, stable_id):
        if client.delete_entry(book, record.external_entry_id):
            count += 1
    return count
