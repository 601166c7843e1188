"""
entity_sync/models/validators.py -- Snapshot validation for import.

An imported snapshot replaces the active database wholesale, so it is
checked in two layers before any state is touched:

    1. ``jsonschema`` structural validation against ``SNAPSHOT_SCHEMA``
       (types, required keys, no negative counters).
    2. Semantic checks that JSON Schema cannot express (map keys must equal
       the entity ids they hold).

Only then is the payload parsed into an ``EntityDatabase``.  Any failure
raises ``SnapshotImportError`` with a friendly, numbered list of issues.

Usage::

    from entity_sync.models.validators import parse_snapshot

    db = parse_snapshot(text, kind=EntityKind.NPC, chat_id="chat-1")
"""

from __future__ import annotations

import json
import logging
from typing import Any

import jsonschema
from pydantic import ValidationError

from entity_sync.models.base import EntityDatabase, EntityKind

logger = logging.getLogger(__name__)


class SnapshotImportError(ValueError):
    """Raised when an import payload is not a valid entity snapshot."""

    def __init__(self, issues: list[str]):
        self.issues = list(issues)
        lines = ["The snapshot could not be imported:"]
        for i, issue in enumerate(self.issues, 1):
            lines.append(f"  {i}. {issue}")
        lines.append("The current entity database was left unchanged.")
        super().__init__("\n".join(lines))


_ENTITY_SCHEMA = {
    "type": "object",
    "required": ["id", "name"],
    "properties": {
        "id": {"type": "string", "minLength": 1},
        "kind": {"type": "string", "enum": [k.value for k in EntityKind]},
        "name": {"type": "string"},
        "fields": {
            "type": "object",
            "additionalProperties": {"type": "string"},
        },
        "aliases": {"type": "array", "items": {"type": "string"}},
        "appearCount": {"type": "integer", "minimum": 0},
        "createdAt": {"type": "string"},
        "updatedAt": {"type": "string"},
        "lastSeen": {"type": "string"},
        "lastChatId": {"type": "string"},
    },
}

SNAPSHOT_SCHEMA = {
    "type": "object",
    "required": ["entities"],
    "properties": {
        "version": {"type": "integer", "minimum": 1},
        "chatId": {"type": "string"},
        "kind": {"type": "string", "enum": [k.value for k in EntityKind]},
        "entities": {
            "type": "object",
            "additionalProperties": _ENTITY_SCHEMA,
        },
    },
}


def _humanize_error(error: jsonschema.ValidationError) -> str:
    """Convert a ``jsonschema.ValidationError`` into plain English."""
    path = " -> ".join(str(p) for p in error.absolute_path) if error.absolute_path else "(root)"
    msg = error.message
    if error.validator == "required":
        return f"Missing required field at {path}: {msg}"
    if error.validator == "type":
        return f"Wrong data type at '{path}': {msg}"
    if error.validator == "enum":
        return f"Invalid value at '{path}': {msg}"
    return f"Issue at '{path}': {msg}"


def validate_snapshot(data: Any) -> list[str]:
    """Return a list of human-readable issues (empty when *data* is valid)."""
    validator = jsonschema.Draft202012Validator(SNAPSHOT_SCHEMA)
    errors = sorted(validator.iter_errors(data), key=lambda e: list(e.absolute_path))
    issues = [_humanize_error(err) for err in errors]
    if issues:
        return issues

    for key, entity in data["entities"].items():
        if entity["id"] != key:
            issues.append(
                f"Entity stored under '{key}' declares id '{entity['id']}'; "
                f"the map key and the id must match."
            )
    return issues


def parse_snapshot(
    payload: str | dict,
    *,
    kind: EntityKind,
    chat_id: str,
) -> EntityDatabase:
    """Validate *payload* and return it as an ``EntityDatabase`` for *chat_id*.

    Import is an explicit migration into the active conversation: the
    snapshot's ``chatId`` and every entity's ``lastChatId`` are rewritten to
    *chat_id*.  Entities of another kind are rejected.

    Raises
    ------
    SnapshotImportError
        If the payload is not JSON, fails schema validation, or fails the
        semantic checks.
    """
    if isinstance(payload, (str, bytes)):
        try:
            data = json.loads(payload)
        except json.JSONDecodeError as exc:
            raise SnapshotImportError([f"Not valid JSON: {exc.msg} (line {exc.lineno})"]) from exc
        except UnicodeDecodeError as exc:
            raise SnapshotImportError([f"Not valid UTF-8: {exc.reason} at byte {exc.start}"]) from exc
    else:
        data = payload

    issues = validate_snapshot(data)
    if issues:
        raise SnapshotImportError(issues)

    snapshot_kind = data.get("kind", kind.value)
    if snapshot_kind != kind.value:
        raise SnapshotImportError(
            [f"Snapshot holds '{snapshot_kind}' entities but this store holds '{kind.value}'."]
        )
    for eid, entity in data["entities"].items():
        if entity.get("kind", kind.value) != kind.value:
            raise SnapshotImportError(
                [f"Entity '{eid}' is a '{entity['kind']}', expected '{kind.value}'."]
            )

    try:
        db = EntityDatabase.model_validate({**data, "chatId": chat_id, "kind": kind.value})
    except ValidationError as exc:
        raise SnapshotImportError([str(err["msg"]) for err in exc.errors()]) from exc

    for entity in db.entities.values():
        entity.kind = kind
        entity.last_chat_id = chat_id
    logger.debug("Parsed snapshot with %d entities for chat %s", len(db.entities), chat_id)
    return db
