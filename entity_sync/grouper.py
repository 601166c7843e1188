"""
entity_sync/grouper.py -- Split raw panel data into per-entity field maps.

Raw panel data is a flat mapping whose keys are either *prefixed*
(``npc0.姓名``, ``org2.type``) and belong to one entity bucket, or *global*
and apply to every bucket that does not define the field itself.  A list of
row mappings is also accepted; row *i* becomes bucket *i*.

Global values are backfilled exactly once, here, from a single snapshot.
Stored entities are never re-broadcast against on later merges.

Usage::

    from entity_sync.grouper import EntityGrouper

    grouper = EntityGrouper(resolver, resolver.context("interaction"))
    grouper.group({"npc0.姓名": "Aria", "npc1.姓名": "Borin"})
    # {"npc0": {"name": "Aria"}, "npc1": {"name": "Borin"}}
"""

from __future__ import annotations

import logging
import re
from typing import Any, NamedTuple

from entity_sync.field_resolver import FieldNameResolver, PanelContext, Resolution
from entity_sync.utils import flatten_value

logger = logging.getLogger(__name__)

# Prefixed keys that belong to some other entity kind (``org0.x`` on an NPC
# panel) are neither bucket fields nor globals.
_ANY_REF_RE = re.compile(r"^[A-Za-z]+\d+\.")


class EntityRef(NamedTuple):
    """Parsed form of a prefixed key such as ``npc3.name``."""

    kind: str
    index: int
    field: str


def parse_entity_ref(key: str, prefix: str) -> EntityRef | None:
    """Parse ``"{prefix}{index}.{field}"``; return None for anything else.

    >>> parse_entity_ref("npc12.name", "npc")
    EntityRef(kind='npc', index=12, field='name')
    >>> parse_entity_ref("npcX.name", "npc") is None
    True
    """
    match = re.match(rf"^{re.escape(prefix)}(\d+)\.(.+)$", key)
    if not match:
        return None
    field = match.group(2).strip()
    if not field:
        return None
    return EntityRef(prefix, int(match.group(1)), field)


def bucket_name(prefix: str, index: int) -> str:
    return f"{prefix}{index}"


def bucket_index(name: str, prefix: str) -> int | None:
    """Return the ordinal encoded in a bucket name like ``npc2``."""
    match = re.match(rf"^{re.escape(prefix)}(\d+)$", name)
    return int(match.group(1)) if match else None


class EntityGrouper:
    """Group raw panel data into ``{bucket: {FieldKey: str}}``.

    Parameters
    ----------
    resolver : FieldNameResolver
        Maps surface field names to canonical keys.
    context : PanelContext
        Panel the data came from; supplies the default prefix.
    """

    def __init__(self, resolver: FieldNameResolver, context: PanelContext):
        self.resolver = resolver
        self.context = context

    def group(self, raw: Any, prefix: str | None = None) -> dict[str, dict[str, str]]:
        """Return candidate field maps keyed by bucket name, ordered by index."""
        prefix = prefix or self.context.entity_prefix
        if not raw:
            return {}
        if isinstance(raw, (list, tuple)):
            return self._group_rows(raw, prefix)
        if not isinstance(raw, dict):
            raise TypeError(
                f"Panel data must be a mapping or a list of rows, got {type(raw).__name__}"
            )

        buckets: dict[int, dict[str, tuple[Resolution, str]]] = {}
        globals_: dict[str, tuple[Resolution, str]] = {}

        for raw_key, raw_value in raw.items():
            key = str(raw_key)
            value = flatten_value(raw_value)
            ref = parse_entity_ref(key, prefix)
            if ref is not None:
                if not value:
                    continue
                bucket = buckets.get(ref.index, {})
                if self._place(bucket, ref.field, value):
                    buckets[ref.index] = bucket
            elif _ANY_REF_RE.match(key):
                logger.debug("Ignoring foreign entity key '%s' on panel %s",
                             key, self.context.panel_id)
            elif value:
                self._place(globals_, key, value)

        if not buckets and globals_:
            buckets[0] = {}

        result: dict[str, dict[str, str]] = {}
        for index in sorted(buckets):
            fields = {k: v for k, (_res, v) in buckets[index].items()}
            for key, (_res, value) in globals_.items():
                fields.setdefault(key, value)
            result[bucket_name(prefix, index)] = fields
        return result

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _group_rows(self, rows, prefix: str) -> dict[str, dict[str, str]]:
        result: dict[str, dict[str, str]] = {}
        for index, row in enumerate(rows):
            if not isinstance(row, dict):
                logger.debug("Skipping non-mapping row %d on panel %s",
                             index, self.context.panel_id)
                continue
            placed: dict[str, tuple[Resolution, str]] = {}
            for raw_key, raw_value in row.items():
                value = flatten_value(raw_value)
                if value:
                    self._place(placed, str(raw_key), value)
            if placed:
                result[bucket_name(prefix, index)] = {k: v for k, (_r, v) in placed.items()}
        return result

    def _place(self, target: dict[str, tuple[Resolution, str]], surface: str, value: str) -> bool:
        """Store *value* under the canonical key of *surface*; False if it is unknown.

        An existing value for the same key is replaced only by a resolution
        of equal or higher precedence.
        """
        resolution = self.resolver.resolve(surface, self.context)
        if resolution is None:
            logger.debug("Dropping unresolved field '%s' on panel %s",
                         surface, self.context.panel_id)
            return False
        existing = target.get(resolution.key)
        if existing is None or existing[0].rank <= resolution.rank:
            target[resolution.key] = (resolution, value)
        return True
