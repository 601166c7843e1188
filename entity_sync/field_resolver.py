"""
entity_sync/field_resolver.py -- Maps surface field names to canonical keys.

AI-generated panel data names the same semantic field in several ways: the
canonical key (``relationship``), a positional column (``col_4`` or ``4``),
a localized label (``关系类型``), or one of the many spellings of "name".
``FieldNameResolver`` turns each of those into a stable ``FieldKey`` using a
``PanelContext`` built from the panel configuration.

Resolution order (and precedence when two surface forms collide inside one
entity bucket): exact key > key in another case > positional > label.
Unknown non-ASCII labels are kept verbatim as user-defined keys; unknown
ASCII names are dropped.

Usage::

    from entity_sync.field_resolver import FieldNameResolver

    resolver = FieldNameResolver()
    ctx = resolver.context("interaction")
    resolver.canonical_key("关系类型", ctx)   # ("relationship", True)
    resolver.canonical_key("col_1", ctx)      # ("name", True)
    resolver.display_label("mood", ctx)       # "情绪"
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import NamedTuple

from entity_sync.models.base import EntityKind

logger = logging.getLogger(__name__)


# Every spelling of "the entity's name" seen in generated panel data.
NAME_ALIASES = frozenset({
    "姓名", "名字", "名称", "角色名", "角色名称", "组织名称",
    "npc_name", "npcname", "character_name", "charactername",
    "person_name", "personname", "org_name",
})

INTERNAL_KEYS = frozenset({"index", "source"})

_POSITIONAL_RE = re.compile(r"^(?:col_)?(\d+)$", re.IGNORECASE)


# ---------------------------------------------------------------------------
# Resolution methods and their precedence
# ---------------------------------------------------------------------------

EXACT = "exact"
FOLDED = "folded"
POSITIONAL = "positional"
LABEL = "label"
CUSTOM = "custom"

PRECEDENCE = {EXACT: 4, FOLDED: 3, POSITIONAL: 2, LABEL: 1, CUSTOM: 0}


class Resolution(NamedTuple):
    """A resolved canonical key and the rule that produced it."""

    key: str
    method: str

    @property
    def rank(self) -> int:
        return PRECEDENCE[self.method]


# ---------------------------------------------------------------------------
# Panel context
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class FieldSpec:
    """One configured panel column."""

    key: str
    label: str
    enabled: bool = True


@dataclass(frozen=True)
class PanelContext:
    """Field layout of one panel plus the entity kind it produces."""

    panel_id: str
    entity_prefix: str
    kind: EntityKind
    fields: tuple[FieldSpec, ...] = ()

    @property
    def entity_label(self) -> str:
        return self.kind.label

    @property
    def enabled_fields(self) -> tuple[FieldSpec, ...]:
        return tuple(f for f in self.fields if f.enabled)

    @property
    def keys(self) -> tuple[str, ...]:
        return tuple(f.key for f in self.fields)

    @classmethod
    def from_config(
        cls,
        panel_id: str,
        config: dict,
        *,
        kind: EntityKind,
        prefix: str | None = None,
    ) -> PanelContext:
        """Build a context from a panel config ``{"items": [{id, label, enabled}]}``.

        Items without an ``id`` are skipped.  ``enabled`` defaults to True and
        ``label`` defaults to the id.
        """
        specs = []
        for item in config.get("items", []):
            key = str(item.get("id") or "").strip()
            if not key:
                continue
            specs.append(FieldSpec(
                key=key,
                label=str(item.get("label") or key).strip(),
                enabled=bool(item.get("enabled", True)),
            ))
        return cls(
            panel_id=panel_id,
            entity_prefix=prefix or kind.prefix,
            kind=kind,
            fields=tuple(specs),
        )


# Panel configuration shipped with the engine.  Host applications can pass
# their own configs to ``FieldNameResolver``.
DEFAULT_PANEL_CONFIGS: dict[str, dict] = {
    "interaction": {
        "kind": EntityKind.NPC.value,
        "items": [
            {"id": "name", "label": "姓名"},
            {"id": "type", "label": "对象类型"},
            {"id": "status", "label": "当前状态"},
            {"id": "relationship", "label": "关系类型"},
            {"id": "intimacy", "label": "亲密度"},
            {"id": "mood", "label": "情绪"},
            {"id": "identity", "label": "身份"},
            {"id": "description", "label": "背景/描述"},
            {"id": "appearance", "label": "外貌特征"},
            {"id": "outfit", "label": "服装/装备"},
            {"id": "notes", "label": "备注"},
        ],
    },
    "organization": {
        "kind": EntityKind.ORGANIZATION.value,
        "items": [
            {"id": "name", "label": "组织名称"},
            {"id": "type", "label": "组织类型"},
            {"id": "status", "label": "当前状态"},
            {"id": "leader", "label": "领导者"},
            {"id": "members", "label": "成员"},
            {"id": "influence", "label": "影响力"},
            {"id": "description", "label": "描述"},
            {"id": "notes", "label": "备注"},
        ],
    },
}


def is_internal_key(surface: str) -> bool:
    """Return True for bookkeeping keys that never become entity fields."""
    return surface in INTERNAL_KEYS or surface.startswith("_")


def _looks_like_custom_label(surface: str) -> bool:
    return any(ord(ch) > 127 for ch in surface) and any(ch.isalnum() for ch in surface)


# ---------------------------------------------------------------------------
# Resolver
# ---------------------------------------------------------------------------

class FieldNameResolver:
    """Resolve surface field names against panel contexts.

    Parameters
    ----------
    panel_configs : dict, optional
        ``{panel_id: {"kind": "npc", "prefix": "npc", "items": [...]}}``.
        Defaults to ``DEFAULT_PANEL_CONFIGS``.
    """

    def __init__(self, panel_configs: dict[str, dict] | None = None):
        configs = panel_configs if panel_configs is not None else DEFAULT_PANEL_CONFIGS
        self._contexts: dict[str, PanelContext] = {}
        for panel_id, config in configs.items():
            kind = EntityKind(config.get("kind", EntityKind.NPC.value))
            self._contexts[panel_id] = PanelContext.from_config(
                panel_id, config, kind=kind, prefix=config.get("prefix"),
            )

    def context(self, panel_id: str) -> PanelContext:
        """Return the context for *panel_id*.

        Raises
        ------
        KeyError
            If no panel with that id is configured.
        """
        try:
            return self._contexts[panel_id]
        except KeyError:
            available = ", ".join(sorted(self._contexts)) or "(none)"
            raise KeyError(
                f"Unknown panel '{panel_id}'. Configured panels: {available}"
            ) from None

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def resolve(self, surface: str, ctx: PanelContext) -> Resolution | None:
        """Resolve *surface* to a ``Resolution``, or None when it is unknown."""
        surface = str(surface).strip()
        if not surface or is_internal_key(surface):
            return None

        if surface in ctx.keys:
            return Resolution(surface, EXACT)

        folded = surface.casefold()
        for key in ctx.keys:
            if key.casefold() == folded:
                return Resolution(key, FOLDED)

        match = _POSITIONAL_RE.match(surface)
        if match:
            position = int(match.group(1))
            enabled = ctx.enabled_fields
            if 1 <= position <= len(enabled):
                return Resolution(enabled[position - 1].key, POSITIONAL)
            return None

        for spec in ctx.fields:
            if spec.label.casefold() == folded:
                return Resolution(spec.key, LABEL)
        if folded in NAME_ALIASES:
            return Resolution("name", LABEL)

        if _looks_like_custom_label(surface):
            return Resolution(surface, CUSTOM)
        return None

    def canonical_key(self, surface: str, ctx: PanelContext) -> tuple[str | None, bool]:
        """Return ``(key, found)`` for *surface*; ``(None, False)`` when unknown."""
        resolution = self.resolve(surface, ctx)
        if resolution is None:
            logger.debug("No canonical key for '%s' on panel %s", surface, ctx.panel_id)
            return None, False
        return resolution.key, True

    @staticmethod
    def display_label(key: str, ctx: PanelContext) -> str:
        """Return the configured label for *key*, or *key* itself."""
        for spec in ctx.fields:
            if spec.key == key:
                return spec.label
        return key
