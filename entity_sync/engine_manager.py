"""
entity_sync/engine_manager.py -- Facade wiring stores, coordinators and the world book.

One ``EngineManager`` owns, per entity kind (NPC and Organization):

    - an ``EntityStore`` for the active conversation,
    - a local ``SyncCoordinator`` that groups panel data into the store,
    - an external ``SyncCoordinator`` that pushes the store to the world book.

Collaborators are passed in; nothing is looked up globally.  The host UI
talks to the manager only.

Usage::

    from entity_sync.engine_manager import EngineManager

    em = EngineManager.from_data_dir(data_dir, event_bus=bus)
    em.switch_chat("chat-1")
    em.on_data_updated("interaction", {"npc0.姓名": "Aria"})
    em.sync_now()
    em.search("ar", sort_by="name", order="asc")
    em.shutdown()
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable

from entity_sync.config import EngineSettings, load_settings, save_settings
from entity_sync.entity_store import EntityStore
from entity_sync.event_bus import EventBus
from entity_sync.field_resolver import FieldNameResolver, PanelContext
from entity_sync.grouper import EntityGrouper
from entity_sync.models.base import Entity, EntityKind, SyncRecord
from entity_sync.paths import entities_dir, settings_path, world_book_path
from entity_sync.persistence import DatabasePersistence, JsonFilePersistence, MemoryPersistence
from entity_sync.sync_coordinator import (
    EntityExtractionTarget,
    SyncCoordinator,
    SyncResult,
    SyncStatus,
    WorldBookSyncTarget,
)
from entity_sync.world_book import (
    SQLiteWorldBook,
    WorldBookClient,
    deduplicate_entries,
    remove_entity_records,
)

logger = logging.getLogger(__name__)


@dataclass
class _Pipeline:
    kind: EntityKind
    context: PanelContext
    store: EntityStore
    local: SyncCoordinator
    external: SyncCoordinator | None


class EngineManager:
    """Entry point for the host application.

    Parameters
    ----------
    settings : EngineSettings, optional
        Defaults to ``EngineSettings()``.
    settings_file : str, optional
        Where toggles are persisted; settings are not saved when omitted.
    persistence_factory : callable, optional
        ``persistence_factory(kind) -> DatabasePersistence``.  In-memory by
        default.
    world_book : WorldBookClient, optional
        External store.  Without one, external sync is unavailable.
    resolver : FieldNameResolver, optional
    event_bus : EventBus, optional
        A private bus is created when omitted.
    clock, timer_factory
        Passed to the coordinators' debouncers.

    Every call into the shared world book happens under ``world_book_lock``.
    """

    def __init__(
        self,
        *,
        settings: EngineSettings | None = None,
        settings_file: str | None = None,
        persistence_factory: Callable[[EntityKind], DatabasePersistence] | None = None,
        world_book: WorldBookClient | None = None,
        resolver: FieldNameResolver | None = None,
        event_bus: EventBus | None = None,
        clock: Callable[[], float] = time.monotonic,
        timer_factory=threading.Timer,
    ):
        self.settings = settings or EngineSettings()
        self.settings_file = settings_file
        self.world_book = world_book
        self.resolver = resolver or FieldNameResolver()
        self.event_bus = event_bus if event_bus is not None else EventBus()
        self._owns_world_book = False
        self._chat_id = ""
        self._panel_cache: dict[str, object] = {}
        self._panel_lock = threading.Lock()
        self.world_book_lock = threading.RLock()

        if persistence_factory is None:
            memory: dict[EntityKind, MemoryPersistence] = {}

            def persistence_factory(kind):
                return memory.setdefault(kind, MemoryPersistence())

        panel_ids = {
            EntityKind.NPC: self.settings.source_panel_id,
            EntityKind.ORGANIZATION: self.settings.organization_panel_id,
        }
        self._pipelines: dict[EntityKind, _Pipeline] = {}
        for kind, panel_id in panel_ids.items():
            self._pipelines[kind] = self._build_pipeline(
                kind, self.resolver.context(panel_id), persistence_factory(kind),
                clock, timer_factory,
            )

        self.event_bus.data_updated.connect(self.on_data_updated)
        self.event_bus.entity_deleted.connect(self._on_entity_deleted)

    @classmethod
    def from_data_dir(cls, data_dir: str, **kwargs) -> EngineManager:
        """Build a manager persisting everything under *data_dir*.

        Entity databases go to ``entities/<kind>/``, the world book to
        ``runtime/world_book.db`` and toggles to ``settings.json``.
        """
        path = settings_path(data_dir)
        root = entities_dir(data_dir)
        kwargs.setdefault("settings", load_settings(path))
        kwargs.setdefault("settings_file", path)
        kwargs.setdefault(
            "persistence_factory", lambda kind: JsonFilePersistence(root, kind.value),
        )
        owns_book = "world_book" not in kwargs
        if owns_book:
            kwargs["world_book"] = SQLiteWorldBook(world_book_path(data_dir))
        manager = cls(**kwargs)
        manager._owns_world_book = owns_book
        return manager

    def _build_pipeline(self, kind, ctx, persistence, clock, timer_factory) -> _Pipeline:
        store = EntityStore(
            persistence, kind,
            event_bus=self.event_bus,
            match_nameless_by_index=self.settings.match_nameless_by_index,
        )
        timing = dict(
            event_bus=self.event_bus,
            wait=self.settings.debounce_wait_seconds,
            max_wait=self.settings.debounce_max_wait_seconds,
            clock=clock,
            timer_factory=timer_factory,
        )
        external = None
        if self.world_book is not None:
            push = WorldBookSyncTarget(
                f"{kind.value}:world_book", store, self.world_book, self.resolver, ctx,
                self.current_chat_id, lambda: self.settings.world_book_name,
                lock=self.world_book_lock,
            )
            external = SyncCoordinator(
                push.name, push, self.current_chat_id,
                enabled=self._external_auto_enabled(), **timing,
            )

        extract = EntityExtractionTarget(
            f"{kind.value}:local", store, EntityGrouper(self.resolver, ctx), self,
            self.current_chat_id,
        )

        def run_local(chat_id: str) -> SyncResult:
            result = extract(chat_id)
            if external is not None and (result.created_count or result.updated_count):
                external.notify()
            return result

        local = SyncCoordinator(
            extract.name, run_local, self.current_chat_id,
            enabled=self.settings.auto_sync_enabled, **timing,
        )
        return _Pipeline(kind, ctx, store, local, external)

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    def current_chat_id(self) -> str:
        return self._chat_id

    def store(self, kind: EntityKind = EntityKind.NPC) -> EntityStore:
        return self._pipeline(kind).store

    def coordinator(self, kind: EntityKind = EntityKind.NPC, *, external: bool = False) -> SyncCoordinator | None:
        pipeline = self._pipeline(kind)
        return pipeline.external if external else pipeline.local

    def get_panel_data(self, panel_id: str):
        """Latest raw data seen for *panel_id* in the active chat."""
        with self._panel_lock:
            return self._panel_cache.get(panel_id)

    # ------------------------------------------------------------------
    # Host notifications
    # ------------------------------------------------------------------

    def switch_chat(self, chat_id: str) -> None:
        """Make *chat_id* the active conversation.

        Pending debounced runs are dropped and cached panel data is cleared;
        runs already in flight finish as ``STALE``.
        """
        for pipeline in self._pipelines.values():
            pipeline.local.cancel_pending()
            if pipeline.external is not None:
                pipeline.external.cancel_pending()
        with self._panel_lock:
            self._panel_cache.clear()
        self._chat_id = chat_id or ""
        for pipeline in self._pipelines.values():
            pipeline.store.switch_chat(self._chat_id)
        logger.info("Active chat is now %s", self._chat_id or "(none)")
        self.event_bus.chat_changed.emit(self._chat_id)

    def on_data_updated(self, panel_id: str, data) -> None:
        """Cache *data* for *panel_id* and schedule a debounced local sync."""
        with self._panel_lock:
            self._panel_cache[panel_id] = data
        for pipeline in self._pipelines.values():
            if pipeline.context.panel_id == panel_id:
                pipeline.local.notify()

    def ingest(self, panel_id: str, data) -> SyncResult:
        """Cache *data* for *panel_id* and sync it right away, skipping the debounce."""
        with self._panel_lock:
            self._panel_cache[panel_id] = data
        for pipeline in self._pipelines.values():
            if pipeline.context.panel_id == panel_id:
                return self.sync_now(pipeline.kind)
        raise KeyError(f"Panel '{panel_id}' does not feed any entity store.")

    # ------------------------------------------------------------------
    # Operations exposed to the UI
    # ------------------------------------------------------------------

    def search(self, text: str = "", sort_by: str = "lastSeen", order: str = "desc",
               kind: EntityKind = EntityKind.NPC) -> list[Entity]:
        return self.store(kind).search(text, sort_by, order)

    def find(self, entity_id: str) -> Entity | None:
        """Look up *entity_id* in every store."""
        for pipeline in self._pipelines.values():
            entity = pipeline.store.get(entity_id)
            if entity is not None:
                return entity
        return None

    def delete(self, entity_id: str) -> bool:
        """Delete *entity_id* from whichever store holds it.

        Bound world-book entries are removed through the ``entity_deleted``
        signal.
        """
        return any(p.store.delete(entity_id) for p in self._pipelines.values())

    def delete_many(self, entity_ids) -> int:
        ids = list(entity_ids)
        return sum(p.store.delete_many(ids) for p in self._pipelines.values())

    def rename(self, entity_id: str, new_name: str) -> Entity:
        for pipeline in self._pipelines.values():
            if pipeline.store.get(entity_id) is not None:
                return pipeline.store.rename_entity(entity_id, new_name)
        raise KeyError(f"No entity with id '{entity_id}' in chat '{self._chat_id}'.")

    def cleanup_placeholders(self) -> list[Entity]:
        removed = []
        for pipeline in self._pipelines.values():
            removed.extend(pipeline.store.cleanup_placeholders())
        return removed

    def export(self, kind: EntityKind = EntityKind.NPC) -> str:
        return self.store(kind).export()

    def import_snapshot(self, text: str, kind: EntityKind = EntityKind.NPC) -> int:
        return self.store(kind).import_snapshot(text)

    def sync_now(self, kind: EntityKind = EntityKind.NPC) -> SyncResult:
        """Run the local sync, then the world-book push when external sync is on.

        Allowed even when auto sync is disabled.  Returns one combined
        result: local counts, world-book dedup count, errors from both.
        """
        pipeline = self._pipeline(kind)
        local = pipeline.local.sync_now()
        if (
            pipeline.external is None
            or not self.settings.external_sync_enabled
            or local.status in (SyncStatus.BUSY, SyncStatus.STALE, SyncStatus.FAILED)
        ):
            return local
        pipeline.external.cancel_pending()
        external = pipeline.external.sync_now(local.chat_id)
        combined = SyncResult(
            kind.value,
            status=local.status if external.status is SyncStatus.OK else external.status,
            chat_id=local.chat_id,
            created_count=local.created_count,
            updated_count=local.updated_count,
            unchanged_count=local.unchanged_count,
            skipped_count=local.skipped_count,
            removed_duplicates=external.removed_duplicates,
            errors=local.errors + [f"world book: {err}" for err in external.errors],
        )
        if combined.status is SyncStatus.SKIPPED and external.status is SyncStatus.OK:
            combined.status = SyncStatus.OK
        return combined

    def set_auto_sync_enabled(self, enabled: bool) -> None:
        self.settings.auto_sync_enabled = bool(enabled)
        self._apply_toggles()

    def set_external_sync_enabled(self, enabled: bool) -> None:
        if enabled and self.world_book is None:
            raise ValueError("External sync needs a world book; none is configured.")
        self.settings.external_sync_enabled = bool(enabled)
        self._apply_toggles()

    def cleanup_duplicates(self) -> list[SyncRecord]:
        """Run the dedup sweep on the target world book; return removed entries."""
        if self.world_book is None:
            raise ValueError("No world book is configured; there is nothing to deduplicate.")
        with self.world_book_lock:
            book = self.world_book.resolve_or_create_book(self.settings.world_book_name)
            removed = deduplicate_entries(self.world_book, book)
        logger.info("Removed %d duplicate world-book entries from '%s'", len(removed), book)
        return removed

    def shutdown(self) -> None:
        """Run pending debounced syncs, then stop the timers.

        The world book is closed if this manager opened it.
        """
        for pipeline in self._pipelines.values():
            pipeline.local.flush()
            if pipeline.external is not None:
                pipeline.external.flush()
            pipeline.local.shutdown()
            if pipeline.external is not None:
                pipeline.external.shutdown()
        if self._owns_world_book and hasattr(self.world_book, "close"):
            self.world_book.close()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _pipeline(self, kind: EntityKind) -> _Pipeline:
        try:
            return self._pipelines[EntityKind(kind)]
        except (KeyError, ValueError):
            raise KeyError(f"Unknown entity kind '{kind}'.") from None

    def _external_auto_enabled(self) -> bool:
        return self.settings.auto_sync_enabled and self.settings.external_sync_enabled

    def _apply_toggles(self) -> None:
        for pipeline in self._pipelines.values():
            pipeline.local.set_enabled(self.settings.auto_sync_enabled)
            if pipeline.external is not None:
                pipeline.external.set_enabled(self._external_auto_enabled())
        if self.settings_file:
            save_settings(self.settings_file, self.settings)

    def _on_entity_deleted(self, entity_id: str) -> None:
        if self.world_book is None:
            return
        try:
            with self.world_book_lock:
                book = self.world_book.resolve_or_create_book(self.settings.world_book_name)
                removed = remove_entity_records(self.world_book, book, entity_id)
        except Exception as exc:
            logger.exception("Could not remove world-book entries for %s", entity_id)
            self.event_bus.error_occurred.emit(
                f"Entity {entity_id} was deleted, but its world-book entry could not "
                f"be removed: {exc}"
            )
            return
        if removed:
            logger.info("Removed %d world-book entries bound to %s", removed, entity_id)
