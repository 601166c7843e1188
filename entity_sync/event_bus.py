"""
entity_sync/event_bus.py -- Change notifications using Qt signals.

The engine components publish lifecycle and sync events on an
``EventBus`` instance handed to them at construction time.  There is no
process-wide instance: whoever wires the engine owns the bus.

Usage::

    from entity_sync.event_bus import EventBus

    bus = EventBus()
    bus.entity_deleted.connect(my_handler)
    store = EntityStore(persistence, EntityKind.NPC, event_bus=bus)
"""

from __future__ import annotations

from PySide6.QtCore import QObject, Signal


class EventBus(QObject):
    """Signal bus shared by the stores, coordinators and the host UI.

    Signals
    -------
    data_updated(str, object)
        Panel data changed. Payload is ``(panel_id, data)``.
    chat_changed(str)
        The active conversation changed. Payload is the new chat id.
    entity_created(str)
        An entity was created. Payload is the entity ID.
    entity_updated(str)
        An entity's fields changed during a merge or rename.
    entity_deleted(str)
        An entity was deleted. Bound world-book records should be removed.
    database_saved(str, int)
        A database was written. Payload is ``(chat_id, entity_count)``.
    database_reloaded(str, int)
        A database was loaded or imported. Payload is ``(chat_id, count)``.
    sync_finished(str, object)
        A coordinator finished a run. Payload is ``(target, SyncResult)``.
    error_occurred(str)
        A failure the user should see.
    """

    data_updated = Signal(str, object)
    chat_changed = Signal(str)

    # Entity lifecycle
    entity_created = Signal(str)
    entity_updated = Signal(str)
    entity_deleted = Signal(str)

    # Persistence
    database_saved = Signal(str, int)
    database_reloaded = Signal(str, int)

    # Sync and errors
    sync_finished = Signal(str, object)
    error_occurred = Signal(str)
