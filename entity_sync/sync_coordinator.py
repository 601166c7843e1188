"""
entity_sync/sync_coordinator.py -- Debounced, single-flight sync runs.

A ``SyncCoordinator`` owns one sync target (local entity extraction or the
external world-book push).  Data-changed notifications are debounced with a
quiet window ``wait`` and a hard bound ``max_wait`` measured on the
monotonic clock.  Runs never overlap: a run requested while another is in
progress returns ``SyncStatus.BUSY`` at once instead of queueing.

The chat id is captured when a run is requested.  If the active chat has
changed by the time results are ready, they are discarded and the run
reports ``SyncStatus.STALE``.

Usage::

    coordinator = SyncCoordinator("local", target, get_chat_id, event_bus=bus)
    bus.data_updated.connect(lambda *_: coordinator.notify())
    result = coordinator.sync_now()
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Protocol

from entity_sync.entity_store import EntityStore
from entity_sync.field_resolver import FieldNameResolver, PanelContext
from entity_sync.grouper import EntityGrouper, bucket_index
from entity_sync.world_book import (
    WorldBookClient,
    deduplicate_entries,
    format_entity_record,
    upsert_entity_record,
)

logger = logging.getLogger(__name__)


class SyncState(Enum):
    IDLE = "idle"
    SYNCING = "syncing"
    DISABLED = "disabled"


class SyncStatus(str, Enum):
    OK = "ok"
    BUSY = "busy"
    STALE = "stale"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class SyncResult:
    """Outcome of one sync run.  Per-entity failures land in ``errors``."""

    target: str
    status: SyncStatus = SyncStatus.OK
    chat_id: str = ""
    created_count: int = 0
    updated_count: int = 0
    unchanged_count: int = 0
    skipped_count: int = 0
    removed_duplicates: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.status is SyncStatus.OK and not self.errors

    def summary(self) -> str:
        text = (f"{self.target} [{self.status.value}] chat={self.chat_id or '-'} "
                f"created={self.created_count} updated={self.updated_count} "
                f"unchanged={self.unchanged_count}")
        if self.removed_duplicates:
            text += f" deduplicated={self.removed_duplicates}"
        if self.errors:
            text += f" errors={len(self.errors)}"
        return text


class PanelDataSource(Protocol):
    def get_panel_data(self, panel_id: str): ...


# ---------------------------------------------------------------------------
# Debounce
# ---------------------------------------------------------------------------

class Debouncer:
    """Call *callback* once triggers have been quiet for *wait* seconds.

    Under continuous triggering the callback still fires no later than
    *max_wait* seconds after the first trigger of the burst.

    Parameters
    ----------
    clock : callable
        Monotonic time source in seconds.
    timer_factory : callable
        ``timer_factory(delay, fn, args=...)`` returning an object with
        ``start()`` and ``cancel()``; ``threading.Timer`` by default.
    """

    def __init__(
        self,
        callback: Callable[[], None],
        wait: float,
        max_wait: float | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        timer_factory=threading.Timer,
    ):
        if wait < 0 or (max_wait is not None and max_wait < wait):
            raise ValueError("Debounce needs 0 <= wait <= max_wait.")
        self.callback = callback
        self.wait = wait
        self.max_wait = max_wait
        self._clock = clock
        self._timer_factory = timer_factory
        self._lock = threading.Lock()
        self._timer = None
        self._burst_start: float | None = None
        self._generation = 0

    @property
    def pending(self) -> bool:
        return self._timer is not None

    def trigger(self) -> float:
        """Schedule (or reschedule) the callback; return the delay used."""
        with self._lock:
            now = self._clock()
            if self._burst_start is None:
                self._burst_start = now
            delay = self.wait
            if self.max_wait is not None:
                delay = max(0.0, min(delay, self._burst_start + self.max_wait - now))
            if self._timer is not None:
                self._timer.cancel()
            self._generation += 1
            timer = self._timer_factory(delay, self._fire, args=(self._generation,))
            timer.daemon = True
            self._timer = timer
        timer.start()
        return delay

    def cancel(self) -> None:
        """Drop any pending call."""
        with self._lock:
            self._reset()

    def flush(self) -> bool:
        """Run a pending call immediately; return False if none was pending."""
        with self._lock:
            if self._timer is None:
                return False
            self._reset()
        self.callback()
        return True

    def _fire(self, generation: int) -> None:
        with self._lock:
            if generation != self._generation:
                return
            self._timer = None
            self._burst_start = None
        self.callback()

    def _reset(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
        self._timer = None
        self._burst_start = None
        self._generation += 1


# ---------------------------------------------------------------------------
# Coordinator
# ---------------------------------------------------------------------------

class SyncCoordinator:
    """State machine around one sync target.

    Parameters
    ----------
    name : str
        Target name reported in ``SyncResult.target`` and log lines.
    run_fn : callable
        ``run_fn(chat_id) -> SyncResult``; does the actual work.
    get_chat_id : callable
        Returns the currently active chat id.
    event_bus : EventBus, optional
        Receives ``sync_finished(name, result)``.
    """

    def __init__(
        self,
        name: str,
        run_fn: Callable[[str], SyncResult],
        get_chat_id: Callable[[], str],
        *,
        event_bus=None,
        wait: float = 0.5,
        max_wait: float = 3.0,
        enabled: bool = True,
        clock: Callable[[], float] = time.monotonic,
        timer_factory=threading.Timer,
    ):
        self.name = name
        self._run_fn = run_fn
        self._get_chat_id = get_chat_id
        self.event_bus = event_bus
        self._enabled = enabled
        self._closed = False
        self._busy = threading.Lock()
        self._syncing = False
        self._pending_chat_id = ""
        self.last_result: SyncResult | None = None
        self._debouncer = Debouncer(
            self._on_debounced, wait, max_wait, clock=clock, timer_factory=timer_factory,
        )

    @property
    def state(self) -> SyncState:
        if self._syncing:
            return SyncState.SYNCING
        if not self._enabled or self._closed:
            return SyncState.DISABLED
        return SyncState.IDLE

    @property
    def enabled(self) -> bool:
        return self._enabled

    def set_enabled(self, enabled: bool) -> None:
        """Gate automatic runs.  Disabling drops any pending debounced run."""
        self._enabled = bool(enabled)
        if not self._enabled:
            self._debouncer.cancel()
        logger.info("Auto sync for %s %s", self.name, "enabled" if enabled else "disabled")

    def notify(self) -> bool:
        """Handle a data-changed notification; return False when ignored."""
        if not self._enabled or self._closed:
            logger.debug("Ignoring change notification for %s (auto sync off)", self.name)
            return False
        self._pending_chat_id = self._get_chat_id() or ""
        self._debouncer.trigger()
        return True

    def cancel_pending(self) -> None:
        """Drop a debounced run that has not started yet."""
        self._debouncer.cancel()

    def flush(self) -> bool:
        """Run a pending debounced sync right away."""
        return self._debouncer.flush()

    def sync_now(self, chat_id: str | None = None) -> SyncResult:
        """Run immediately.  Returns ``BUSY`` if a run is already in progress."""
        if chat_id is None:
            chat_id = self._get_chat_id() or ""
        return self._run(chat_id)

    def shutdown(self) -> None:
        self._closed = True
        self._debouncer.cancel()

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _on_debounced(self) -> None:
        if not self._enabled or self._closed:
            return
        result = self._run(self._pending_chat_id)
        if result.status is SyncStatus.BUSY:
            # Changes arrived during a run; pick them up once it is done.
            self._debouncer.trigger()

    def _run(self, chat_id: str) -> SyncResult:
        if not self._busy.acquire(blocking=False):
            logger.debug("%s sync already running; request for chat %s rejected",
                         self.name, chat_id)
            return SyncResult(self.name, SyncStatus.BUSY, chat_id)
        self._syncing = True
        try:
            if not chat_id:
                result = SyncResult(self.name, SyncStatus.SKIPPED, chat_id,
                                    errors=["No active conversation."])
            else:
                result = self._run_fn(chat_id)
        except Exception as exc:
            logger.exception("%s sync failed for chat %s", self.name, chat_id)
            result = SyncResult(self.name, SyncStatus.FAILED, chat_id, errors=[str(exc)])
        finally:
            self._syncing = False
            self._busy.release()

        self.last_result = result
        if result.status is SyncStatus.STALE:
            logger.warning("Discarded %s sync results for inactive chat %s", self.name, chat_id)
        else:
            logger.info("Sync finished: %s", result.summary())
        if self.event_bus is not None:
            self.event_bus.sync_finished.emit(self.name, result)
        return result


# ---------------------------------------------------------------------------
# Targets
# ---------------------------------------------------------------------------

class EntityExtractionTarget:
    """Group the panel's raw data and merge each bucket into the store."""

    def __init__(
        self,
        name: str,
        store: EntityStore,
        grouper: EntityGrouper,
        source: PanelDataSource,
        get_chat_id: Callable[[], str],
    ):
        self.name = name
        self.store = store
        self.grouper = grouper
        self.source = source
        self.get_chat_id = get_chat_id

    def _is_stale(self, chat_id: str) -> bool:
        return self.get_chat_id() != chat_id or self.store.active_chat_id != chat_id

    def __call__(self, chat_id: str) -> SyncResult:
        result = SyncResult(self.name, chat_id=chat_id)
        if self._is_stale(chat_id):
            result.status = SyncStatus.STALE
            return result

        ctx = self.grouper.context
        buckets = self.grouper.group(self.source.get_panel_data(ctx.panel_id))
        if not buckets:
            result.status = SyncStatus.SKIPPED
            return result

        with self.store.lock:
            if self._is_stale(chat_id):
                result.status = SyncStatus.STALE
                return result
            known = {e.id for e in self.store.list_entities()}
            for position, (bucket, fields) in enumerate(buckets.items()):
                ordinal = bucket_index(bucket, ctx.entity_prefix)
                try:
                    outcome = self.store.apply_candidate(
                        fields, position if ordinal is None else ordinal,
                    )
                except Exception as exc:
                    logger.warning("Could not merge %s on panel %s: %s",
                                   bucket, ctx.panel_id, exc)
                    result.errors.append(f"{bucket}: {exc}")
                    continue
                if outcome is None:
                    result.skipped_count += 1
                    continue
                entity, changed = outcome
                if entity.id not in known:
                    known.add(entity.id)
                    result.created_count += 1
                elif changed:
                    result.updated_count += 1
                else:
                    result.unchanged_count += 1
            if result.created_count or result.updated_count:
                self.store.save()
        return result


class WorldBookSyncTarget:
    """Push every entity of the store to the world book, then deduplicate.

    All world-book calls of one run happen under *lock*; targets sharing a
    client must share the lock.
    """

    def __init__(
        self,
        name: str,
        store: EntityStore,
        client: WorldBookClient,
        resolver: FieldNameResolver,
        context: PanelContext,
        get_chat_id: Callable[[], str],
        book_name: Callable[[], str],
        *,
        lock: threading.RLock | None = None,
    ):
        self.name = name
        self.store = store
        self.client = client
        self.resolver = resolver
        self.context = context
        self.get_chat_id = get_chat_id
        self.book_name = book_name
        self.lock = lock if lock is not None else threading.RLock()

    def __call__(self, chat_id: str) -> SyncResult:
        result = SyncResult(self.name, chat_id=chat_id)
        if self.get_chat_id() != chat_id or self.store.active_chat_id != chat_id:
            result.status = SyncStatus.STALE
            return result

        with self.store.lock:
            entities = [e.model_copy(deep=True) for e in self.store.list_entities()]

        with self.lock:
            book = self.client.resolve_or_create_book(self.book_name())
            for entity in entities:
                try:
                    record = format_entity_record(entity, self.resolver, self.context)
                    _stored, created = upsert_entity_record(self.client, book, record)
                except Exception as exc:
                    logger.warning("Could not push %s to world book '%s': %s",
                                   entity.id, book, exc)
                    result.errors.append(f"{entity.id}: {exc}")
                    continue
                if created:
                    result.created_count += 1
                else:
                    result.updated_count += 1

            result.removed_duplicates = len(deduplicate_entries(self.client, book))
        if self.get_chat_id() != chat_id:
            result.status = SyncStatus.STALE
        return result
