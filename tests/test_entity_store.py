"""
Tests for entity_sync/entity_store.py -- per-conversation entity database.

Validates:
    - ensure_entity lookup by name and alias, stable ids
    - merge idempotence and non-destructive merges
    - record_observation bookkeeping
    - chat isolation across switch_chat
    - search filtering, sorting and argument validation
    - export / import snapshots (all-or-nothing)
    - rename, delete, placeholder cleanup, nameless candidates
"""

import json
from unittest.mock import MagicMock

import pytest

from entity_sync.event_bus import EventBus
from entity_sync.models.base import EntityKind
from entity_sync.models.validators import SnapshotImportError
from entity_sync.entity_store import EntityStore
from entity_sync.persistence import JsonFilePersistence, MemoryPersistence


@pytest.fixture
def persistence():
    return MemoryPersistence()


@pytest.fixture
def store(persistence):
    s = EntityStore(persistence, EntityKind.NPC)
    s.switch_chat("chat-1")
    return s


def _add(store, name, **fields):
    entity = store.ensure_entity(name)
    if store.merge_fields(entity, {"name": name, **fields}):
        store.record_observation(entity)
    return entity


# ---------------------------------------------------------------------------
# ensure_entity
# ---------------------------------------------------------------------------

class TestEnsureEntity:
    def test_creates_with_stable_id(self, store):
        entity = store.ensure_entity("Aria Windrunner")
        assert entity.id.startswith("aria-windrunner-")
        assert entity.kind is EntityKind.NPC
        assert entity.last_chat_id == "chat-1"
        assert entity.appear_count == 0

    def test_non_ascii_name_uses_kind_prefix(self, store):
        assert store.ensure_entity("阿丽雅").id.startswith("npc-")

    def test_lookup_is_trimmed_and_case_insensitive(self, store):
        first = store.ensure_entity("Aria")
        assert store.ensure_entity("  ARIA ") is first
        assert len(store.list_entities()) == 1

    def test_blank_name_rejected(self, store):
        with pytest.raises(ValueError, match="blank"):
            store.ensure_entity("   ")

    def test_alias_lookup(self, store):
        entity = _add(store, "Aria")
        store.rename_entity(entity.id, "Aria the Bold")
        assert store.ensure_entity("aria") is entity


# ---------------------------------------------------------------------------
# merge_fields / record_observation
# ---------------------------------------------------------------------------

class TestMerge:
    def test_idempotent(self, store):
        entity = store.ensure_entity("Aria")
        incoming = {"name": "Aria", "mood": "calm"}

        changed_first = store.merge_fields(entity, incoming)
        if changed_first:
            store.record_observation(entity)
        changed_second = store.merge_fields(entity, incoming)
        if changed_second:
            store.record_observation(entity)

        assert (changed_first, changed_second) == (True, False)
        assert entity.appear_count == 1

    def test_blank_never_erases(self, store):
        entity = _add(store, "Aria", mood="calm", notes="likes tea")
        changed = store.merge_fields(entity, {"mood": "", "notes": None, "status": "   "})
        assert changed is False
        assert entity.fields == {"name": "Aria", "mood": "calm", "notes": "likes tea"}

    def test_overwrites_changed_values(self, store):
        entity = _add(store, "Aria", mood="calm")
        assert store.merge_fields(entity, {"mood": "angry"}) is True
        assert entity.fields["mood"] == "angry"

    def test_name_follows_name_field(self, store):
        entity = store.ensure_entity("aria")
        store.merge_fields(entity, {"name": "Aria"})
        assert entity.name == "Aria"

    def test_record_observation_refreshes_timestamps(self, store):
        entity = store.ensure_entity("Aria")
        store.record_observation(entity, "chat-1")
        assert entity.appear_count == 1
        assert entity.last_seen == entity.updated_at != ""
        assert entity.last_chat_id == "chat-1"

    def test_signals(self, persistence):
        bus = EventBus()
        created, updated = MagicMock(), MagicMock()
        bus.entity_created.connect(created)
        bus.entity_updated.connect(updated)
        store = EntityStore(persistence, EntityKind.NPC, event_bus=bus)
        store.switch_chat("chat-1")

        entity = store.ensure_entity("Aria")
        store.merge_fields(entity, {"name": "Aria"})
        store.merge_fields(entity, {"name": "Aria"})

        created.assert_called_once_with(entity.id)
        updated.assert_called_once_with(entity.id)


# ---------------------------------------------------------------------------
# apply_candidate
# ---------------------------------------------------------------------------

class TestApplyCandidate:
    def test_named_candidate(self, store):
        entity, changed = store.apply_candidate({"name": "Aria", "mood": "calm"}, 0)
        assert changed is True
        assert entity.appear_count == 1
        again = store.apply_candidate({"name": "Aria", "mood": "calm"}, 0)
        assert again == (entity, False)
        assert entity.appear_count == 1

    def test_empty_candidate_skipped(self, store):
        assert store.apply_candidate({}, 0) is None
        assert store.list_entities() == []

    def test_placeholder_name_skipped(self, store):
        assert store.apply_candidate({"name": "npc0", "mood": "calm"}, 0) is None
        assert store.list_entities() == []

    def test_nameless_candidate_matches_by_ordinal(self, store):
        aria, _ = store.apply_candidate({"name": "Aria"}, 0)
        borin, _ = store.apply_candidate({"name": "Borin"}, 1)
        entity, changed = store.apply_candidate({"mood": "grumpy"}, 1)
        assert entity is borin
        assert changed is True
        assert aria.fields.get("mood") is None

    def test_nameless_candidate_without_match_gets_fallback_name(self, store):
        entity, _ = store.apply_candidate({"mood": "calm"}, 2)
        assert entity.name == "NPC 3"
        assert entity.fields == {"mood": "calm"}

    def test_index_matching_can_be_disabled(self, persistence):
        store = EntityStore(persistence, EntityKind.NPC, match_nameless_by_index=False)
        store.switch_chat("chat-1")
        store.apply_candidate({"name": "Aria"}, 0)
        entity, _ = store.apply_candidate({"mood": "calm"}, 0)
        assert entity.name == "NPC 1"

    def test_org_fallback_label(self):
        store = EntityStore(MemoryPersistence(), EntityKind.ORGANIZATION)
        store.switch_chat("chat-1")
        entity, _ = store.apply_candidate({"leader": "Borin"}, 0)
        assert entity.name == "Organization 1"
        assert entity.id.startswith("organization-1-")


# ---------------------------------------------------------------------------
# Chat isolation and persistence
# ---------------------------------------------------------------------------

class TestChatIsolation:
    def test_switch_swaps_databases(self, store):
        _add(store, "Aria")
        store.save()
        store.switch_chat("chat-2")
        assert store.list_entities() == []
        assert store.active_chat_id == "chat-2"

        _add(store, "Borin")
        store.save()
        store.switch_chat("chat-1")
        assert [e.name for e in store.list_entities()] == ["Aria"]

    def test_same_name_different_chats_are_different_entities(self, store):
        first = _add(store, "Aria")
        store.save()
        store.switch_chat("chat-2")
        second = _add(store, "Aria")
        assert first.id != second.id

    def test_json_file_round_trip(self, tmp_path):
        persistence = JsonFilePersistence(str(tmp_path), "npc")
        store = EntityStore(persistence, EntityKind.NPC)
        store.switch_chat("chat/with:odd*chars")
        entity = _add(store, "Aria", mood="calm")
        store.save()

        path = persistence.path_for("chat/with:odd*chars")
        with open(path, encoding="utf-8") as fh:
            blob = json.load(fh)
        assert blob["chatId"] == "chat/with:odd*chars"
        assert blob["entities"][entity.id]["appearCount"] == 1

        reloaded = EntityStore(persistence, EntityKind.NPC)
        reloaded.switch_chat("chat/with:odd*chars")
        assert reloaded.get(entity.id).fields == {"name": "Aria", "mood": "calm"}

    def test_corrupt_stored_database_starts_empty(self, persistence):
        persistence.save("chat-9", {"entities": {"x": {"id": "y", "name": "Mismatch"}}})
        store = EntityStore(persistence, EntityKind.NPC)
        store.switch_chat("chat-9")
        assert store.list_entities() == []

    def test_save_without_chat_is_noop(self, persistence):
        EntityStore(persistence, EntityKind.NPC).save()
        assert persistence.blobs == {}


# ---------------------------------------------------------------------------
# Search
# ---------------------------------------------------------------------------

class TestSearch:
    @pytest.fixture
    def populated(self, store):
        aria = _add(store, "Aria")
        borin = _add(store, "Borin")
        arin = _add(store, "arin")
        aria.appear_count, borin.appear_count, arin.appear_count = 5, 2, 5
        aria.last_seen, borin.last_seen, arin.last_seen = "2026-01-03", "2026-01-02", "2026-01-01"
        return store

    def test_substring_case_insensitive(self, populated):
        assert {e.name for e in populated.search("AR")} == {"Aria", "arin"}

    def test_empty_text_matches_all(self, populated):
        assert len(populated.search("")) == 3

    def test_sort_by_name(self, populated):
        assert [e.name for e in populated.search("", "name", "asc")] == ["Aria", "arin", "Borin"]

    def test_sort_by_last_seen_desc(self, populated):
        assert [e.name for e in populated.search("", "lastSeen", "desc")] == ["Aria", "Borin", "arin"]

    def test_ties_broken_by_id(self, populated):
        top_two = populated.search("", "appearCount", "desc")[:2]
        assert [e.id for e in top_two] == sorted(e.id for e in top_two)

    @pytest.mark.parametrize("sort_by, order", [("age", "asc"), ("name", "up")])
    def test_bad_arguments(self, populated, sort_by, order):
        with pytest.raises(ValueError):
            populated.search("", sort_by, order)


# ---------------------------------------------------------------------------
# Export / import
# ---------------------------------------------------------------------------

class TestSnapshots:
    def test_export_then_import_into_other_chat(self, store):
        entity = _add(store, "Aria", mood="calm")
        text = store.export()

        store.switch_chat("chat-2")
        assert store.import_snapshot(text) == 1
        imported = store.get(entity.id)
        assert imported.fields["mood"] == "calm"
        assert imported.last_chat_id == "chat-2"
        assert json.loads(store.export())["chatId"] == "chat-2"

    @pytest.mark.parametrize("payload", [
        "not json",
        json.dumps({"entities": {"a": {"id": "b", "name": "A"}}}),
        json.dumps({"entities": {"a": {"id": "a", "name": "A", "appearCount": -1}}}),
        json.dumps({"kind": "organization", "entities": {}}),
        json.dumps({"version": 1}),
    ])
    def test_invalid_snapshot_leaves_state_untouched(self, store, payload):
        _add(store, "Aria")
        before = store.export()
        with pytest.raises(SnapshotImportError):
            store.import_snapshot(payload)
        assert store.export() == before

    def test_import_requires_active_chat(self):
        store = EntityStore(MemoryPersistence(), EntityKind.NPC)
        with pytest.raises(ValueError, match="No active conversation"):
            store.import_snapshot('{"entities": {}}')


# ---------------------------------------------------------------------------
# Rename / delete / cleanup
# ---------------------------------------------------------------------------

class TestRenameAndDelete:
    def test_rename_keeps_id_and_records_alias(self, store):
        entity = _add(store, "Aria")
        renamed = store.rename_entity(entity.id, "Aria Windrunner")
        assert renamed.id == entity.id
        assert renamed.name == renamed.fields["name"] == "Aria Windrunner"
        assert renamed.aliases == ["Aria"]

    def test_rename_to_taken_name(self, store):
        aria = _add(store, "Aria")
        _add(store, "Borin")
        with pytest.raises(ValueError, match="already names"):
            store.rename_entity(aria.id, "borin")

    def test_rename_unknown_id(self, store):
        with pytest.raises(KeyError):
            store.rename_entity("missing", "X")

    def test_delete_emits_signal(self, persistence):
        bus = EventBus()
        deleted = MagicMock()
        bus.entity_deleted.connect(deleted)
        store = EntityStore(persistence, EntityKind.NPC, event_bus=bus)
        store.switch_chat("chat-1")
        entity = _add(store, "Aria")

        assert store.delete(entity.id) is True
        assert store.delete(entity.id) is False
        deleted.assert_called_once_with(entity.id)
        assert persistence.load("chat-1")["entities"] == {}

    def test_delete_many(self, store):
        ids = [_add(store, n).id for n in ("Aria", "Borin", "Cass")]
        assert store.delete_many([ids[0], ids[2], "missing"]) == 2
        assert [e.name for e in store.list_entities()] == ["Borin"]

    def test_cleanup_placeholders(self, store):
        store.ensure_entity("npc0")
        store.ensure_entity("ORG2")
        _add(store, "Aria")
        removed = store.cleanup_placeholders()
        assert sorted(e.name for e in removed) == ["ORG2", "npc0"]
        assert [e.name for e in store.list_entities()] == ["Aria"]
