"""
Tests for the runtime registry: lookups, debounced writes and schema handling.
"""

import json
from unittest.mock import patch

import pytest

from immorterm.models import ProjectState
from immorterm.pending import FileLock
from immorterm.registry import RuntimeRegistry

from conftest import NAMESPACE, make_record


class TestLookups:
    def test_lookup_by_id_external_and_display_name(self, registry):
        record = make_record(id="7-0000000a", display_name="api")
        registry.upsert(record)

        assert registry.get("7-0000000a") is record
        assert registry.get_by_external_name(f"{NAMESPACE}-7-0000000a") is record
        assert registry.get_by_display_name("api") is record
        assert registry.get_by_display_name("nope") is None
        assert registry.count() == 1
        assert registry.all() == [record]

    def test_upsert_adopts_registry_namespace(self, registry):
        record = make_record(namespace="other")
        registry.upsert(record)
        assert record.namespace == NAMESPACE

    def test_loads_existing_file(self, store, timers):
        store.save(ProjectState(namespace=NAMESPACE, records=[make_record()]))
        registry = RuntimeRegistry(store, 1, timer_factory=timers)
        assert registry.count() == 1
        assert registry.cache_invalidated is False


class TestDebounce:
    """Writes are collapsed by a trailing timer."""

    def test_nothing_written_before_timer_fires(self, registry, store, timers):
        registry.upsert(make_record())
        assert not store.path.exists()
        assert len(timers.pending()) == 1

    def test_burst_of_mutations_produces_one_write(self, registry, store, timers):
        """Three upserts in a row re-arm one timer and write once."""
        with patch.object(store, "save", wraps=store.save) as save:
            registry.upsert(make_record(id="1-0000000a"))
            registry.upsert(make_record(id="2-0000000b"))
            registry.upsert(make_record(id="3-0000000c"))

            assert len(timers.pending()) == 1
            assert timers.fire_all() == 1

        save.assert_called_once()
        data = json.loads(store.path.read_text())
        assert [r["id"] for r in data["records"]] == ["1-0000000a", "2-0000000b", "3-0000000c"]

    def test_timer_uses_debounce_window(self, registry, timers):
        registry.upsert(make_record())
        assert timers.pending()[0].interval == 0.05

    def test_writes_latest_full_state(self, registry, store, timers):
        registry.upsert(make_record(id="1-0000000a"))
        registry.upsert(make_record(id="2-0000000b"))
        registry.remove("1-0000000a")
        timers.fire_all()
        assert [r.id for r in store.load().records] == ["2-0000000b"]

    def test_flush_writes_immediately_and_cancels_timer(self, registry, store, timers):
        registry.upsert(make_record())
        registry.flush()

        assert store.path.exists()
        assert timers.pending() == []

    def test_flush_without_changes_does_not_write(self, registry, store):
        with patch.object(store, "save") as save:
            registry.flush()
        save.assert_not_called()

    def test_remove_unknown_id_does_not_schedule(self, registry, timers):
        assert registry.remove("9-0000000f") is False
        assert timers.pending() == []

    def test_failed_write_stays_dirty(self, registry, store, caplog):
        """A write error is logged and retried on the next flush."""
        registry.upsert(make_record())
        with patch.object(store, "save", side_effect=OSError("read-only")):
            registry.flush()
        assert "Failed to persist" in caplog.text
        assert not store.path.exists()

        registry.flush()
        assert len(store.load().records) == 1

    def test_close_flushes_and_later_writes_are_synchronous(self, registry, store, timers):
        registry.upsert(make_record(id="1-0000000a"))
        registry.close()
        assert len(store.load().records) == 1

        registry.upsert(make_record(id="2-0000000b"))
        assert len(store.load().records) == 2
        assert timers.pending() == []


class TestUpdate:
    def test_update_display_name(self, registry):
        registry.upsert(make_record())
        record = registry.update("100-0000000a", display_name="renamed")
        assert record.display_name == "renamed"

    def test_update_attached_refreshes_timestamp(self, registry, clock):
        registry.upsert(make_record(created_at=500.0))
        clock.now = 900.0
        record = registry.update("100-0000000a", attached=True)
        assert record.last_attached_at == 900.0

    def test_update_unknown_record_returns_none(self, registry):
        assert registry.update("9-0000000f", display_name="x") is None

    def test_update_rejects_other_fields(self, registry):
        registry.upsert(make_record())
        with pytest.raises(ValueError):
            registry.update("100-0000000a", id="5-0000000e")

    def test_mark_reconciled(self, registry, clock, store):
        clock.now = 4242.0
        registry.mark_reconciled()
        registry.flush()
        assert registry.last_reconciled_at == 4242.0
        assert store.load().last_reconciled_at == 4242.0


class TestSchemaVersion:
    def test_mismatch_starts_empty_and_leaves_file_alone(self, store, timers):
        """A different schema version invalidates the cache only."""
        store.path.parent.mkdir(parents=True)
        original = json.dumps({
            "schemaVersion": 99,
            "namespace": NAMESPACE,
            "records": [make_record().to_dict()],
            "lastReconciledAt": None,
        })
        store.path.write_text(original)

        registry = RuntimeRegistry(store, 1, timer_factory=timers)

        assert registry.cache_invalidated is True
        assert registry.count() == 0
        assert store.path.read_text() == original

    def test_reload_picks_up_external_writes(self, registry, store):
        store.save(ProjectState(namespace=NAMESPACE, records=[make_record()]))
        assert registry.count() == 0
        registry.reload()
        assert registry.count() == 1

    def test_reload_keeps_invalidated_cache_empty(self, store, timers):
        store.save(ProjectState(namespace=NAMESPACE, schema_version=2, records=[make_record()]))
        registry = RuntimeRegistry(store, 1, timer_factory=timers)
        registry.reload()
        assert registry.count() == 0
    def test_write_carries_records_of_older_schema(self, store, timers):
        """Records the run never touched survive a mismatch."""
        store.save(ProjectState(namespace=NAMESPACE, schema_version=0, records=[make_record(id="1-0000000a")]))
        registry = RuntimeRegistry(store, 1, timer_factory=timers)

        registry.upsert(make_record(id="2-0000000b"))
        registry.flush()

        state = store.load()
        assert state.schema_version == 1
        assert [r.id for r in state.records] == ["1-0000000a", "2-0000000b"]


class TestSharedFile:
    """Another process writes the same record file."""

    def test_flush_keeps_records_written_elsewhere(self, registry, store):
        registry.upsert(make_record(id="1-0000000a"))
        registry.flush()

        other = RuntimeRegistry(store, 1)
        other.upsert(make_record(id="2-0000000b"))
        other.flush()

        registry.remove("1-0000000a")
        registry.flush()

        assert [r.id for r in store.load().records] == ["2-0000000b"]

    def test_removal_elsewhere_is_not_undone(self, registry, store):
        registry.upsert(make_record(id="1-0000000a"))
        registry.upsert(make_record(id="2-0000000b"))
        registry.flush()

        store.save(ProjectState(namespace=NAMESPACE, records=[make_record(id="2-0000000b")]))
        registry.update("2-0000000b", display_name="renamed")
        registry.flush()

        assert [(r.id, r.display_name) for r in store.load().records] == [("2-0000000b", "renamed")]

    def test_discard_removes_record_never_loaded(self, registry, store):
        store.save(ProjectState(namespace=NAMESPACE, records=[make_record(id="9-0000000f")]))

        assert registry.discard("9-0000000f") is True
        assert store.load().records == []
        assert registry.discard("9-0000000f") is False

    def test_discard_cached_record_writes_immediately(self, registry, store, timers):
        registry.upsert(make_record(id="1-0000000a"))
        registry.flush()

        assert registry.discard("1-0000000a") is True
        assert registry.get("1-0000000a") is None
        assert store.load().records == []
        assert timers.pending() == []

    def test_reload_keeps_unwritten_changes(self, registry, store):
        registry.upsert(make_record(id="1-0000000a"))
        store.save(ProjectState(namespace=NAMESPACE, records=[make_record(id="2-0000000b")]))

        registry.reload()
        assert {r.id for r in registry.all()} == {"1-0000000a", "2-0000000b"}

        registry.flush()
        assert {r.id for r in store.load().records} == {"1-0000000a", "2-0000000b"}

    def test_busy_lock_defers_write(self, store, timers, project_dir, caplog):
        lock_path = project_dir / ".immorterm" / "reconcile.lock"
        registry = RuntimeRegistry(store, 1, timer_factory=timers, lock=FileLock(lock_path, timeout=0.1))
        registry.upsert(make_record())

        with FileLock(lock_path):
            registry.flush()

        assert "Record file busy" in caplog.text
        assert not store.path.exists()
        assert len(timers.pending()) == 1

        timers.fire_all()
        assert len(store.load().records) == 1
