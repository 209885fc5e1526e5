"""
Runtime registry: the in-process cache of the durable record file.

Lookups are served from memory. Mutations mark the cache dirty and (re)arm
a short trailing debounce timer; when it fires, the pending changes are
written in one go, so a burst of terminals opening produces one write.

Other processes write the same file (helpers merging registrations, a
second ``immorterm`` command), so a write never replaces the file with this
process's snapshot. It re-reads the file under the project lock and applies
only the records this process changed or removed since its last write.
"""

import logging
import threading
import time
from typing import Any, Callable

from .errors import LockTimeout
from .models import ProjectState, SessionRecord
from .pending import FileLock
from .store import RecordStore
from .timers import TimerFactory, daemon_timer

logger = logging.getLogger(__name__)

_UPDATABLE_FIELDS = {"display_name", "correlation_id", "presentation"}


class RuntimeRegistry:
    """
    Debounced, thread-safe mirror of the RecordStore.

    If the file on disk carries a different schema version than expected,
    the cache starts empty for this run. The file itself is left alone:
    restoration reads it directly and repopulates the cache, and records
    this run never touches are carried over by every write.
    """

    def __init__(
        self,
        store: RecordStore,
        expected_version: int,
        debounce_window: float = 0.05,
        timer_factory: TimerFactory = daemon_timer,
        clock: Callable[[], float] = time.time,
        lock: FileLock | None = None,
    ):
        """
        Args:
            store: Durable record file
            expected_version: Schema version this build reads and writes
            debounce_window: Seconds a write waits for further mutations
            timer_factory: Creates the debounce timer
            clock: Source of attachment and reconciliation timestamps
            lock: Project lock held while writing; None when this process
                is the file's only writer
        """
        self._store = store
        self._expected_version = expected_version
        self._debounce_window = debounce_window
        self._timer_factory = timer_factory
        self._clock = clock
        self._file_lock = lock
        self._lock = threading.RLock()
        self._timer: Any = None
        self._changed: set[str] = set()
        self._removed: set[str] = set()
        self._reconciled = False
        self._closed = False

        self.cache_invalidated = False
        self._state = self._load_state()

    def _load_state(self) -> ProjectState:
        loaded = self._store.load()
        if loaded.schema_version != self._expected_version:
            logger.info(
                "Record file schema v%s does not match expected v%s; using an empty cache for this run",
                loaded.schema_version,
                self._expected_version,
            )
            self.cache_invalidated = True
            return ProjectState(namespace=self._store.namespace, schema_version=self._expected_version)
        return loaded

    def reload(self) -> None:
        """
        Re-read the record file after an out-of-band write.

        Unwritten changes of this process are kept and still written by the
        next flush. Once the cache has been invalidated it stays empty for
        the run, apart from this process's own records.
        """
        with self._lock:
            if self.cache_invalidated:
                return
            fresh = self._load_state()
            if self.cache_invalidated:
                return
            self._apply_changes(fresh)
            self._state = fresh

    @property
    def store(self) -> RecordStore:
        return self._store

    @property
    def namespace(self) -> str:
        return self._state.namespace

    @property
    def last_reconciled_at(self) -> float | None:
        return self._state.last_reconciled_at

    @property
    def dirty(self) -> bool:
        return bool(self._changed or self._removed or self._reconciled)

    # =========================================================================
    # Lookups
    # =========================================================================

    def get(self, record_id: str) -> SessionRecord | None:
        with self._lock:
            return self._state.get(record_id)

    def get_by_external_name(self, name: str) -> SessionRecord | None:
        with self._lock:
            for record in self._state.records:
                if record.external_session_name == name:
                    return record
        return None

    def get_by_display_name(self, name: str) -> SessionRecord | None:
        with self._lock:
            for record in self._state.records:
                if record.display_name == name:
                    return record
        return None

    def all(self) -> list[SessionRecord]:
        with self._lock:
            return list(self._state.records)

    def count(self) -> int:
        with self._lock:
            return len(self._state.records)

    # =========================================================================
    # Mutations
    # =========================================================================

    def upsert(self, record: SessionRecord) -> None:
        with self._lock:
            record.namespace = self._state.namespace
            self._state.upsert(record)
            self._mark_changed(record.id)
            self._schedule()

    def update(self, record_id: str, **changes: Any) -> SessionRecord | None:
        """
        Change display_name, correlation_id or presentation of a record.

        Passing ``attached=True`` also refreshes last_attached_at.
        Returns the updated record, or None if the id is unknown.
        """
        attached = changes.pop("attached", False)
        unknown = set(changes) - _UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update fields: {sorted(unknown)}")

        with self._lock:
            record = self._state.get(record_id)
            if record is None:
                return None
            for name, value in changes.items():
                setattr(record, name, value)
            if attached:
                record.touch(self._clock())
            self._mark_changed(record_id)
            self._schedule()
            return record

    def remove(self, record_id: str) -> bool:
        """Drop a cached record; the removal reaches disk with the next write."""
        with self._lock:
            removed = self._state.remove(record_id)
            if removed:
                self._mark_removed(record_id)
                self._schedule()
            return removed

    def discard(self, record_id: str) -> bool:
        """
        Remove a record from the cache and from the record file right away.

        Also removes records this process never loaded. Returns True if the
        record existed in either place.
        """
        with self._lock:
            cached = self._state.remove(record_id)
            self._mark_removed(record_id)
            removed_on_disk = self._write()
            return cached or record_id in removed_on_disk

    def mark_reconciled(self) -> None:
        with self._lock:
            self._state.last_reconciled_at = self._clock()
            self._reconciled = True
            self._schedule()

    def _mark_changed(self, record_id: str) -> None:
        self._changed.add(record_id)
        self._removed.discard(record_id)

    def _mark_removed(self, record_id: str) -> None:
        self._removed.add(record_id)
        self._changed.discard(record_id)

    # =========================================================================
    # Persistence
    # =========================================================================

    def _schedule(self) -> None:
        if self._closed:
            self.flush()
            return
        if self._timer is not None:
            self._timer.cancel()
        self._timer = self._timer_factory(self._debounce_window, self._on_timer)
        self._timer.start()

    def _on_timer(self) -> None:
        self.flush()

    def _apply_changes(self, state: ProjectState) -> set[str]:
        """Apply this process's pending changes to ``state``; returns ids removed from it."""
        removed = set()
        for record_id in self._removed:
            if state.remove(record_id):
                removed.add(record_id)
        for record_id in self._changed:
            record = self._state.get(record_id)
            if record is not None:
                state.upsert(record)
        if self._reconciled:
            state.last_reconciled_at = self._state.last_reconciled_at
        return removed

    def _write(self) -> set[str]:
        """
        Merge pending changes into the file. On failure they stay pending.

        Returns:
            Ids whose records were removed from the file by this write
        """
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if not self.dirty:
            return set()
        try:
            if self._file_lock is None:
                removed = self._merge_and_save()
            else:
                with self._file_lock:
                    removed = self._merge_and_save()
        except LockTimeout as e:
            logger.warning("Record file busy, keeping %d change(s) for the next write: %s",
                           len(self._changed) + len(self._removed), e)
            if not self._closed:
                self._timer = self._timer_factory(self._debounce_window, self._on_timer)
                self._timer.start()
            return set()
        except OSError as e:
            logger.error("Failed to persist %d change(s): %s", len(self._changed) + len(self._removed), e)
            return set()
        self._changed.clear()
        self._removed.clear()
        self._reconciled = False
        return removed

    def _merge_and_save(self) -> set[str]:
        state = self._store.load()
        removed = self._apply_changes(state)
        state.namespace = self._state.namespace
        state.schema_version = self._expected_version
        self._store.save(state)
        return removed

    def flush(self) -> None:
        """Write pending changes now if anything changed since the last write."""
        with self._lock:
            self._write()

    def close(self) -> None:
        """Flush pending writes. Later mutations are written synchronously."""
        with self._lock:
            self.flush()
            self._closed = True
