"""
Composition root.

SessionEngine wires the store, registry, naming, lifecycle and restoration
components for one project and exposes the status signal that makes the
degraded (no multiplexer) mode observable.
"""

import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

from .backends import create_multiplexer
from .backends.base import HostBackend, MultiplexerBackend
from .config import ImmortermConfig, ProjectPaths
from .errors import LockTimeout
from .lifecycle import LifecycleManager, SessionBinding, TeardownResult
from .maintenance import enforce_log_budget, kill_namespace_sessions, prune_orphaned_logs
from .models import SessionRecord
from .name_sync import NameSynchronizer
from .naming import NameAllocator, generate_session_id
from .pending import FileLock, MergeResult, PendingRegistrations, merge_pending
from .registry import RuntimeRegistry
from .restoration import RestorationEngine, RestorationResult
from .store import RecordStore
from .timers import TimerFactory, daemon_timer

logger = logging.getLogger(__name__)


@dataclass
class EngineStatus:
    """Snapshot of the engine's health for status displays."""

    persistence_available: bool
    reason: str | None
    multiplexer: str
    namespace: str
    record_count: int
    bound_count: int
    pending_cleanup: int
    last_reconciled_at: float | None
    cache_invalidated: bool


@dataclass
class CleanupReport:
    orphaned_logs: list[Path] = field(default_factory=list)
    over_budget_logs: list[Path] = field(default_factory=list)


class SessionEngine:
    """
    All session machinery for one project.

    Construction does no restoration; call start() from a long-running
    host and shutdown() before exiting.
    """

    def __init__(
        self,
        paths: ProjectPaths,
        config: ImmortermConfig,
        host: HostBackend,
        multiplexer: MultiplexerBackend | None = None,
        timer_factory: TimerFactory = daemon_timer,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.time,
        id_factory: Callable[[], str] = generate_session_id,
        lock_timeout: float = 5.0,
    ):
        self.paths = paths
        self.config = config
        self.host = host
        self.multiplexer = multiplexer or create_multiplexer(
            config.multiplexer, config.multiplexer_binary
        )

        self.persistence_available = self.multiplexer.is_available()
        self.unavailable_reason = (
            None
            if self.persistence_available
            else f"{self.multiplexer.binary} not found; terminals will not survive a restart"
        )

        namespace = paths.namespace
        self.store = RecordStore(paths.sessions_file, namespace, config.schema_version)
        self.registry = RuntimeRegistry(
            self.store,
            config.schema_version,
            debounce_window=config.debounce_window,
            timer_factory=timer_factory,
            clock=clock,
            lock=FileLock(paths.lock_file, timeout=lock_timeout),
        )
        self.allocator = NameAllocator(
            config.naming_template,
            project=namespace,
            pending_ttl=config.pending_name_ttl,
        )
        self.pending = PendingRegistrations(paths.pending_dir)
        self.lock = FileLock(paths.lock_file, timeout=lock_timeout)
        self.name_sync = NameSynchronizer(
            self.registry,
            self.multiplexer,
            self.allocator,
            interval=config.name_sweep_interval,
            timer_factory=timer_factory,
        )
        self.lifecycle = LifecycleManager(
            self.registry,
            host,
            self.multiplexer,
            self.allocator,
            project_dir=paths.project_dir,
            logs_dir=paths.logs_dir,
            pending=self.pending,
            name_sync=self.name_sync,
            persistence_available=self.persistence_available,
            grace_period=config.grace_period,
            timer_factory=timer_factory,
            id_factory=id_factory,
            clock=clock,
        )
        self.restoration = RestorationEngine(
            self.store,
            self.registry,
            self.lifecycle,
            self.multiplexer,
            host,
            persistence_available=self.persistence_available,
            restore_on_startup=config.restore_on_startup,
            stagger=config.restore_stagger,
            settle_delay=config.settle_delay,
            close_existing=config.close_existing_on_restore,
            timer_factory=timer_factory,
            sleep=sleep,
        )

    # =========================================================================
    # Lifecycle of the engine itself
    # =========================================================================

    def start(self) -> RestorationResult:
        """Merge helper registrations, restore sessions and begin watching the host."""
        if not self.persistence_available:
            logger.warning("Persistence unavailable: %s", self.unavailable_reason)

        self.host.subscribe(
            self.lifecycle.handle_opened,
            self.lifecycle.handle_closed,
            self.lifecycle.active_changed,
        )
        self.merge_pending()
        result = self.restoration.restore()
        self.name_sync.start(self.lifecycle.bindings)
        return result

    def shutdown(self) -> None:
        """Stop timers without tearing anything down and flush the registry."""
        self.name_sync.stop()
        self.lifecycle.shutdown()
        self.registry.close()

    def status(self) -> EngineStatus:
        return EngineStatus(
            persistence_available=self.persistence_available,
            reason=self.unavailable_reason,
            multiplexer=self.multiplexer.binary,
            namespace=self.registry.namespace,
            record_count=len(self.records()),
            bound_count=len(self.lifecycle.bindings()),
            pending_cleanup=len(self.lifecycle.pending_cleanup_ids()),
            last_reconciled_at=self.registry.last_reconciled_at,
            cache_invalidated=self.registry.cache_invalidated,
        )

    # =========================================================================
    # Operations
    # =========================================================================

    def merge_pending(self) -> MergeResult | None:
        """Fold helper registrations into the record file; None if the lock timed out."""
        try:
            result = merge_pending(self.store, self.pending, self.lock)
        except LockTimeout as e:
            logger.warning("Pending registrations left for the next run: %s", e)
            return None
        if result.changed:
            self.registry.reload()
        return result

    def records(self) -> list[SessionRecord]:
        """Recorded sessions: the registry's, plus any only on disk."""
        records = self.registry.all()
        known = {r.id for r in records}
        for record in self.store.load().records:
            if record.id not in known:
                records.append(record)
        return records

    def find_record(self, key: str) -> SessionRecord | None:
        """Look a record up by id, then by display name."""
        for record in self.records():
            if record.id == key:
                return record
        for record in self.records():
            if record.display_name == key:
                return record
        return None

    def create(self, display_name: str | None = None, correlation_id: str | None = None) -> SessionBinding:
        return self.lifecycle.create(display_name, correlation_id)

    def forget(self, record_id: str) -> TeardownResult:
        return self.lifecycle.forget(record_id)

    def forget_all(self) -> list[TeardownResult]:
        return self.lifecycle.forget_all()

    def rename(self, record_id: str, name: str) -> bool:
        record = self.find_record(record_id)
        if record is None:
            return False
        if self.registry.get(record.id) is None:
            self.registry.upsert(record)
        return self.lifecycle.rename(record.id, name)

    def link(self, record_id: str, correlation_id: str | None) -> bool:
        record = self.find_record(record_id)
        if record is None:
            return False
        if self.registry.get(record.id) is None:
            self.registry.upsert(record)
        return self.lifecycle.set_correlation(record.id, correlation_id)

    def kill_all(self) -> list[str]:
        """Kill every live session of this project, keeping the records."""
        if not self.persistence_available:
            return []
        return kill_namespace_sessions(self.multiplexer, self.registry.namespace)

    def cleanup(self) -> CleanupReport:
        """Delete orphaned session logs, then enforce the log size budget."""
        live = (
            [s.name for s in self.multiplexer.list_sessions()]
            if self.persistence_available
            else []
        )
        report = CleanupReport()
        report.orphaned_logs = prune_orphaned_logs(
            self.paths.logs_dir,
            self.registry.namespace,
            (r.id for r in self.records()),
            live,
        )
        report.over_budget_logs = enforce_log_budget(
            self.paths.logs_dir,
            self.config.max_log_size_mb * 1024 * 1024,
        )
        return report
