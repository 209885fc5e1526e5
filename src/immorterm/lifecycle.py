"""
Session lifecycle state machine.

Per session id: absent -> active -> pending_cleanup -> absent, where
pending_cleanup may return to active if the id is re-bound before its grace
timer fires. This module is the only place that decides when an external
session is killed.
"""

import logging
import sys
import threading
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Callable

from .backends.base import HostBackend, HostHandle, MultiplexerBackend
from .config import PROJECT_DIR_ENV
from .errors import HostHandleError, IdentifierError
from .models import SessionRecord
from .name_sync import NameSynchronizer
from .naming import (
    NameAllocator,
    external_session_name,
    generate_session_id,
    is_valid_session_id,
    title_for,
)
from .pending import PendingRegistrations
from .registry import RuntimeRegistry
from .timers import TimerFactory, daemon_timer

logger = logging.getLogger(__name__)

SESSION_ID_ENV = "IMMORTERM_SESSION_ID"
DISPLAY_NAME_ENV = "IMMORTERM_DISPLAY_NAME"
MULTIPLEXER_ENV = "IMMORTERM_MULTIPLEXER"
RESTORE_ENV = "IMMORTERM_RESTORE"


class SessionState(str, Enum):
    ABSENT = "absent"
    ACTIVE = "active"
    PENDING_CLEANUP = "pending_cleanup"


@dataclass
class SessionBinding:
    """
    A host handle bound to a session id.

    ``record_id`` is None for plain handles created without persistence.
    """

    handle: HostHandle
    record_id: str | None
    is_restoration: bool = False


@dataclass
class TeardownResult:
    """Which teardown steps succeeded for one session."""

    record_id: str
    external_name: str
    session_killed: bool = False
    record_removed: bool = False
    pending_discarded: bool = False
    log_deleted: bool = False


def helper_command(record_id: str, display_name: str) -> list[str]:
    """argv of the helper process each handle runs."""
    return [sys.executable, "-m", "immorterm", "attach", record_id, display_name]


def handoff_environment(
    record: SessionRecord,
    multiplexer_binary: str,
    project_dir: Path,
    is_restoration: bool,
) -> dict[str, str]:
    return {
        SESSION_ID_ENV: record.id,
        DISPLAY_NAME_ENV: record.display_name,
        MULTIPLEXER_ENV: multiplexer_binary,
        PROJECT_DIR_ENV: str(project_dir),
        RESTORE_ENV: "1" if is_restoration else "0",
    }


class LifecycleManager:
    """
    Creates, binds, tears down and schedules teardown of sessions.

    Handle bookkeeping is keyed by ``handle.token`` and lives only in this
    process. When ``persistence_available`` is False (no multiplexer), new
    terminals are plain shells and nothing is recorded.
    """

    def __init__(
        self,
        registry: RuntimeRegistry,
        host: HostBackend,
        multiplexer: MultiplexerBackend,
        allocator: NameAllocator,
        project_dir: Path,
        logs_dir: Path,
        pending: PendingRegistrations | None = None,
        name_sync: NameSynchronizer | None = None,
        persistence_available: bool = True,
        grace_period: float = 60.0,
        timer_factory: TimerFactory = daemon_timer,
        id_factory: Callable[[], str] = generate_session_id,
        clock: Callable[[], float] = time.time,
    ):
        self._registry = registry
        self._host = host
        self._multiplexer = multiplexer
        self._allocator = allocator
        self._project_dir = Path(project_dir)
        self._logs_dir = Path(logs_dir)
        self._pending = pending
        self._name_sync = name_sync
        self.persistence_available = persistence_available
        self._grace_period = grace_period
        self._timer_factory = timer_factory
        self._id_factory = id_factory
        self._clock = clock

        self._lock = threading.RLock()
        self._bindings: dict[str, SessionBinding] = {}
        self._token_by_id: dict[str, str] = {}
        self._cleanup_timers: dict[str, Any] = {}
        self._reattaching: set[str] = set()

    # =========================================================================
    # Queries
    # =========================================================================

    def bindings(self) -> list[SessionBinding]:
        with self._lock:
            return list(self._bindings.values())

    def binding_for(self, record_id: str) -> SessionBinding | None:
        with self._lock:
            token = self._token_by_id.get(record_id)
            return self._bindings.get(token) if token else None

    def pending_cleanup_ids(self) -> list[str]:
        with self._lock:
            return list(self._cleanup_timers)

    def state_of(self, record_id: str) -> SessionState:
        with self._lock:
            if record_id in self._token_by_id:
                return SessionState.ACTIVE
            if record_id in self._cleanup_timers:
                return SessionState.PENDING_CLEANUP
        return SessionState.ABSENT

    def _open_handle_names(self) -> list[str]:
        return [h.name for h in self._host.open_handles()]

    # =========================================================================
    # Creation and binding
    # =========================================================================

    def create(
        self,
        display_name: str | None = None,
        correlation_id: str | None = None,
    ) -> SessionBinding:
        """
        Create a new terminal bound to a new durable session.

        Raises:
            IdentifierError: if no valid id could be allocated
            HostHandleError: if the host failed to create a handle
        """
        name = display_name or self._allocator.next_name(
            (r.display_name for r in self._registry.all()),
            self._open_handle_names(),
        )
        protect = not self._allocator.is_modifiable(name)

        if not self.persistence_available:
            try:
                handle = self._host.create_handle(name, None, {}, protect, cwd=self._project_dir)
            except Exception as e:
                raise HostHandleError(f"Host failed to create terminal {name!r}: {e}") from e
            logger.info("Created terminal %r without persistence", name)
            return SessionBinding(handle=handle, record_id=None)

        record_id = self._id_factory()
        if not is_valid_session_id(record_id):
            raise IdentifierError(f"Invalid session id: {record_id!r}")
        if self._registry.get(record_id) is not None:
            raise IdentifierError(f"Session id already in use: {record_id}")

        now = self._clock()
        record = SessionRecord(
            id=record_id,
            display_name=name,
            namespace=self._registry.namespace,
            created_at=now,
            last_attached_at=now,
            correlation_id=correlation_id,
        )
        self._registry.upsert(record)

        try:
            handle = self._open_handle(record, is_restoration=False)
        except Exception as e:
            self._registry.remove(record_id)
            raise HostHandleError(f"Host failed to create terminal {name!r}: {e}") from e

        logger.info("Created session %s (%s)", record_id, name)
        return self._bind(handle, record_id, is_restoration=False)

    def reattach(self, record: SessionRecord, is_restoration: bool = True) -> SessionBinding:
        """
        Bind an existing record to a fresh handle.

        Any pending cleanup for the id is cancelled first. A record that was
        already torn down is recorded again under the same id. An expiry
        teardown running in another thread finishes first; one interrupted
        from its own thread stops before its next step.

        Raises:
            HostHandleError: if the host failed to create a handle
        """
        with self._lock:
            self._reattaching.add(record.id)
        try:
            self.cancel_cleanup(record.id)

            existing = self.binding_for(record.id)
            if existing is not None:
                return existing

            if self._registry.get(record.id) is None:
                self._registry.upsert(record)
            current = self._registry.update(record.id, attached=True)

            try:
                handle = self._open_handle(current, is_restoration=is_restoration)
            except Exception as e:
                raise HostHandleError(
                    f"Host failed to reattach terminal {current.display_name!r}: {e}"
                ) from e

            logger.debug("Reattached session %s (%s)", record.id, current.display_name)
            return self._bind(handle, record.id, is_restoration=is_restoration)
        finally:
            with self._lock:
                self._reattaching.discard(record.id)

    def _open_handle(self, record: SessionRecord, is_restoration: bool) -> HostHandle:
        return self._host.create_handle(
            record.display_name,
            helper_command(record.id, record.display_name),
            handoff_environment(record, self._multiplexer.binary, self._project_dir, is_restoration),
            not self._allocator.is_modifiable(record.display_name),
            cwd=self._project_dir,
        )

    def _bind(self, handle: HostHandle, record_id: str, is_restoration: bool) -> SessionBinding:
        binding = SessionBinding(handle=handle, record_id=record_id, is_restoration=is_restoration)
        with self._lock:
            self._bindings[handle.token] = binding
            self._token_by_id[record_id] = handle.token
        if self._name_sync is not None:
            self._name_sync.track(handle)
        return binding

    # =========================================================================
    # Host events
    # =========================================================================

    def handle_opened(self, handle: HostHandle) -> None:
        with self._lock:
            binding = self._bindings.get(handle.token)
        if binding is None:
            logger.debug("Ignoring unmanaged terminal %r", handle.name)
            return
        if self._name_sync is not None:
            self._name_sync.track(handle)

    def active_changed(self, handle: HostHandle) -> None:
        with self._lock:
            binding = self._bindings.get(handle.token)
        if binding is None or self._name_sync is None:
            return
        repaired = self._name_sync.repair_raw_name(
            handle, binding.record_id, self._open_handle_names()
        )
        if repaired is None:
            self._name_sync.check(handle, binding.record_id)

    def handle_closed(self, handle: HostHandle) -> None:
        """Unbind the handle and start the grace period for its session."""
        with self._lock:
            binding = self._bindings.pop(handle.token, None)
            if binding is None:
                return
            if self._token_by_id.get(binding.record_id) == handle.token:
                del self._token_by_id[binding.record_id]
        if self._name_sync is not None:
            self._name_sync.forget(handle)
        self._schedule_cleanup(binding.record_id)

    # =========================================================================
    # Grace period
    # =========================================================================

    def _schedule_cleanup(self, record_id: str) -> None:
        with self._lock:
            if record_id in self._cleanup_timers:
                return
            timer = self._timer_factory(
                self._grace_period, lambda: self._on_grace_expired(record_id, timer)
            )
            self._cleanup_timers[record_id] = timer
            timer.start()
        logger.debug("Session %s closed; cleanup in %ss", record_id, self._grace_period)

    def cancel_cleanup(self, record_id: str) -> bool:
        """Cancel a pending cleanup. Returns False if none was pending."""
        with self._lock:
            timer = self._cleanup_timers.pop(record_id, None)
        if timer is None:
            return False
        timer.cancel()
        logger.debug("Cancelled cleanup of session %s", record_id)
        return True

    def _on_grace_expired(self, record_id: str, timer: Any) -> None:
        # held throughout, so a re-bind from another thread waits for the teardown
        with self._lock:
            if self._cleanup_timers.get(record_id) is not timer:
                return
            del self._cleanup_timers[record_id]
            if self._is_claimed(record_id):
                return
            logger.info("Grace period expired for session %s", record_id)
            self._teardown(record_id, expired=True)

    def _is_claimed(self, record_id: str) -> bool:
        with self._lock:
            return record_id in self._token_by_id or record_id in self._reattaching

    # =========================================================================
    # Teardown
    # =========================================================================

    def _teardown(self, record_id: str, expired: bool = False) -> TeardownResult:
        """
        Kill the session, then delete its record, pending file and log.

        An expiry teardown re-checks before each step and stops once the id
        has been bound again.
        """
        external = external_session_name(self._registry.namespace, record_id)
        result = TeardownResult(record_id=record_id, external_name=external)

        def rebound() -> bool:
            if expired and self._is_claimed(record_id):
                logger.info("Session %s was reattached during teardown; keeping it", record_id)
                return True
            return False

        if self.persistence_available:
            result.session_killed = self._multiplexer.kill(external)

        if rebound():
            return result
        result.record_removed = self._registry.discard(record_id)

        if rebound():
            return result
        if self._pending is not None:
            try:
                result.pending_discarded = self._pending.discard(record_id)
            except OSError as e:
                logger.warning("Could not discard pending registration %s: %s", record_id, e)

        if rebound():
            return result
        log_path = self._logs_dir / f"{external}.log"
        try:
            if log_path.exists():
                log_path.unlink()
                result.log_deleted = True
        except OSError as e:
            logger.warning("Could not delete log %s: %s", log_path, e)

        logger.info("Tore down session %s", record_id)
        return result

    def forget(self, record_id: str) -> TeardownResult:
        """Immediately tear down a session and close its handle, if any."""
        self.cancel_cleanup(record_id)
        with self._lock:
            token = self._token_by_id.pop(record_id, None)
            binding = self._bindings.pop(token, None) if token else None

        if binding is not None:
            if self._name_sync is not None:
                self._name_sync.forget(binding.handle)
            try:
                binding.handle.close()
            except Exception as e:
                logger.warning("Could not close terminal %r: %s", binding.handle.name, e)

        return self._teardown(record_id)

    def forget_all(self) -> list[TeardownResult]:
        """Forget every session of the project, recorded in memory or on disk."""
        ids = [r.id for r in self._registry.all()]
        for record in self._registry.store.load().records:
            if record.id not in ids:
                ids.append(record.id)
        for record_id in self.pending_cleanup_ids():
            if record_id not in ids:
                ids.append(record_id)
        return [self.forget(record_id) for record_id in ids]

    # =========================================================================
    # Metadata
    # =========================================================================

    def rename(self, record_id: str, name: str) -> bool:
        record = self._registry.update(record_id, display_name=name)
        if record is None:
            return False
        binding = self.binding_for(record_id)
        if binding is not None:
            binding.handle.rename(name)
            binding.handle.set_name_protected(not self._allocator.is_modifiable(name))
            if self._name_sync is not None:
                self._name_sync.track(binding.handle)
        if self.persistence_available:
            self._multiplexer.set_title(record.external_session_name, title_for(name))
        return True

    def set_correlation(self, record_id: str, correlation_id: str | None) -> bool:
        return self._registry.update(record_id, correlation_id=correlation_id) is not None

    def shutdown(self) -> None:
        """Cancel every grace timer without firing it, then flush."""
        with self._lock:
            timers = list(self._cleanup_timers.values())
            self._cleanup_timers.clear()
        for timer in timers:
            timer.cancel()
        self._registry.flush()
