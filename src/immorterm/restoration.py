"""
Startup reconciliation.

Reads the durable record file (not the registry, whose cache may have been
invalidated), asks the multiplexer once for its live sessions, and binds
every record to a fresh host handle. Sessions still attached elsewhere are
detached first; sessions that died are recreated by the helper process
under the same name.
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable

from .backends.base import HostBackend, LiveSession, MultiplexerBackend
from .errors import HostHandleError
from .lifecycle import LifecycleManager
from .models import SessionRecord
from .naming import is_valid_session_id, title_for
from .registry import RuntimeRegistry
from .store import RecordStore
from .timers import TimerFactory, daemon_timer

logger = logging.getLogger(__name__)

RESTORED = "restored"
FAILED = "failed"
SKIPPED = "skipped"


@dataclass
class RestorationDetail:
    """Outcome for one record."""

    record_id: str
    display_name: str
    outcome: str
    reason: str | None = None
    was_live: bool = False


@dataclass
class RestorationResult:
    """
    Outcome of one restore() call.

    ``skipped_reason`` is set when the whole run was skipped.
    """

    details: list[RestorationDetail] = field(default_factory=list)
    skipped_reason: str | None = None

    def _count(self, outcome: str) -> int:
        return sum(1 for d in self.details if d.outcome == outcome)

    @property
    def restored(self) -> int:
        return self._count(RESTORED)

    @property
    def failed(self) -> int:
        return self._count(FAILED)

    @property
    def skipped(self) -> int:
        return self._count(SKIPPED)


class RestorationEngine:
    """
    Re-binds recorded sessions to new host handles.

    Restorations run on a thread pool; the i-th starts ``i * stagger``
    seconds after the first so the host is not flooded with handle
    creations. ``stagger=0`` with ``max_workers=1`` restores sequentially.
    """

    def __init__(
        self,
        store: RecordStore,
        registry: RuntimeRegistry,
        lifecycle: LifecycleManager,
        multiplexer: MultiplexerBackend,
        host: HostBackend,
        persistence_available: bool = True,
        restore_on_startup: bool = True,
        stagger: float = 0.05,
        settle_delay: float = 0.5,
        close_existing: bool = False,
        max_workers: int = 8,
        timer_factory: TimerFactory = daemon_timer,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._store = store
        self._registry = registry
        self._lifecycle = lifecycle
        self._multiplexer = multiplexer
        self._host = host
        self.persistence_available = persistence_available
        self.restore_on_startup = restore_on_startup
        self._stagger = stagger
        self._settle_delay = settle_delay
        self._close_existing = close_existing
        self._max_workers = max_workers
        self._timer_factory = timer_factory
        self._sleep = sleep

    def restore(self, force: bool = False) -> RestorationResult:
        """
        Restore every recorded session not already bound in this process.

        Args:
            force: Restore even if restore_on_startup is disabled
        """
        if not self.persistence_available:
            logger.warning("Multiplexer unavailable; sessions cannot be restored")
            return RestorationResult(skipped_reason="multiplexer unavailable")
        if not self.restore_on_startup and not force:
            logger.info("Restore on startup is disabled")
            return RestorationResult(skipped_reason="restore on startup disabled")

        state = self._store.load()
        result = RestorationResult()

        if self._close_existing:
            self._close_duplicate_handles(state.records)

        live = {s.name: s for s in self._multiplexer.list_sessions()}

        candidates: list[SessionRecord] = []
        for record in state.records:
            if not is_valid_session_id(record.id):
                result.details.append(RestorationDetail(
                    record_id=record.id,
                    display_name=record.display_name,
                    outcome=SKIPPED,
                    reason="invalid session id",
                ))
            elif self._lifecycle.binding_for(record.id) is not None:
                result.details.append(RestorationDetail(
                    record_id=record.id,
                    display_name=record.display_name,
                    outcome=SKIPPED,
                    reason="already open",
                ))
            else:
                candidates.append(record)

        if candidates:
            workers = max(1, min(self._max_workers, len(candidates)))
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="immorterm-restore") as pool:
                futures = [
                    pool.submit(
                        self._restore_one,
                        record,
                        live.get(record.external_session_name),
                        index * self._stagger,
                    )
                    for index, record in enumerate(candidates)
                ]
                result.details.extend(f.result() for f in futures)

        self._registry.mark_reconciled()
        logger.info(
            "Restored %d session(s), %d failed, %d skipped",
            result.restored,
            result.failed,
            result.skipped,
        )
        return result

    def _close_duplicate_handles(self, records: list[SessionRecord]) -> None:
        bound = {b.handle.token for b in self._lifecycle.bindings()}
        names = {r.display_name for r in records}
        for handle in self._host.open_handles():
            if handle.token not in bound and handle.name in names:
                logger.debug("Closing stale terminal %r before restore", handle.name)
                handle.close()

    def _restore_one(
        self,
        record: SessionRecord,
        live: LiveSession | None,
        delay: float,
    ) -> RestorationDetail:
        if delay > 0:
            self._sleep(delay)

        name = record.external_session_name
        if live is not None and live.attached:
            self._multiplexer.detach(name)
        elif live is None:
            logger.debug("Session %s is gone; it will be recreated on attach", name)

        try:
            self._lifecycle.reattach(record, is_restoration=True)
        except HostHandleError as e:
            logger.warning("Could not restore %s: %s", record.id, e)
            return RestorationDetail(
                record_id=record.id,
                display_name=record.display_name,
                outcome=FAILED,
                reason=str(e),
                was_live=live is not None,
            )

        self._schedule_presentation(record)
        return RestorationDetail(
            record_id=record.id,
            display_name=record.display_name,
            outcome=RESTORED,
            was_live=live is not None,
        )

    def _schedule_presentation(self, record: SessionRecord) -> None:
        timer = self._timer_factory(self._settle_delay, lambda: self.apply_presentation(record.id))
        timer.start()

    def apply_presentation(self, record_id: str) -> None:
        """Retitle a restored session and replay its presentation commands."""
        record = self._registry.get(record_id)
        if record is None:
            return
        name = record.external_session_name
        self._multiplexer.set_title(name, title_for(record.display_name))
        for command in record.presentation or ():
            if not self._multiplexer.send_command(name, command):
                logger.debug("Presentation command failed for %s: %s", name, command)
