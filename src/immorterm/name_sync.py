"""
Display name synchronization.

The host is authoritative for display names: a user may rename a terminal,
and a program may retitle a modifiable one. Changes are picked up on focus
changes and by a slow fallback sweep, then mirrored into the record and the
multiplexer window title.
"""

import logging
import threading
from typing import Any, Callable, Iterable

from .backends.base import HostHandle, MultiplexerBackend
from .naming import NameAllocator, looks_like_raw_id, title_for
from .registry import RuntimeRegistry
from .timers import TimerFactory, daemon_timer

logger = logging.getLogger(__name__)


class NameSynchronizer:
    """Tracks the last seen name of every bound handle."""

    def __init__(
        self,
        registry: RuntimeRegistry,
        multiplexer: MultiplexerBackend,
        allocator: NameAllocator,
        interval: float = 600.0,
        timer_factory: TimerFactory = daemon_timer,
    ):
        self._registry = registry
        self._multiplexer = multiplexer
        self._allocator = allocator
        self._interval = interval
        self._timer_factory = timer_factory
        self._known: dict[str, str] = {}
        self._lock = threading.Lock()
        self._timer: Any = None
        self._get_bindings: Callable[[], Iterable[Any]] | None = None

    def track(self, handle: HostHandle) -> None:
        with self._lock:
            self._known[handle.token] = handle.name

    def forget(self, handle: HostHandle) -> None:
        with self._lock:
            self._known.pop(handle.token, None)

    def check(self, handle: HostHandle, record_id: str) -> bool:
        """
        Mirror a changed handle name into the record.

        Returns:
            True if the name differed from the last one seen
        """
        name = handle.name
        with self._lock:
            if self._known.get(handle.token) == name:
                return False
            self._known[handle.token] = name

        record = self._registry.get(record_id)
        if record is None:
            return False
        if record.display_name != name:
            self._registry.update(record_id, display_name=name)
            if not self._multiplexer.set_title(record.external_session_name, title_for(name)):
                logger.debug("Could not retitle %s", record.external_session_name)
            logger.info("Session %s renamed to %r", record_id, name)
        handle.set_name_protected(not self._allocator.is_modifiable(name))
        return True

    def sweep(self, bindings: Iterable[Any]) -> int:
        """Check every binding (anything with .handle and .record_id)."""
        changed = 0
        for binding in bindings:
            if self.check(binding.handle, binding.record_id):
                changed += 1
        return changed

    def repair_raw_name(
        self,
        handle: HostHandle,
        record_id: str,
        open_handle_names: Iterable[str] = (),
    ) -> str | None:
        """
        Give a handle still named after its raw id a generated name.

        Returns:
            The new name, or None if the handle did not need repairing
        """
        if not looks_like_raw_id(handle.name):
            return None
        new_name = self._allocator.next_name(
            (r.display_name for r in self._registry.all()),
            open_handle_names,
        )
        handle.rename(new_name)
        self.check(handle, record_id)
        return new_name

    # =========================================================================
    # Fallback sweep
    # =========================================================================

    def start(self, get_bindings: Callable[[], Iterable[Any]]) -> None:
        self._get_bindings = get_bindings
        self._arm()

    def _arm(self) -> None:
        if self._get_bindings is None:
            return
        self._timer = self._timer_factory(self._interval, self._on_timer)
        self._timer.start()

    def _on_timer(self) -> None:
        get_bindings = self._get_bindings
        if get_bindings is None:
            return
        try:
            changed = self.sweep(get_bindings())
            if changed:
                logger.debug("Name sweep picked up %d rename(s)", changed)
        except Exception:
            logger.exception("Name sweep failed")
        self._arm()

    def stop(self) -> None:
        self._get_bindings = None
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
