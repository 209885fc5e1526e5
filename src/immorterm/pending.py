"""
Cross-process registration protocol.

Helper processes (``immorterm attach``) run outside the engine's process and
may start in bursts. Each one drops a pending registration file named after
its own session id, so no two helpers ever write the same file. Folding
those files into the durable record file happens under an exclusive lock,
one process at a time.
"""

import fcntl
import json
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path

from .errors import LockTimeout
from .models import SessionRecord
from .naming import is_valid_session_id
from .store import RecordStore, atomic_write_text

logger = logging.getLogger(__name__)


class FileLock:
    """
    Exclusive advisory lock on a lock file, with a timeout.

    The kernel drops a flock when the owning process dies, including death
    by signal, so an abnormal exit never leaves the lock held.
    """

    def __init__(self, path: Path | str, timeout: float = 5.0, poll_interval: float = 0.05):
        self.path = Path(path)
        self.timeout = timeout
        self.poll_interval = poll_interval
        self._file = None

    def acquire(self) -> None:
        """
        Raises:
            LockTimeout: if another process holds the lock for ``timeout`` seconds
        """
        self.path.parent.mkdir(parents=True, exist_ok=True)
        lock_file = open(self.path, "w")
        deadline = time.monotonic() + self.timeout
        while True:
            try:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                break
            except BlockingIOError:
                if time.monotonic() >= deadline:
                    lock_file.close()
                    raise LockTimeout(str(self.path), self.timeout)
                time.sleep(self.poll_interval)
        self._file = lock_file

    def release(self) -> None:
        if self._file is None:
            return
        try:
            fcntl.flock(self._file.fileno(), fcntl.LOCK_UN)
        finally:
            self._file.close()
            self._file = None

    def __enter__(self) -> "FileLock":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()


class PendingRegistrations:
    """Directory of ``<session id>.json`` files written by helper processes."""

    def __init__(self, directory: Path | str):
        self.directory = Path(directory)

    def path_for(self, record_id: str) -> Path:
        return self.directory / f"{record_id}.json"

    def write(self, record: SessionRecord) -> Path:
        path = self.path_for(record.id)
        atomic_write_text(path, json.dumps(record.to_dict(), indent=2) + "\n")
        return path

    def discard(self, record_id: str) -> bool:
        path = self.path_for(record_id)
        if not path.exists():
            return False
        path.unlink(missing_ok=True)
        return True

    def read_all(self, namespace: str) -> list[tuple[Path, SessionRecord]]:
        """
        Parse every pending file.

        Unreadable files are logged and left where they are.
        """
        if not self.directory.is_dir():
            return []
        entries = []
        for path in sorted(self.directory.glob("*.json")):
            try:
                data = json.loads(path.read_text(encoding="utf-8"))
                record = SessionRecord.from_dict(data, namespace)
            except (OSError, ValueError, TypeError, KeyError) as e:
                logger.warning("Skipping unreadable pending registration %s: %s", path, e)
                continue
            if not is_valid_session_id(record.id):
                logger.warning("Skipping pending registration with invalid id %r", record.id)
                continue
            entries.append((path, record))
        return entries


@dataclass
class MergeResult:
    """Outcome of folding pending registrations into the record file."""

    added: list[str] = field(default_factory=list)
    already_present: list[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.added)


def merge_pending(
    store: RecordStore,
    registrations: PendingRegistrations,
    lock: FileLock,
) -> MergeResult:
    """
    Add pending records the durable file does not know yet.

    Existing records win over pending ones with the same id. The file is
    written at most once. Consumed pending files are deleted only after the
    write succeeded.

    Raises:
        LockTimeout: if the lock cannot be acquired; pending files stay
            in place for the next run
    """
    result = MergeResult()
    with lock:
        entries = registrations.read_all(store.namespace)
        if not entries:
            return result
        state = store.load()
        for _, record in entries:
            if state.get(record.id) is None:
                state.upsert(record)
                result.added.append(record.id)
            else:
                result.already_present.append(record.id)
        if result.changed:
            store.save(state)
        for path, _ in entries:
            path.unlink(missing_ok=True)

    if result.added:
        logger.info("Merged %d pending registration(s)", len(result.added))
    return result
