"""
Housekeeping for session logs and leftover multiplexer sessions.

Records are never pruned here: a record whose session died is still
restorable, the helper simply starts a new session under the same name.
"""

import logging
from pathlib import Path
from typing import Iterable

from .backends.base import MultiplexerBackend
from .naming import session_id_from_external_name

logger = logging.getLogger(__name__)


def _session_logs(logs_dir: Path) -> list[Path]:
    if not logs_dir.is_dir():
        return []
    return [p for p in logs_dir.glob("*.log") if p.is_file()]


def prune_orphaned_logs(
    logs_dir: Path,
    namespace: str,
    known_ids: Iterable[str],
    live_names: Iterable[str],
) -> list[Path]:
    """
    Delete this project's session logs that belong to nothing.

    A log is kept while its session id is recorded or its session is still
    alive. Logs of other projects are never touched.

    Returns:
        Paths that were deleted
    """
    known = set(known_ids)
    live = set(live_names)
    deleted = []
    for path in _session_logs(Path(logs_dir)):
        external = path.stem
        record_id = session_id_from_external_name(namespace, external)
        if record_id is None or record_id in known or external in live:
            continue
        try:
            path.unlink()
        except OSError as e:
            logger.warning("Could not delete orphaned log %s: %s", path, e)
            continue
        deleted.append(path)
    if deleted:
        logger.info("Deleted %d orphaned log(s)", len(deleted))
    return deleted


def enforce_log_budget(logs_dir: Path, max_bytes: int) -> list[Path]:
    """
    Delete the least recently written logs until the directory fits.

    Returns:
        Paths that were deleted
    """
    logs = []
    for path in _session_logs(Path(logs_dir)):
        try:
            stat = path.stat()
        except OSError:
            continue
        logs.append((stat.st_mtime, stat.st_size, path))

    total = sum(size for _, size, _ in logs)
    deleted = []
    for _, size, path in sorted(logs):
        if total <= max_bytes:
            break
        try:
            path.unlink()
        except OSError as e:
            logger.warning("Could not delete log %s: %s", path, e)
            continue
        total -= size
        deleted.append(path)
    if deleted:
        logger.info("Deleted %d log(s) to stay under %d bytes", len(deleted), max_bytes)
    return deleted


def kill_namespace_sessions(multiplexer: MultiplexerBackend, namespace: str) -> list[str]:
    """
    Kill every live session that belongs to this project.

    Records are left alone; restoring them later starts fresh sessions.

    Returns:
        Names of the sessions that were killed
    """
    killed = []
    for session in multiplexer.list_sessions():
        if session_id_from_external_name(namespace, session.name) is None:
            continue
        if multiplexer.kill(session.name):
            killed.append(session.name)
    return killed
