"""
Durable record store.

The JSON file written here is the only state that survives a host crash.
Every call goes to disk; caching is the runtime registry's job.
"""

import json
import logging
import os
import tempfile
from pathlib import Path

from .models import ProjectState, SCHEMA_VERSION

logger = logging.getLogger(__name__)


def atomic_write_text(path: Path, content: str) -> None:
    """Write to a temp file next to ``path`` and rename it into place."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    finally:
        if tmp_path.exists():
            try:
                tmp_path.unlink()
            except OSError:
                pass


class RecordStore:
    """
    JSON-backed ProjectState persistence.

    load() never raises: a missing or corrupt file yields an empty default
    state, trading possible data loss for keeping terminals usable.
    save() is atomic, so a crash mid-write leaves the previous file intact.
    """

    def __init__(
        self,
        path: Path | str,
        namespace: str,
        schema_version: int = SCHEMA_VERSION,
    ):
        """
        Args:
            path: Location of the record file (e.g. .immorterm/sessions.json)
            namespace: Project namespace used for default states
            schema_version: Version stamped on default states
        """
        self._path = Path(path)
        self.namespace = namespace
        self.schema_version = schema_version

    @property
    def path(self) -> Path:
        return self._path

    def default_state(self) -> ProjectState:
        return ProjectState(namespace=self.namespace, schema_version=self.schema_version)

    def load(self) -> ProjectState:
        """Read the file, falling back to an empty state on any problem."""
        if not self._path.exists():
            return self.default_state()
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
            if not isinstance(data, dict):
                raise TypeError(f"expected a JSON object, got {type(data).__name__}")
            return ProjectState.from_dict(data, self.namespace)
        except (OSError, ValueError, TypeError, KeyError) as e:
            logger.warning("Unreadable record file %s, starting empty: %s", self._path, e)
            return self.default_state()

    def save(self, state: ProjectState) -> None:
        atomic_write_text(self._path, json.dumps(state.to_dict(), indent=2) + "\n")
        logger.debug("Saved %d record(s) to %s", len(state.records), self._path)
