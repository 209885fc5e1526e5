"""
Naming and identity rules.

Session ids are ``<pid>-<8 hex chars>`` so two processes can mint ids
concurrently without coordinating. Display names follow a template such as
``immorterm-${n}``; names that still look generated (or carry a sentinel
prefix) may be overwritten by title escape sequences from the program
running in the session, anything else is a user's deliberate name and is
pinned.
"""

import os
import re
import secrets
import threading
import time
from datetime import datetime
from pathlib import Path
from typing import Callable, Iterable

DEFAULT_NAMING_TEMPLATE = "immorterm-${n}"
SENTINEL_PREFIXES = ("✳", "*")

MODIFIABLE = "modifiable"
PINNED = "pinned"

_SESSION_ID_RE = re.compile(r"\d+-[0-9a-f]{8}")
_SLUG_INVALID_RE = re.compile(r"[^a-z0-9-]")
_SLUG_DASHES_RE = re.compile(r"-+")


def generate_session_id(pid: int | None = None) -> str:
    """Return a fresh ``<pid>-<random8hex>`` identifier."""
    if pid is None:
        pid = os.getpid()
    return f"{pid}-{secrets.token_hex(4)}"


def is_valid_session_id(value: object) -> bool:
    return isinstance(value, str) and _SESSION_ID_RE.fullmatch(value) is not None


def looks_like_raw_id(name: str) -> bool:
    """True if a display name is just an unrenamed session id."""
    return is_valid_session_id(name)


def project_namespace(project: Path | str) -> str:
    """
    Derive the lowercase namespace slug for a project.

    Accepts a directory path or a bare name; only the last path component
    is used.
    """
    name = Path(str(project)).name or str(project)
    slug = _SLUG_INVALID_RE.sub("-", name.lower())
    slug = _SLUG_DASHES_RE.sub("-", slug).strip("-")
    return slug or "unknown"


def external_session_name(namespace: str, session_id: str) -> str:
    return f"{namespace}-{session_id}"


def session_id_from_external_name(namespace: str, name: str) -> str | None:
    """Inverse of external_session_name(); None if the name is foreign."""
    prefix = f"{namespace}-"
    if not name.startswith(prefix):
        return None
    candidate = name[len(prefix):]
    return candidate if is_valid_session_id(candidate) else None


def _template_pattern(template: str, project: str | None) -> re.Pattern:
    parts = re.split(r"(\$\{n\}|\$\{project\})", template)
    regex = []
    for part in parts:
        if part == "${n}":
            regex.append(r"(?P<n>\d+)")
        elif part == "${project}":
            regex.append(re.escape(project) if project else r"[a-z0-9-]+")
        else:
            regex.append(re.escape(part))
    return re.compile("".join(regex), re.IGNORECASE)


def render_template(template: str, n: int, project: str | None = None) -> str:
    name = template.replace("${n}", str(n))
    if project is not None:
        name = name.replace("${project}", project)
    return name


def is_modifiable_name(
    name: str,
    template: str = DEFAULT_NAMING_TEMPLATE,
    project: str | None = None,
) -> bool:
    """
    Decide whether program output may retitle a terminal with this name.

    Generated names and names starting with a sentinel prefix are
    modifiable. Every other name was chosen by the user and is pinned.
    """
    if name.startswith(SENTINEL_PREFIXES):
        return True
    return _template_pattern(template, project).fullmatch(name) is not None


def naming_class(
    name: str,
    template: str = DEFAULT_NAMING_TEMPLATE,
    project: str | None = None,
) -> str:
    return MODIFIABLE if is_modifiable_name(name, template, project) else PINNED


def title_for(name: str, now: datetime | None = None) -> str:
    """Multiplexer window title: ``DD/MM-HH:MM <name>``."""
    now = now or datetime.now()
    return f"{now:%d/%m-%H:%M} {name}"


class NameAllocator:
    """
    Hands out sequential display names.

    Names issued recently are remembered in a pending set for
    ``pending_ttl`` seconds, because the registry only reflects a new record
    after its debounced write and the host may not show the handle yet.
    Without it, terminals opened in a burst would all get the same number.
    """

    def __init__(
        self,
        template: str = DEFAULT_NAMING_TEMPLATE,
        project: str | None = None,
        pending_ttl: float = 2.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        if "${n}" not in template:
            raise ValueError(f"Naming template must contain ${{n}}: {template!r}")
        self.template = template
        self.project = project
        self.pending_ttl = pending_ttl
        self._clock = clock
        self._pending: dict[str, float] = {}
        self._lock = threading.Lock()
        self._pattern = _template_pattern(template, project)

    def _highest(self, names: Iterable[str]) -> int:
        highest = 0
        for name in names:
            match = self._pattern.fullmatch(name)
            if match:
                highest = max(highest, int(match.group("n")))
        return highest

    def _prune(self, now: float) -> None:
        expired = [name for name, expires in self._pending.items() if expires <= now]
        for name in expired:
            del self._pending[name]

    def pending_names(self) -> set[str]:
        with self._lock:
            self._prune(self._clock())
            return set(self._pending)

    def next_name(
        self,
        record_names: Iterable[str] = (),
        open_handle_names: Iterable[str] = (),
    ) -> str:
        """
        Return the template rendered with one more than the highest number
        found in records, open handles and the pending set.
        """
        with self._lock:
            now = self._clock()
            self._prune(now)
            highest = max(
                self._highest(record_names),
                self._highest(open_handle_names),
                self._highest(self._pending),
            )
            name = render_template(self.template, highest + 1, self.project)
            self._pending[name] = now + self.pending_ttl
            return name

    def is_modifiable(self, name: str) -> bool:
        return is_modifiable_name(name, self.template, self.project)
