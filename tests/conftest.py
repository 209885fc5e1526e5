"""
Shared pytest fixtures for immorterm tests.

Provides in-memory host and multiplexer fakes and a timer factory whose
timers only fire when a test says so.
"""

import itertools
from pathlib import Path

import pytest

from immorterm.backends.base import HostBackend, HostHandle, LiveSession, MultiplexerBackend
from immorterm.models import SessionRecord
from immorterm.naming import NameAllocator
from immorterm.registry import RuntimeRegistry
from immorterm.store import RecordStore

NAMESPACE = "my-project"


class ManualTimer:
    """Timer stand-in that runs its function only when fired."""

    def __init__(self, interval, function):
        self.interval = interval
        self.function = function
        self.started = False
        self.cancelled = False
        self.fired = False

    def start(self):
        self.started = True

    def cancel(self):
        self.cancelled = True

    @property
    def pending(self):
        return self.started and not self.cancelled and not self.fired

    def fire(self):
        if not self.pending:
            return
        self.fired = True
        self.function()


class ManualTimerFactory:
    def __init__(self):
        self.timers: list[ManualTimer] = []

    def __call__(self, interval, function):
        timer = ManualTimer(interval, function)
        self.timers.append(timer)
        return timer

    def pending(self, interval=None):
        return [
            t for t in self.timers
            if t.pending and (interval is None or t.interval == interval)
        ]

    def fire_all(self, interval=None):
        """Fire every timer pending right now; returns how many fired."""
        due = self.pending(interval)
        for timer in due:
            timer.fire()
        return len(due)


class FakeHandle(HostHandle):
    def __init__(self, token, name, protected=False):
        self._token = token
        self._name = name
        self.protected = protected
        self.closed = False

    @property
    def token(self):
        return self._token

    @property
    def name(self):
        return self._name

    def rename(self, name):
        self._name = name

    def set_name_protected(self, protected):
        self.protected = protected

    def close(self):
        self.closed = True


class FakeHost(HostBackend):
    """Records every create_handle() call; close() simulates the user closing a handle."""

    def __init__(self):
        self.created = []
        self.handles = []
        self.fail = False
        self.before_create = None
        self._tokens = itertools.count(1)
        self.on_open = None
        self.on_close = None
        self.on_active_change = None

    def create_handle(self, display_name, launch_command, environment, protect_name, cwd=None):
        if self.before_create is not None:
            self.before_create(display_name, environment)
        if self.fail:
            raise RuntimeError("host refused")
        handle = FakeHandle(f"handle-{next(self._tokens)}", display_name, protect_name)
        self.created.append({
            "display_name": display_name,
            "launch_command": launch_command,
            "environment": environment,
            "protect_name": protect_name,
            "cwd": cwd,
            "handle": handle,
        })
        self.handles.append(handle)
        if self.on_open is not None:
            self.on_open(handle)
        return handle

    def subscribe(self, on_open, on_close, on_active_change):
        self.on_open = on_open
        self.on_close = on_close
        self.on_active_change = on_active_change

    def open_handles(self):
        return [h for h in self.handles if not h.closed]

    def close(self, handle):
        handle.closed = True
        if self.on_close is not None:
            self.on_close(handle)

    def focus(self, handle):
        if self.on_active_change is not None:
            self.on_active_change(handle)


class FakeMultiplexer(MultiplexerBackend):
    """In-memory multiplexer keeping sessions in a dict."""

    name = "fake"

    def __init__(self, available=True):
        super().__init__()
        self.available = available
        self.sessions: dict[str, LiveSession] = {}
        self.list_calls = 0
        self.killed = []
        self.detached = []
        self.titles = []
        self.commands = []
        self.title_ok = True

    def add_session(self, name, attached=False):
        self.sessions[name] = LiveSession(name=name, pid=4242, attached=attached)

    def is_available(self):
        return self.available

    def list_sessions(self):
        self.list_calls += 1
        return list(self.sessions.values())

    def create(self, name, log_path=None):
        self.add_session(name)
        return True

    def kill(self, name):
        self.killed.append(name)
        return self.sessions.pop(name, None) is not None

    def detach(self, name):
        self.detached.append(name)
        if name in self.sessions:
            self.sessions[name].attached = False
            return True
        return False

    def set_title(self, name, text):
        self.titles.append((name, text))
        return self.title_ok

    def send_input(self, name, text):
        return name in self.sessions

    def send_command(self, name, command):
        self.commands.append((name, command))
        return True

    def attach_argv(self, name, log_path, exists):
        return ["fake", "attach" if exists else "new", name]


def make_record(
    id: str = "100-0000000a",
    display_name: str = "immorterm-1",
    namespace: str = NAMESPACE,
    created_at: float = 1000.0,
    last_attached_at: float | None = None,
    **kwargs,
) -> SessionRecord:
    """Helper to create test records with defaults."""
    return SessionRecord(
        id=id,
        display_name=display_name,
        namespace=namespace,
        created_at=created_at,
        last_attached_at=created_at if last_attached_at is None else last_attached_at,
        **kwargs,
    )


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
def timers():
    return ManualTimerFactory()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def host():
    return FakeHost()


@pytest.fixture
def multiplexer():
    return FakeMultiplexer()


@pytest.fixture
def project_dir(tmp_path) -> Path:
    path = tmp_path / "My Project"
    path.mkdir()
    return path


@pytest.fixture
def store(project_dir):
    return RecordStore(project_dir / ".immorterm" / "sessions.json", NAMESPACE)


@pytest.fixture
def registry(store, timers, clock):
    return RuntimeRegistry(store, 1, debounce_window=0.05, timer_factory=timers, clock=clock)


@pytest.fixture
def allocator():
    return NameAllocator()
