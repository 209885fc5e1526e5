"""
Abstract base classes for the collaborators the engine drives.

Defines contracts for:
- MultiplexerBackend: the external daemon that owns durable sessions
  (create, attach, list, kill, detach, retitle)
- HostBackend / HostHandle: the application that shows ephemeral terminal
  handles and reports their lifecycle events
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Callable


@dataclass
class LiveSession:
    """
    A session currently known to the multiplexer daemon.

    Backend-agnostic; parsed from ``screen -ls`` or ``tmux list-sessions``.
    """

    name: str
    pid: int | None
    attached: bool


class MultiplexerBackend(ABC):
    """
    Abstract interface for the terminal multiplexer daemon.

    Implementations must never raise for a failed daemon command: failures
    are logged and reported through the return value, because the engine
    treats the daemon's state as unknown and carries on.

    Example implementations:
    - ScreenBackend: GNU screen
    - TmuxBackend: tmux
    """

    name: str = ""

    def __init__(self, binary: str | None = None, timeout: float = 5.0):
        """
        Args:
            binary: Executable to invoke. Defaults to the backend's own name.
            timeout: Seconds before a daemon command is abandoned.
        """
        self.binary = binary or self.name
        self.timeout = timeout

    @abstractmethod
    def is_available(self) -> bool:
        """Return True if the multiplexer binary can be executed."""
        ...

    @abstractmethod
    def list_sessions(self) -> list[LiveSession]:
        """
        List live sessions.

        Returns:
            All sessions the daemon reports; empty if none or on failure.
        """
        ...

    def get_session(self, name: str) -> LiveSession | None:
        for session in self.list_sessions():
            if session.name == name:
                return session
        return None

    @abstractmethod
    def create(self, name: str, log_path: Path | None = None) -> bool:
        """
        Start a new detached session.

        Args:
            name: External session name
            log_path: Optional file receiving the session's output
        """
        ...

    @abstractmethod
    def kill(self, name: str) -> bool:
        """Terminate a session. Returns True if the daemon accepted it."""
        ...

    @abstractmethod
    def detach(self, name: str) -> bool:
        """Detach every client currently attached to a session."""
        ...

    @abstractmethod
    def set_title(self, name: str, text: str) -> bool:
        """Set the session's window title."""
        ...

    @abstractmethod
    def send_input(self, name: str, text: str) -> bool:
        """
        Type text into a session.

        Used only for configuration, never to inject synthetic user input.
        """
        ...

    @abstractmethod
    def send_command(self, name: str, command: str) -> bool:
        """Run a multiplexer configuration command against a session."""
        ...

    @abstractmethod
    def attach_argv(self, name: str, log_path: Path | None, exists: bool) -> list[str]:
        """
        Build the command line a helper process execs to attach.

        Args:
            name: External session name
            log_path: Scrollback log file for newly created sessions
            exists: Whether the session is currently alive

        Returns:
            argv that attaches to the session, creating it if needed
        """
        ...


class HostHandle(ABC):
    """
    An ephemeral terminal shown by the host.

    Handles cannot be persisted; the engine keys its bookkeeping by
    ``token``, which is only meaningful inside the current process.
    """

    @property
    @abstractmethod
    def token(self) -> str:
        """Opaque runtime identity of this handle."""
        ...

    @property
    @abstractmethod
    def name(self) -> str:
        """The name the host currently displays."""
        ...

    @abstractmethod
    def rename(self, name: str) -> None:
        """Change the displayed name."""
        ...

    @abstractmethod
    def set_name_protected(self, protected: bool) -> None:
        """Ignore (True) or honour (False) title escape sequences."""
        ...

    @abstractmethod
    def close(self) -> None:
        """Close the handle."""
        ...


HandleCallback = Callable[[HostHandle], None]


class HostBackend(ABC):
    """
    Abstract interface for the host application.

    Example implementations:
    - TerminalWindowHost: one terminal emulator window per handle
    """

    @abstractmethod
    def create_handle(
        self,
        display_name: str,
        launch_command: list[str] | None,
        environment: dict[str, str],
        protect_name: bool,
        cwd: Path | None = None,
    ) -> HostHandle:
        """
        Create a visible terminal.

        Args:
            display_name: Name shown for the terminal
            launch_command: argv run inside it; None for the user's shell
            environment: Extra environment for the launched process
            protect_name: Whether title escape sequences must be ignored
            cwd: Working directory

        Raises:
            Exception: any failure; the engine escalates it as HostHandleError
        """
        ...

    @abstractmethod
    def subscribe(
        self,
        on_open: HandleCallback,
        on_close: HandleCallback,
        on_active_change: HandleCallback,
    ) -> None:
        """Register lifecycle callbacks."""
        ...

    @abstractmethod
    def open_handles(self) -> list[HostHandle]:
        """All handles the host currently shows."""
        ...
