"""
Backend interfaces for immorterm.

This package defines abstract base classes for the engine's collaborators:
- MultiplexerBackend: the daemon that owns durable sessions
- HostBackend / HostHandle: the application showing terminal handles

Concrete implementations:
- ScreenBackend, TmuxBackend: multiplexers
- TerminalWindowHost: terminal emulator windows
"""

from .base import (
    MultiplexerBackend,
    HostBackend,
    HostHandle,
    HandleCallback,
    LiveSession,
)
from .screen import ScreenBackend
from .tmux import TmuxBackend
from .terminal_window import TerminalWindowHost, TerminalWindowHandle

MULTIPLEXERS: dict[str, type[MultiplexerBackend]] = {
    "screen": ScreenBackend,
    "tmux": TmuxBackend,
}


def create_multiplexer(name: str, binary: str | None = None) -> MultiplexerBackend:
    """
    Instantiate the multiplexer backend registered under ``name``.

    Raises:
        ValueError: if ``name`` is unknown
    """
    try:
        backend_cls = MULTIPLEXERS[name]
    except KeyError:
        raise ValueError(f"Unknown multiplexer: {name}. Valid options: {sorted(MULTIPLEXERS)}")
    return backend_cls(binary=binary)


__all__ = [
    # Abstract interfaces
    "MultiplexerBackend",
    "HostBackend",
    "HostHandle",
    "HandleCallback",
    # Data models
    "LiveSession",
    # Multiplexer implementations
    "ScreenBackend",
    "TmuxBackend",
    "MULTIPLEXERS",
    "create_multiplexer",
    # Host implementations
    "TerminalWindowHost",
    "TerminalWindowHandle",
]
