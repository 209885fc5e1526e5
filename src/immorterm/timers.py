"""
Timer construction.

Debounce, grace period, settle delay and the name sweep all schedule work
through a timer factory so tests can substitute timers they fire by hand.
"""

import threading
from typing import Any, Callable

TimerFactory = Callable[[float, Callable[[], None]], Any]


def daemon_timer(interval: float, function: Callable[[], None]) -> threading.Timer:
    """A threading.Timer that never keeps the interpreter alive on exit."""
    timer = threading.Timer(interval, function)
    timer.daemon = True
    return timer
