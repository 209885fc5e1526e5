"""
Exception types for immorterm.

Only identifier allocation and host handle creation failures are escalated
to callers. Everything else (multiplexer commands, lock contention, disk
errors on best-effort paths) is logged and degraded at the component that
hit it.
"""


class ImmortermError(Exception):
    """Base class for immorterm errors."""


class IdentifierError(ImmortermError):
    """Raised when a usable session identifier cannot be allocated."""


class HostHandleError(ImmortermError):
    """Raised when the host collaborator fails to produce a terminal handle."""


class LockTimeout(ImmortermError):
    """Raised when the cross-process reconcile lock cannot be acquired."""

    def __init__(self, path: str, timeout: float):
        super().__init__(f"Timed out after {timeout}s waiting for lock {path}")
        self.path = path
        self.timeout = timeout
