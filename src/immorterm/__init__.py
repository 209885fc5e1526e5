"""
immorterm - terminals that survive restarts of the application showing them

Each terminal handle is bound to a named GNU screen or tmux session and
recorded in a per-project JSON file. When the host comes back, recorded
sessions are reattached with their names, scrollback and metadata.
"""

__version__ = "0.1.0"

from .config import ImmortermConfig, ProjectPaths, load_config, save_config
from .engine import EngineStatus, SessionEngine
from .errors import HostHandleError, IdentifierError, ImmortermError, LockTimeout
from .lifecycle import LifecycleManager, SessionBinding, SessionState, TeardownResult
from .models import ProjectState, SessionRecord
from .registry import RuntimeRegistry
from .restoration import RestorationEngine, RestorationResult
from .store import RecordStore

__all__ = [
    # Version
    "__version__",
    # Engine
    "SessionEngine",
    "EngineStatus",
    # Components
    "RecordStore",
    "RuntimeRegistry",
    "LifecycleManager",
    "RestorationEngine",
    # Data models
    "SessionRecord",
    "ProjectState",
    "SessionBinding",
    "SessionState",
    "TeardownResult",
    "RestorationResult",
    # Configuration
    "ImmortermConfig",
    "ProjectPaths",
    "load_config",
    "save_config",
    # Errors
    "ImmortermError",
    "IdentifierError",
    "HostHandleError",
    "LockTimeout",
]
