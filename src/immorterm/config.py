"""
Configuration system for immorterm.

Provides ImmortermConfig for timing, naming and backend selection, ProjectPaths
for the files kept under a project's ``.immorterm`` directory, and
load_config/save_config for ``.immorterm/config.json``.
"""

import json
import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any

from .models import SCHEMA_VERSION
from .naming import DEFAULT_NAMING_TEMPLATE, project_namespace

STATE_DIR_NAME = ".immorterm"
PROJECT_DIR_ENV = "IMMORTERM_PROJECT_DIR"


# Backend registry: centralized definitions with descriptions for help text
BACKENDS = {
    "multiplexer": {
        "screen": "GNU screen; sessions are logged with -L -Logfile (default)",
        "tmux": "tmux; scrollback is captured with pipe-pane",
    },
}


def get_backend_choices(backend_type: str) -> list[str]:
    """Get list of valid choices for a backend type."""
    return list(BACKENDS.get(backend_type, {}).keys())


def format_backend_help(backend_type: str, intro: str = "") -> str:
    """Format help text for a backend type with all options described."""
    options = BACKENDS.get(backend_type, {})
    if not options:
        return intro
    lines = [intro] if intro else []
    for name, desc in options.items():
        lines.append(f"  {name}: {desc}")
    return "\n".join(lines)


@dataclass
class ImmortermConfig:
    """
    Configuration for immorterm.

    Attributes:
        grace_period: Seconds a closed handle's session survives before teardown
        restore_on_startup: Restore recorded sessions when the engine starts
        restore_stagger: Delay in seconds between starting consecutive restorations
        naming_template: Template for generated names; must contain ${n}
        debounce_window: Seconds the registry waits before writing the record file
        schema_version: Record file schema version this build expects
        multiplexer: Multiplexer backend ("screen" or "tmux")
        multiplexer_binary: Executable to run; None uses the backend's name
        settle_delay: Seconds to wait before applying presentation after restore
        pending_name_ttl: Seconds a freshly issued name stays reserved
        name_sweep_interval: Seconds between fallback display name sweeps
        close_existing_on_restore: Close handles the host already shows before restoring
        max_log_size_mb: Size budget for the session log directory
        terminal_command: Terminal emulator template ({script}, {title})
        debug_log: Also write a debug log to .immorterm/immorterm.log
    """

    grace_period: float = 60.0
    restore_on_startup: bool = True
    restore_stagger: float = 0.05
    naming_template: str = DEFAULT_NAMING_TEMPLATE
    debounce_window: float = 0.05
    schema_version: int = SCHEMA_VERSION
    multiplexer: str = "screen"
    multiplexer_binary: str | None = None
    settle_delay: float = 0.5
    pending_name_ttl: float = 2.0
    name_sweep_interval: float = 600.0
    close_existing_on_restore: bool = False
    max_log_size_mb: int = 300
    terminal_command: str | None = None
    debug_log: bool = False

    def __post_init__(self):
        """Validate configuration values."""
        valid_multiplexer = set(get_backend_choices("multiplexer"))
        if self.multiplexer not in valid_multiplexer:
            raise ValueError(
                f"Invalid multiplexer: {self.multiplexer}. "
                f"Valid options: {valid_multiplexer}"
            )
        if "${n}" not in self.naming_template:
            raise ValueError(
                f"Invalid naming_template: {self.naming_template}. "
                "Must contain ${n}"
            )
        for name in (
            "grace_period",
            "restore_stagger",
            "debounce_window",
            "settle_delay",
            "pending_name_ttl",
        ):
            if getattr(self, name) < 0:
                raise ValueError(f"Invalid {name}: {getattr(self, name)}. Must not be negative")
        if self.name_sweep_interval <= 0:
            raise ValueError(
                f"Invalid name_sweep_interval: {self.name_sweep_interval}. Must be positive"
            )
        if self.max_log_size_mb <= 0:
            raise ValueError(
                f"Invalid max_log_size_mb: {self.max_log_size_mb}. Must be positive"
            )
        if self.schema_version < 1:
            raise ValueError(f"Invalid schema_version: {self.schema_version}")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ImmortermConfig":
        """Create ImmortermConfig from a dictionary, ignoring unknown keys."""
        known = {f.name for f in fields(cls)}
        return cls(**{key: value for key, value in data.items() if key in known})

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {f.name: getattr(self, f.name) for f in fields(self)}


def coerce_value(key: str, raw: str) -> Any:
    """
    Convert a command line string to the type of config field ``key``.

    Raises:
        KeyError: if ``key`` is not a config field
        ValueError: if ``raw`` cannot be converted
    """
    defaults = ImmortermConfig()
    if key not in {f.name for f in fields(ImmortermConfig)}:
        raise KeyError(key)
    current = getattr(defaults, key)
    if key in ("multiplexer_binary", "terminal_command"):
        return None if raw.lower() in ("", "none", "default") else raw
    if isinstance(current, bool):
        lowered = raw.lower()
        if lowered in ("1", "true", "yes", "on"):
            return True
        if lowered in ("0", "false", "no", "off"):
            return False
        raise ValueError(f"Expected a boolean for {key}, got {raw!r}")
    if isinstance(current, int):
        return int(raw)
    if isinstance(current, float):
        return float(raw)
    return raw


@dataclass
class ProjectPaths:
    """Locations of everything immorterm keeps for one project."""

    project_dir: Path

    @classmethod
    def discover(cls, start: Path | None = None) -> "ProjectPaths":
        """
        Resolve the project directory.

        IMMORTERM_PROJECT_DIR wins; otherwise the nearest ancestor of
        ``start`` (default: cwd) holding a .immorterm directory; otherwise
        ``start`` itself.
        """
        env = os.environ.get(PROJECT_DIR_ENV)
        if env:
            return cls(Path(env).resolve())
        start = (start or Path.cwd()).resolve()
        for candidate in (start, *start.parents):
            if (candidate / STATE_DIR_NAME).is_dir():
                return cls(candidate)
        return cls(start)

    @property
    def namespace(self) -> str:
        return project_namespace(self.project_dir)

    @property
    def state_dir(self) -> Path:
        return self.project_dir / STATE_DIR_NAME

    @property
    def config_file(self) -> Path:
        return self.state_dir / "config.json"

    @property
    def sessions_file(self) -> Path:
        return self.state_dir / "sessions.json"

    @property
    def pending_dir(self) -> Path:
        return self.state_dir / "pending"

    @property
    def logs_dir(self) -> Path:
        return self.state_dir / "logs"

    @property
    def lock_file(self) -> Path:
        return self.state_dir / "reconcile.lock"

    @property
    def launchers_dir(self) -> Path:
        return self.state_dir / "launchers"

    @property
    def debug_log_file(self) -> Path:
        return self.state_dir / "immorterm.log"

    def log_file_for(self, external_name: str) -> Path:
        return self.logs_dir / f"{external_name}.log"


def load_config(config_path: str | Path | None = None) -> ImmortermConfig:
    """
    Load configuration from file or return defaults.

    Args:
        config_path: Path to config file. If None, looks for .immorterm/config.json

    Returns:
        ImmortermConfig with loaded or default values

    Raises:
        ValueError: if the file is not valid JSON or holds invalid values
    """
    if config_path is None:
        config_path = Path(STATE_DIR_NAME) / "config.json"
    else:
        config_path = Path(config_path)

    if not config_path.exists():
        return ImmortermConfig()

    try:
        data = json.loads(config_path.read_text())
        if not isinstance(data, dict):
            raise TypeError("expected a JSON object")
        return ImmortermConfig.from_dict(data)
    except (json.JSONDecodeError, TypeError) as e:
        raise ValueError(f"Invalid config file {config_path}: {e}")


def save_config(config: ImmortermConfig, config_path: str | Path | None = None) -> None:
    """
    Save configuration to file.

    Args:
        config: ImmortermConfig to save
        config_path: Path to config file. If None, saves to .immorterm/config.json
    """
    if config_path is None:
        config_path = Path(STATE_DIR_NAME) / "config.json"
    else:
        config_path = Path(config_path)

    config_path.parent.mkdir(parents=True, exist_ok=True)
    config_path.write_text(json.dumps(config.to_dict(), indent=2))
