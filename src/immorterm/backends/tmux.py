"""
tmux multiplexer backend.

Sessions are listed with a machine-readable ``-F`` format; scrollback is
captured with ``pipe-pane`` because tmux has no built-in session log.
"""

import logging
import shlex
import shutil
import subprocess
from pathlib import Path

from .base import LiveSession, MultiplexerBackend

logger = logging.getLogger(__name__)

_LIST_FORMAT = "#{session_name}\t#{pid}\t#{session_attached}"


def parse_tmux_sessions(output: str) -> list[LiveSession]:
    sessions = []
    for line in output.splitlines():
        parts = line.split("\t")
        if len(parts) != 3 or not parts[0]:
            continue
        name, pid, attached = parts
        sessions.append(LiveSession(
            name=name,
            pid=int(pid) if pid.isdigit() else None,
            attached=attached.isdigit() and int(attached) > 0,
        ))
    return sessions


class TmuxBackend(MultiplexerBackend):
    """MultiplexerBackend for tmux."""

    name = "tmux"

    def _run(self, *args: str) -> subprocess.CompletedProcess | None:
        try:
            return subprocess.run(
                [self.binary, *args],
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except (FileNotFoundError, OSError, subprocess.TimeoutExpired) as e:
            logger.warning("%s %s failed: %s", self.binary, " ".join(args), e)
            return None

    def _ok(self, *args: str) -> bool:
        result = self._run(*args)
        if result is None:
            return False
        if result.returncode != 0:
            logger.warning(
                "%s %s exited %d: %s",
                self.binary,
                " ".join(args),
                result.returncode,
                (result.stderr or result.stdout).strip(),
            )
            return False
        return True

    @staticmethod
    def _target(name: str) -> str:
        # "=" forces an exact session match instead of a prefix match
        return f"={name}"

    def is_available(self) -> bool:
        return shutil.which(self.binary) is not None

    def list_sessions(self) -> list[LiveSession]:
        result = self._run("list-sessions", "-F", _LIST_FORMAT)
        if result is None or result.returncode != 0:
            # "no server running" is the normal empty case
            return []
        return parse_tmux_sessions(result.stdout)

    def create(self, name: str, log_path: Path | None = None) -> bool:
        if not self._ok("new-session", "-d", "-s", name):
            return False
        if log_path is not None:
            log_path.parent.mkdir(parents=True, exist_ok=True)
            self._ok("pipe-pane", "-o", "-t", self._target(name), f"cat >> {shlex.quote(str(log_path))}")
        return True

    def kill(self, name: str) -> bool:
        return self._ok("kill-session", "-t", self._target(name))

    def detach(self, name: str) -> bool:
        return self._ok("detach-client", "-s", self._target(name))

    def set_title(self, name: str, text: str) -> bool:
        return self._ok("rename-window", "-t", f"{self._target(name)}:", text)

    def send_input(self, name: str, text: str) -> bool:
        return self._ok("send-keys", "-t", self._target(name), "-l", text)

    def send_command(self, name: str, command: str) -> bool:
        parts = shlex.split(command)
        if not parts:
            return False
        return self._ok(parts[0], "-t", self._target(name), *parts[1:])

    def attach_argv(self, name: str, log_path: Path | None, exists: bool) -> list[str]:
        if exists:
            return [self.binary, "attach-session", "-d", "-t", self._target(name)]
        return [self.binary, "new-session", "-A", "-s", name]
