"""
GNU screen multiplexer backend.

Drives screen through its command line: ``-ls`` to list, ``-X`` to send
commands to a running session and ``-dmS`` to start one detached.
"""

import logging
import re
import shlex
import shutil
import subprocess
from pathlib import Path

from .base import LiveSession, MultiplexerBackend

logger = logging.getLogger(__name__)

# "	12345.project-123-abcdef01	(01/02/24 10:00:00)	(Detached)"
_LS_LINE_RE = re.compile(r"^\s*(\d+)\.(\S+)\s.*\((?:[^()]*\b)?(attached|detached)\)\s*$", re.IGNORECASE)


def parse_screen_ls(output: str) -> list[LiveSession]:
    """Parse ``screen -ls`` output into sessions."""
    sessions = []
    for line in output.splitlines():
        match = _LS_LINE_RE.match(line)
        if match:
            pid, name, state = match.groups()
            sessions.append(LiveSession(name=name, pid=int(pid), attached=state.lower() == "attached"))
    return sessions


class ScreenBackend(MultiplexerBackend):
    """MultiplexerBackend for GNU screen."""

    name = "screen"

    def _run(self, *args: str) -> subprocess.CompletedProcess | None:
        """Run a screen command; None if it could not be executed at all."""
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

    def is_available(self) -> bool:
        return shutil.which(self.binary) is not None

    def list_sessions(self) -> list[LiveSession]:
        result = self._run("-ls")
        if result is None:
            return []
        # screen -ls exits 1 when there are no sessions, and on some builds
        # even when there are; the output is what counts.
        if "No Sockets found" in result.stdout:
            return []
        return parse_screen_ls(result.stdout)

    def create(self, name: str, log_path: Path | None = None) -> bool:
        args = ["-dmS", name]
        if log_path is not None:
            log_path.parent.mkdir(parents=True, exist_ok=True)
            args += ["-L", "-Logfile", str(log_path)]
        return self._ok(*args)

    def kill(self, name: str) -> bool:
        return self._ok("-S", name, "-X", "quit")

    def detach(self, name: str) -> bool:
        return self._ok("-d", name)

    def set_title(self, name: str, text: str) -> bool:
        return self._ok("-S", name, "-X", "title", text)

    def send_input(self, name: str, text: str) -> bool:
        return self._ok("-S", name, "-X", "stuff", text)

    def send_command(self, name: str, command: str) -> bool:
        return self._ok("-S", name, "-X", *shlex.split(command))

    def attach_argv(self, name: str, log_path: Path | None, exists: bool) -> list[str]:
        if exists:
            return [self.binary, "-D", "-r", name]
        argv = [self.binary, "-S", name]
        if log_path is not None:
            argv += ["-L", "-Logfile", str(log_path)]
        return argv
