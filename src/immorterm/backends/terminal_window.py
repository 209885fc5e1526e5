"""
Host backend that shows each handle as a terminal emulator window.

Each handle gets a small launcher script (exported environment, working
directory, then ``exec`` of the launch command) which is opened with the
configured terminal emulator. Before the ``exec`` the script writes its own
PID to ``<token>.pid``; that process lives exactly as long as the window's
shell, so it is the handle's runtime identity. The emulator process is only
consulted while the PID file has not appeared yet, because launchers such
as ``open -a Terminal`` exit as soon as the window is requested.
"""

import logging
import os
import shlex
import signal
import subprocess
import sys
import threading
import time
import uuid
from pathlib import Path
from typing import Callable

from .base import HandleCallback, HostBackend, HostHandle

logger = logging.getLogger(__name__)

DEFAULT_STARTUP_TIMEOUT = 30.0


def default_terminal_command() -> str:
    """Terminal emulator invocation for the current platform."""
    if sys.platform == "darwin":
        # .command files open in Terminal.app
        return "open -a Terminal {script}"
    return "x-terminal-emulator -T {title} -e {script}"


def build_launcher_script(
    script_path: Path,
    launch_command: list[str] | None,
    environment: dict[str, str],
    cwd: Path | None,
    pid_path: Path | None = None,
) -> str:
    exports = "\n".join(
        f"export {key}={shlex.quote(value)}" for key, value in sorted(environment.items())
    )
    if launch_command:
        command = "exec " + " ".join(shlex.quote(part) for part in launch_command)
    else:
        command = 'exec "${SHELL:-/bin/sh}" -l'
    cd_line = f"cd {shlex.quote(str(cwd))}\n" if cwd else ""
    # exec keeps the PID, so $$ is the PID of the command that replaces us
    pid_line = f"echo $$ > {shlex.quote(str(pid_path))}\n" if pid_path else ""
    return f'''#!/bin/bash
# immorterm launcher - self-cleaning
rm -f {shlex.quote(str(script_path))}
{exports}
{cd_line}{pid_line}{command}
'''


def pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


class TerminalWindowHandle(HostHandle):
    """A terminal emulator window started by TerminalWindowHost."""

    def __init__(
        self,
        token: str,
        name: str,
        process: subprocess.Popen,
        script_path: Path,
        pid_path: Path,
        protect_name: bool,
        startup_timeout: float = DEFAULT_STARTUP_TIMEOUT,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._token = token
        self._name = name
        self.process = process
        self.script_path = script_path
        self.pid_path = pid_path
        self.name_protected = protect_name
        self._startup_timeout = startup_timeout
        self._clock = clock
        self._started_at = clock()

    @property
    def token(self) -> str:
        return self._token

    @property
    def name(self) -> str:
        return self._name

    def rename(self, name: str) -> None:
        self._name = name

    def set_name_protected(self, protected: bool) -> None:
        self.name_protected = protected

    def shell_pid(self) -> int | None:
        """PID written by the launcher script, or None until it ran."""
        try:
            return int(self.pid_path.read_text().strip())
        except (OSError, ValueError):
            return None

    def is_running(self) -> bool:
        pid = self.shell_pid()
        if pid is not None:
            return pid_alive(pid)
        if self.process.poll() is None:
            return True
        # the launcher handed off to the emulator; give the window time to start
        return self._clock() - self._started_at < self._startup_timeout

    def close(self) -> None:
        pid = self.shell_pid()
        if pid is not None:
            try:
                os.kill(pid, signal.SIGHUP)
            except ProcessLookupError:
                pass
        if self.process.poll() is None:
            self.process.terminate()
            try:
                self.process.wait(timeout=5)
            except subprocess.TimeoutExpired:
                self.process.kill()
        self.discard_files()

    def discard_files(self) -> None:
        self.script_path.unlink(missing_ok=True)
        self.pid_path.unlink(missing_ok=True)


class TerminalWindowHost(HostBackend):
    """
    HostBackend that opens one terminal emulator window per handle.

    ``terminal_command`` is a shell-style template; ``{script}`` is replaced
    by the launcher script path and ``{title}`` by the display name. If the
    template has no ``{script}`` placeholder the script path is appended.

    A window whose launcher exits without the script ever running is
    reported closed after ``startup_timeout`` seconds.
    """

    def __init__(
        self,
        scripts_dir: Path,
        terminal_command: str | None = None,
        popen: Callable[..., subprocess.Popen] = subprocess.Popen,
        startup_timeout: float = DEFAULT_STARTUP_TIMEOUT,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._scripts_dir = Path(scripts_dir)
        self._terminal_command = terminal_command or default_terminal_command()
        self._popen = popen
        self._startup_timeout = startup_timeout
        self._clock = clock
        self._handles: dict[str, TerminalWindowHandle] = {}
        self._lock = threading.Lock()
        self._on_open: HandleCallback | None = None
        self._on_close: HandleCallback | None = None
        self._on_active_change: HandleCallback | None = None

    def _terminal_argv(self, script_path: Path, title: str) -> list[str]:
        parts = shlex.split(self._terminal_command)
        if not any("{script}" in part for part in parts):
            parts.append("{script}")
        return [part.replace("{script}", str(script_path)).replace("{title}", title) for part in parts]

    def create_handle(
        self,
        display_name: str,
        launch_command: list[str] | None,
        environment: dict[str, str],
        protect_name: bool,
        cwd: Path | None = None,
    ) -> HostHandle:
        token = uuid.uuid4().hex
        self._scripts_dir.mkdir(parents=True, exist_ok=True)
        script_path = self._scripts_dir / f"{token}.command"
        pid_path = self._scripts_dir / f"{token}.pid"
        script_path.write_text(
            build_launcher_script(script_path, launch_command, environment, cwd, pid_path)
        )
        script_path.chmod(0o755)

        try:
            process = self._popen(
                self._terminal_argv(script_path, display_name),
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                cwd=str(cwd) if cwd else None,
            )
        except OSError:
            script_path.unlink(missing_ok=True)
            raise

        handle = TerminalWindowHandle(
            token,
            display_name,
            process,
            script_path,
            pid_path,
            protect_name,
            startup_timeout=self._startup_timeout,
            clock=self._clock,
        )
        with self._lock:
            self._handles[token] = handle
        logger.debug("Opened terminal window %s (%s)", display_name, token)

        if self._on_open is not None:
            self._on_open(handle)
        return handle

    def subscribe(
        self,
        on_open: HandleCallback,
        on_close: HandleCallback,
        on_active_change: HandleCallback,
    ) -> None:
        self._on_open = on_open
        self._on_close = on_close
        self._on_active_change = on_active_change

    def open_handles(self) -> list[HostHandle]:
        with self._lock:
            return [h for h in self._handles.values() if h.is_running()]

    def poll_events(self) -> int:
        """
        Report windows whose shell process has exited.

        Returns:
            Number of close events delivered
        """
        with self._lock:
            closed = [h for h in self._handles.values() if not h.is_running()]
            for handle in closed:
                del self._handles[handle.token]

        for handle in closed:
            logger.debug("Terminal window %s closed", handle.name)
            handle.discard_files()
            if self._on_close is not None:
                self._on_close(handle)
        return len(closed)
