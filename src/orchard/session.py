from __future__ import annotations

import logging
import re
import shutil
import subprocess
from collections.abc import Callable
from pathlib import Path

from orchard.errors import MultiplexerError
from orchard.models import SessionHandle

logger = logging.getLogger(__name__)

CommandRunner = Callable[[list[str]], subprocess.CompletedProcess[str]]

AGENT_OPTION = "@orchard_agent"
_FIELD_SEP = "\t"
_SESSION_NAME_PATTERN = re.compile(r"[.:\s]+")
_NO_SERVER_MARKERS = ("no server running", "error connecting to", "no sessions")


def _default_runner(command: list[str]) -> subprocess.CompletedProcess[str]:
    return subprocess.run(command, text=True, capture_output=True)


def session_name_for(project_name: str) -> str:
    """tmux rejects ``.`` and ``:`` in session names."""
    return _SESSION_NAME_PATTERN.sub("-", project_name).strip("-") or "orchard"


class TmuxServer:
    """The dedicated tmux server (``tmux -L <name>``) shared by every project."""

    def __init__(
        self,
        name: str = "orchard",
        *,
        binary: str = "tmux",
        runner: CommandRunner | None = None,
    ) -> None:
        self.name = name
        self.binary = binary
        self._runner = runner or _default_runner

    def ensure_available(self) -> None:
        if self._runner is _default_runner and shutil.which(self.binary) is None:
            raise MultiplexerError(f"tmux binary not found: {self.binary}")

    def run(self, *args: str, check: bool = True) -> subprocess.CompletedProcess[str]:
        command = [self.binary, "-L", self.name, *args]
        try:
            proc = self._runner(command)
        except FileNotFoundError as exc:
            raise MultiplexerError(f"tmux binary not found: {self.binary}", command=command) from exc
        if check and proc.returncode != 0:
            raise MultiplexerError(
                proc.stderr.strip() or f"tmux {args[0]} failed with status {proc.returncode}",
                command=command,
            )
        return proc

    @staticmethod
    def is_server_down(proc: subprocess.CompletedProcess[str]) -> bool:
        stderr = proc.stderr.lower()
        return proc.returncode != 0 and any(marker in stderr for marker in _NO_SERVER_MARKERS)


class SessionManager:
    """One session per project, one window per task, addressed by stable ids."""

    def __init__(self, server: TmuxServer) -> None:
        self.server = server

    def _session_id(self, name: str) -> str | None:
        proc = self.server.run(
            "display-message", "-p", "-t", f"={name}", "#{session_id}", check=False
        )
        if proc.returncode != 0:
            return None
        return proc.stdout.strip() or None

    def ensure_session(self, project_name: str, cwd: Path) -> str:
        name = session_name_for(project_name)
        existing = self._session_id(name)
        if existing:
            return existing
        proc = self.server.run(
            "new-session", "-d", "-P", "-F", "#{session_id}", "-s", name, "-c", str(cwd)
        )
        session_id = proc.stdout.strip()
        logger.info("Created tmux session %s (%s)", name, session_id)
        return session_id

    def _list_windows(self, *args: str) -> list[list[str]]:
        fmt = _FIELD_SEP.join(
            ["#{session_id}", "#{window_id}", "#{window_name}", f"#{{{AGENT_OPTION}}}"]
        )
        proc = self.server.run("list-windows", *args, "-F", fmt, check=False)
        if proc.returncode != 0:
            if TmuxServer.is_server_down(proc) or "can't find" in proc.stderr.lower():
                return []
            raise MultiplexerError(proc.stderr.strip(), command=["list-windows", *args])
        return [line.split(_FIELD_SEP) for line in proc.stdout.splitlines() if line.strip()]

    def find_window(self, session_id: str, window_name: str) -> SessionHandle | None:
        for fields in self._list_windows("-t", session_id):
            if len(fields) >= 3 and fields[2] == window_name:
                return SessionHandle(session_id=fields[0], window_id=fields[1])
        return None

    def ensure_window(
        self,
        session_id: str,
        window_name: str,
        cwd: Path,
        command: str,
        *,
        agent: str | None = None,
    ) -> SessionHandle:
        existing = self.find_window(session_id, window_name)
        if existing is not None:
            return existing
        proc = self.server.run(
            "new-window",
            "-d",
            "-P",
            "-F",
            "#{window_id}",
            "-t",
            f"{session_id}:",
            "-n",
            window_name,
            "-c",
            str(cwd),
            command,
        )
        handle = SessionHandle(session_id=session_id, window_id=proc.stdout.strip())
        if agent:
            self.set_window_agent(handle, agent)
        logger.info("Created window %s (%s) running %r", window_name, handle.window_id, command)
        return handle

    def set_window_agent(self, handle: SessionHandle, agent: str) -> None:
        self.server.run("set-option", "-w", "-t", handle.target, AGENT_OPTION, agent, check=False)

    def window_agent(self, handle: SessionHandle) -> str | None:
        proc = self.server.run(
            "show-options", "-w", "-v", "-t", handle.target, AGENT_OPTION, check=False
        )
        if proc.returncode != 0:
            return None
        return proc.stdout.strip() or None

    def send_keys(self, handle: SessionHandle, text: str) -> None:
        if not text:
            return
        self.server.run("send-keys", "-t", handle.target, "-l", text)
        self.server.run("send-keys", "-t", handle.target, "Enter")

    def read_pane(self, handle: SessionHandle, *, history_lines: int = 200) -> str:
        proc = self.server.run(
            "capture-pane", "-p", "-t", handle.target, "-S", f"-{history_lines}", check=False
        )
        return proc.stdout if proc.returncode == 0 else ""

    def window_exists(self, handle: SessionHandle) -> bool:
        return any(
            len(fields) >= 2 and fields[1] == handle.window_id for fields in self._list_windows("-a")
        )

    def kill_window(self, handle: SessionHandle) -> None:
        proc = self.server.run("kill-window", "-t", handle.target, check=False)
        if proc.returncode != 0:
            logger.debug("kill-window %s: %s", handle.window_id, proc.stderr.strip())

    def respawn(
        self,
        handle: SessionHandle,
        command: str,
        *,
        cwd: Path | None = None,
        agent: str | None = None,
    ) -> None:
        args = ["respawn-pane", "-k", "-t", handle.target]
        if cwd is not None:
            args.extend(["-c", str(cwd)])
        self.server.run(*args, command)
        if agent:
            self.set_window_agent(handle, agent)
        logger.info("Respawned %s with %r", handle.window_id, command)

    def discover(self) -> dict[str, SessionHandle]:
        """Window name to handle for every window on the server."""
        windows: dict[str, SessionHandle] = {}
        for fields in self._list_windows("-a"):
            if len(fields) < 3:
                continue
            windows[fields[2]] = SessionHandle(session_id=fields[0], window_id=fields[1])
        return windows
