import subprocess
from pathlib import Path

import pytest

from orchard.errors import MultiplexerError
from orchard.models import SessionHandle
from orchard.session import SessionManager, TmuxServer, session_name_for


class FakeTmux:
    """Just enough tmux to exercise session and window bookkeeping."""

    def __init__(self) -> None:
        self.calls: list[list[str]] = []
        self.sessions: dict[str, str] = {}
        self.windows: list[dict[str, str]] = []
        self.server_up = False

    def _result(
        self, stdout: str = "", returncode: int = 0, stderr: str = ""
    ) -> subprocess.CompletedProcess[str]:
        return subprocess.CompletedProcess(self.calls[-1], returncode, stdout, stderr)

    def __call__(self, command: list[str]) -> subprocess.CompletedProcess[str]:
        self.calls.append(command)
        assert command[:3] == ["tmux", "-L", "orchard-test"]
        args = command[3:]
        verb = args[0]
        if not self.server_up and verb != "new-session":
            return self._result(returncode=1, stderr="no server running on /tmp/tmux")
        if verb == "display-message":
            name = args[args.index("-t") + 1].lstrip("=")
            if name in self.sessions:
                return self._result(self.sessions[name] + "\n")
            return self._result(returncode=1, stderr=f"can't find session: {name}")
        if verb == "new-session":
            self.server_up = True
            session_id = f"${len(self.sessions)}"
            self.sessions[args[args.index("-s") + 1]] = session_id
            return self._result(session_id + "\n")
        if verb == "new-window":
            window_id = f"@{len(self.windows) + 1}"
            session_id = args[args.index("-t") + 1].rstrip(":")
            self.windows.append(
                {
                    "session": session_id,
                    "id": window_id,
                    "name": args[args.index("-n") + 1],
                    "agent": "",
                }
            )
            return self._result(window_id + "\n")
        if verb == "list-windows":
            target = args[args.index("-t") + 1] if "-t" in args else None
            lines = [
                "\t".join([window["session"], window["id"], window["name"], window["agent"]])
                for window in self.windows
                if target is None or window["session"] == target
            ]
            return self._result("\n".join(lines) + "\n")
        if verb == "set-option":
            window_id = args[args.index("-t") + 1]
            for window in self.windows:
                if window["id"] == window_id:
                    window["agent"] = args[-1]
            return self._result()
        if verb == "show-options":
            window_id = args[args.index("-t") + 1]
            for window in self.windows:
                if window["id"] == window_id and window["agent"]:
                    return self._result(window["agent"] + "\n")
            return self._result(returncode=1, stderr="invalid option")
        if verb == "kill-window":
            window_id = args[args.index("-t") + 1]
            self.windows = [window for window in self.windows if window["id"] != window_id]
            return self._result()
        if verb == "capture-pane":
            return self._result("$ claude\nWhat do you want to build?\n")
        return self._result()


@pytest.fixture
def fake_tmux() -> FakeTmux:
    return FakeTmux()


@pytest.fixture
def manager(fake_tmux: FakeTmux) -> SessionManager:
    return SessionManager(TmuxServer("orchard-test", runner=fake_tmux))


def test_session_name_sanitizes_tmux_separators() -> None:
    assert session_name_for("my.project: v2") == "my-project-v2"
    assert session_name_for("...") == "orchard"


def test_ensure_session_is_idempotent(
    manager: SessionManager, fake_tmux: FakeTmux, tmp_path: Path
) -> None:
    first = manager.ensure_session("demo", tmp_path)
    second = manager.ensure_session("demo", tmp_path)

    assert first == second == "$0"
    assert sum(1 for call in fake_tmux.calls if call[3] == "new-session") == 1


def test_ensure_window_records_agent(manager: SessionManager, tmp_path: Path) -> None:
    session_id = manager.ensure_session("demo", tmp_path)

    handle = manager.ensure_window(session_id, "task-fix-a1b2", tmp_path, "claude", agent="claude")
    again = manager.ensure_window(session_id, "task-fix-a1b2", tmp_path, "codex", agent="codex")

    assert handle == again == SessionHandle(session_id="$0", window_id="@1")
    assert manager.window_agent(handle) == "claude"
    assert manager.window_exists(handle)


def test_discover_maps_window_names(manager: SessionManager, tmp_path: Path) -> None:
    assert manager.discover() == {}

    session_id = manager.ensure_session("demo", tmp_path)
    manager.ensure_window(session_id, "task-one", tmp_path, "claude")
    manager.ensure_window(session_id, "task-two", tmp_path, "codex")

    assert manager.discover() == {
        "task-one": SessionHandle(session_id="$0", window_id="@1"),
        "task-two": SessionHandle(session_id="$0", window_id="@2"),
    }


def test_send_keys_is_literal_then_enter(manager: SessionManager, fake_tmux: FakeTmux) -> None:
    handle = SessionHandle(session_id="$0", window_id="@3")
    fake_tmux.server_up = True

    manager.send_keys(handle, "/gsd:plan-phase 1")
    manager.send_keys(handle, "")

    sent = [call[3:] for call in fake_tmux.calls if call[3] == "send-keys"]
    assert sent == [
        ["send-keys", "-t", "@3", "-l", "/gsd:plan-phase 1"],
        ["send-keys", "-t", "@3", "Enter"],
    ]


def test_respawn_kills_and_reassigns_agent(
    manager: SessionManager, fake_tmux: FakeTmux, tmp_path: Path
) -> None:
    session_id = manager.ensure_session("demo", tmp_path)
    handle = manager.ensure_window(session_id, "task-one", tmp_path, "claude", agent="claude")

    manager.respawn(handle, "codex --full-auto", cwd=tmp_path, agent="codex")

    respawn = next(call[3:] for call in fake_tmux.calls if call[3] == "respawn-pane")
    assert respawn == ["respawn-pane", "-k", "-t", "@1", "-c", str(tmp_path), "codex --full-auto"]
    assert manager.window_agent(handle) == "codex"


def test_kill_window_and_read_pane(manager: SessionManager, tmp_path: Path) -> None:
    session_id = manager.ensure_session("demo", tmp_path)
    handle = manager.ensure_window(session_id, "task-one", tmp_path, "claude")

    assert "What do you want to build?" in manager.read_pane(handle)
    manager.kill_window(handle)
    manager.kill_window(handle)

    assert not manager.window_exists(handle)


def test_failed_command_raises_multiplexer_error() -> None:
    def failing_runner(command: list[str]) -> subprocess.CompletedProcess[str]:
        return subprocess.CompletedProcess(command, 1, "", "protocol version mismatch")

    server = TmuxServer("orchard-test", runner=failing_runner)

    with pytest.raises(MultiplexerError) as excinfo:
        server.run("new-session", "-d")
    assert "protocol version mismatch" in str(excinfo.value)
    assert excinfo.value.command == ["tmux", "-L", "orchard-test", "new-session", "-d"]


def test_missing_binary_raises_multiplexer_error() -> None:
    def missing_runner(command: list[str]) -> subprocess.CompletedProcess[str]:
        raise FileNotFoundError(command[0])

    with pytest.raises(MultiplexerError):
        TmuxServer("orchard-test", runner=missing_runner).run("list-sessions")