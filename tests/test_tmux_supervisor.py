"""tmux セッション管理のテスト"""

import subprocess
from unittest.mock import patch

import pytest

from agent_shogun.core.config import ShogunSettings
from agent_shogun.core.pool import WorkerIdentity, resolve
from agent_shogun.session import TmuxSessionSupervisor
from agent_shogun.session.tmux import tmux


class FakeTmux:
    """セッションとウィンドウの状態だけを再現する tmux の代役"""

    def __init__(self):
        self.sessions: dict[str, list[str]] = {}
        self.sent: list[tuple[str, str]] = []

    def __call__(self, *args, check=True):
        command, rest = args[0], list(args[1:])
        returncode, stdout = 0, ""
        if command == "has-session":
            returncode = 0 if rest[1] in self.sessions else 1
        elif command == "new-session":
            self.sessions[rest[rest.index("-s") + 1]] = [rest[rest.index("-n") + 1]]
        elif command == "new-window":
            self.sessions[rest[rest.index("-t") + 1]].append(rest[rest.index("-n") + 1])
        elif command == "list-windows":
            name = rest[1]
            if name in self.sessions:
                stdout = "\n".join(self.sessions[name]) + "\n"
            else:
                returncode = 1
        elif command == "kill-window":
            session, window = rest[1].split(":")
            if window in self.sessions.get(session, []):
                self.sessions[session].remove(window)
        elif command == "kill-session":
            self.sessions.pop(rest[1], None)
        elif command == "send-keys":
            self.sent.append((rest[1], rest[2]))
        return subprocess.CompletedProcess(["tmux", *args], returncode, stdout, "")


@pytest.fixture
def fake_tmux():
    fake = FakeTmux()
    with patch("agent_shogun.session.tmux.tmux", side_effect=fake):
        yield fake


@pytest.fixture
def supervisor():
    return TmuxSessionSupervisor(pool_session="pool", commander_session="cmd", workdir="/work")


class TestTmuxHelper:
    """tmux() のテスト"""

    @patch("agent_shogun.session.tmux.subprocess.run")
    def test_runs_tmux_binary(self, mock_run):
        """tmux コマンドを subprocess で実行する"""
        # Act
        tmux("has-session", "-t", "pool", check=False)

        # Assert
        mock_run.assert_called_once_with(
            ["tmux", "has-session", "-t", "pool"], capture_output=True, text=True, check=False
        )


class TestWorkerSessions:
    """ワーカーウィンドウのテスト"""

    def test_ensure_session_creates_window_and_launches_cli(self, fake_tmux, supervisor):
        """ワーカーのウィンドウを作ってCLIを起動する"""
        # Arrange
        identity = WorkerIdentity(ordinal=2, provider="codex", command="codex --full-auto")

        # Act
        target = supervisor.ensure_session(identity)

        # Assert
        assert target == "pool:worker2"
        assert fake_tmux.sessions["pool"] == ["manager", "worker2"]
        assert fake_tmux.sent == [("pool:worker2", "codex --full-auto")]

    def test_ensure_session_is_idempotent(self, fake_tmux, supervisor):
        """起動済みのワーカーは再起動しない"""
        identity = WorkerIdentity(ordinal=1, provider="claude", command="claude")

        supervisor.ensure_session(identity)
        supervisor.ensure_session(identity)

        assert fake_tmux.sessions["pool"].count("worker1") == 1
        assert len(fake_tmux.sent) == 1

    def test_list_active_sessions(self, fake_tmux, supervisor):
        """worker<N> ウィンドウの序数だけを返す"""
        for n in (1, 3):
            supervisor.ensure_session(WorkerIdentity(ordinal=n, provider="claude", command="c"))

        assert supervisor.list_active_sessions() == {1, 3}

    def test_list_without_session(self, fake_tmux, supervisor):
        assert supervisor.list_active_sessions() == set()

    def test_terminate_session(self, fake_tmux, supervisor):
        identity = WorkerIdentity(ordinal=1, provider="claude", command="claude")
        supervisor.ensure_session(identity)

        supervisor.terminate_session(identity)

        assert supervisor.list_active_sessions() == set()


class TestRoles:
    """commander / manager の起動と終了"""

    def test_start_launches_all_roles(self, fake_tmux, supervisor):
        """commander・manager・全ワーカーを起動する"""
        # Arrange
        plan = resolve(
            {
                "ai_cli": {"manager_provider": "codex"},
                "workers": {"llm_counts": {"claude": 1, "gemini": 1}},
            }
        )

        # Act
        targets = supervisor.start(plan)

        # Assert
        assert targets == ["pool:worker1", "pool:worker2"]
        assert fake_tmux.sessions == {
            "cmd": ["commander"],
            "pool": ["manager", "worker1", "worker2"],
        }
        assert ("cmd:commander", "claude") in fake_tmux.sent
        assert ("pool:manager", "codex") in fake_tmux.sent
        assert ("pool:worker2", "gemini") in fake_tmux.sent

    def test_teardown_kills_both_sessions(self, fake_tmux, supervisor):
        supervisor.start(resolve({"workers": {"count": 1}}))

        supervisor.teardown()

        assert fake_tmux.sessions == {}

    def test_from_settings(self):
        settings = ShogunSettings.from_mapping({"session": {"pool_session": "ashigaru"}})

        supervisor = TmuxSessionSupervisor.from_settings(settings, workdir="/w")

        assert supervisor.pool_session == "ashigaru"
        assert supervisor.commander_session == "shogun"
