"""tmux セッション管理

commander 用セッションと、manager・ワーカー用のプールセッションを扱う。

    <commander_session>   window: commander
    <pool_session>        window: manager, worker1, worker2, ...
"""

from __future__ import annotations

import logging
import os
import re
import subprocess

from ..core.config import ShogunSettings
from ..core.pool import PoolPlan, WorkerIdentity
from .constants import COMMANDER_WINDOW, MANAGER_WINDOW, WORKER_WINDOW_PREFIX

logger = logging.getLogger(__name__)

_WORKER_WINDOW = re.compile(rf"^{WORKER_WINDOW_PREFIX}(\d+)$")


def tmux(*args: str, check: bool = True) -> subprocess.CompletedProcess[str]:
    """tmux コマンドを実行する。"""
    cmd = ["tmux"] + list(args)
    return subprocess.run(cmd, capture_output=True, text=True, check=check)


class TmuxSessionSupervisor:
    """ワーカー1人につき1ウィンドウを割り当てる SessionSupervisor"""

    def __init__(
        self,
        pool_session: str = "multiagent",
        commander_session: str = "shogun",
        workdir: str | None = None,
    ):
        self.pool_session = pool_session
        self.commander_session = commander_session
        self.workdir = workdir or os.getcwd()

    @classmethod
    def from_settings(
        cls, settings: ShogunSettings, workdir: str | None = None
    ) -> TmuxSessionSupervisor:
        return cls(
            pool_session=settings.session.pool_session,
            commander_session=settings.session.commander_session,
            workdir=workdir,
        )

    # -------------------------------------------------------------------------
    # セッション・ウィンドウ
    # -------------------------------------------------------------------------

    @staticmethod
    def session_exists(name: str) -> bool:
        """セッションが存在するか確認する。"""
        result = tmux("has-session", "-t", name, check=False)
        return result.returncode == 0

    def _new_session(self, name: str, window: str) -> bool:
        """セッションがなければ作成する（作成した場合True）"""
        if self.session_exists(name):
            return False
        tmux("new-session", "-d", "-s", name, "-n", window, "-c", self.workdir)
        logger.info(f"tmux セッションを作成しました: {name}")
        return True

    def window_names(self) -> list[str]:
        """プールセッションのウィンドウ名一覧"""
        result = tmux("list-windows", "-t", self.pool_session, "-F", "#{window_name}", check=False)
        if result.returncode != 0:
            return []
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    def _target(self, window: str) -> str:
        return f"{self.pool_session}:{window}"

    def _launch(self, target: str, command: str) -> None:
        if command:
            tmux("send-keys", "-t", target, command, "Enter")

    # -------------------------------------------------------------------------
    # SessionSupervisor
    # -------------------------------------------------------------------------

    def ensure_session(self, identity: WorkerIdentity) -> str:
        """ワーカーのウィンドウを起動してCLIを立ち上げる

        Returns:
            tmux のターゲット名（`<session>:worker<N>`）
        """
        self._new_session(self.pool_session, MANAGER_WINDOW)
        target = self._target(identity.name)
        if identity.name in self.window_names():
            return target
        tmux("new-window", "-d", "-t", self.pool_session, "-n", identity.name, "-c", self.workdir)
        self._launch(target, identity.command)
        logger.info(f"{identity.name} を起動しました ({identity.provider}: {identity.command})")
        return target

    def terminate_session(self, identity: WorkerIdentity) -> None:
        tmux("kill-window", "-t", self._target(identity.name), check=False)
        logger.info(f"{identity.name} を停止しました")

    def list_active_sessions(self) -> set[int]:
        active: set[int] = set()
        for name in self.window_names():
            match = _WORKER_WINDOW.match(name)
            if match:
                active.add(int(match.group(1)))
        return active

    # -------------------------------------------------------------------------
    # プール全体
    # -------------------------------------------------------------------------

    def start_roles(self, plan: PoolPlan) -> None:
        """commander セッションと manager ウィンドウを起動する"""
        if self._new_session(self.commander_session, COMMANDER_WINDOW):
            self._launch(f"{self.commander_session}:{COMMANDER_WINDOW}", plan.commander.command)
        if self._new_session(self.pool_session, MANAGER_WINDOW):
            self._launch(self._target(MANAGER_WINDOW), plan.manager.command)

    def start(self, plan: PoolPlan) -> list[str]:
        """全ロールとワーカーを起動する"""
        self.start_roles(plan)
        return [self.ensure_session(worker) for worker in plan.workers]

    def teardown(self) -> None:
        """両セッションを終了する。"""
        for name in (self.pool_session, self.commander_session):
            if self.session_exists(name):
                tmux("kill-session", "-t", name, check=False)
                logger.info(f"tmux セッションを終了しました: {name}")
