"""ワーカーセッション管理

ワーカーを実行する端末セッションの起動・停止を担当する。
"""

from .constants import COMMANDER_WINDOW, MANAGER_WINDOW
from .supervisor import SessionSupervisor
from .tmux import TmuxSessionSupervisor

__all__ = [
    "SessionSupervisor",
    "TmuxSessionSupervisor",
    "COMMANDER_WINDOW",
    "MANAGER_WINDOW",
]
