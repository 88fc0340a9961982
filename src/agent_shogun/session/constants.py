"""tmux セッション用の定数定義"""

from __future__ import annotations

# ウィンドウ名
COMMANDER_WINDOW = "commander"
MANAGER_WINDOW = "manager"

# ワーカーウィンドウ名の接頭辞（worker1, worker2, ...）
WORKER_WINDOW_PREFIX = "worker"
