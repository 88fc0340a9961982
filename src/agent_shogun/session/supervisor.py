"""SessionSupervisor インターフェース"""

from __future__ import annotations

from typing import Any, Protocol

from ..core.pool import WorkerIdentity


class SessionSupervisor(Protocol):
    """ワーカーセッションの起動・停止を行うもの

    Dispatcher はセッションを直接扱わない。プールの管理操作だけが使う。
    """

    def ensure_session(self, identity: WorkerIdentity) -> Any:
        """ワーカーのセッションを起動する（起動済みなら何もしない）"""
        ...

    def terminate_session(self, identity: WorkerIdentity) -> None:
        """ワーカーのセッションを停止する"""
        ...

    def list_active_sessions(self) -> set[int]:
        """稼働中のワーカー序数"""
        ...
