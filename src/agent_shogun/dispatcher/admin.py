"""プール管理操作

プールの初期化・リサイズ・セッション同期。ワーカー数の変更は
プール全体がアイドルのときにのみ行える。
"""

from __future__ import annotations

import logging

from ..core.pool import PoolPlan, WorkerIdentity
from ..core.queue.store import QueueStore
from ..session.supervisor import SessionSupervisor

logger = logging.getLogger(__name__)


class PoolBusyError(Exception):
    """割当中のワーカーがいるためプールを変更できない"""

    def __init__(self, busy: list[int]):
        self.busy = busy
        super().__init__(f"pool is not quiescent; busy workers: {busy}")


def busy_workers(store: QueueStore, plan: PoolPlan) -> list[int]:
    """タスクまたはレポートがidleでないワーカーの序数"""
    ordinals = set(plan.ordinals()) | set(store.existing_ordinals())
    busy = []
    for ordinal in sorted(ordinals):
        if not store.read_task(ordinal).is_idle or not store.read_report(ordinal).is_idle:
            busy.append(ordinal)
    return busy


def is_quiescent(store: QueueStore, plan: PoolPlan) -> bool:
    """プール全体がアイドルか（計画外に残ったレコードも含めて確認）"""
    return not busy_workers(store, plan)


def sync_sessions(supervisor: SessionSupervisor, plan: PoolPlan) -> tuple[list[int], list[int]]:
    """稼働中のセッションを計画に合わせる

    Returns:
        (起動した序数, 停止した序数)
    """
    active = supervisor.list_active_sessions()
    wanted = set(plan.ordinals())

    started: list[int] = []
    for worker in plan.workers:
        if worker.ordinal not in active:
            supervisor.ensure_session(worker)
            started.append(worker.ordinal)

    stopped: list[int] = []
    for ordinal in sorted(active - wanted):
        # 計画外のワーカーは序数だけで識別する
        supervisor.terminate_session(WorkerIdentity(ordinal=ordinal, provider="", command=""))
        stopped.append(ordinal)

    if started or stopped:
        logger.info(f"セッションを同期しました: 起動={started} 停止={stopped}")
    return started, stopped


def resize_pool(
    store: QueueStore,
    old_plan: PoolPlan,
    new_plan: PoolPlan,
    supervisor: SessionSupervisor | None = None,
) -> list[int]:
    """プールを新しい計画に切り替える

    計画外になった序数のレコードは残す（削除は prune で明示的に行う）。

    Returns:
        新規作成したレコードを持つ序数

    Raises:
        PoolBusyError: 割当中のワーカーがいる場合
        portalocker.exceptions.LockException: ディスパッチ中でロックが取れない場合
    """
    with store.pool_lock():
        busy = busy_workers(store, old_plan)
        if busy:
            raise PoolBusyError(busy)
        if old_plan.size != new_plan.size:
            logger.warning(f"ワーカー数を変更します: {old_plan.size} -> {new_plan.size}")
        created = store.initialize(new_plan)

    if supervisor is not None:
        sync_sessions(supervisor, new_plan)
    return created
