"""Dispatcher（manager ロール）

コマンドを作業単位に分け、アイドルのワーカーに割り当てて結果を回収する。
"""

from .admin import PoolBusyError, busy_workers, is_quiescent, resize_pool, sync_sessions
from .engine import (
    AssignmentExhausted,
    Assignment,
    Dispatcher,
    OutcomeStatus,
    PollResult,
    RetryLimitExceeded,
    StaleReport,
    TaskOutcome,
    WorkUnit,
    check_report,
)
from .retry import RetryManager, RetryPolicy, RetryStrategy, UnitRetryState

__all__ = [
    # Engine
    "Dispatcher",
    "WorkUnit",
    "Assignment",
    "TaskOutcome",
    "OutcomeStatus",
    "PollResult",
    "check_report",
    # Errors
    "AssignmentExhausted",
    "RetryLimitExceeded",
    "StaleReport",
    "PoolBusyError",
    # Retry
    "RetryManager",
    "RetryPolicy",
    "RetryStrategy",
    "UnitRetryState",
    # Admin
    "busy_workers",
    "is_quiescent",
    "resize_pool",
    "sync_sessions",
]
