"""Agent Shogun Core モジュール

協調基盤のロジックを提供:
- Config: 設定管理
- Pool: プール計画の解決
- Queue: タスク・レポートレコードの永続化
- State: レコードの状態機械
"""

from .config import ConfigError, ShogunSettings
from .pool import PoolPlan, RoleBinding, WorkerIdentity, resolve, resolve_file
from .queue import (
    CommandInbox,
    CorruptRecordError,
    ReportRecord,
    ReportStatus,
    QueueStore,
    TaskRecord,
    TaskStatus,
)
from .state import TransitionError

__all__ = [
    # Config
    "ShogunSettings",
    "ConfigError",
    # Pool
    "PoolPlan",
    "RoleBinding",
    "WorkerIdentity",
    "resolve",
    "resolve_file",
    # Queue
    "QueueStore",
    "CommandInbox",
    "TaskRecord",
    "TaskStatus",
    "ReportRecord",
    "ReportStatus",
    "CorruptRecordError",
    # State
    "TransitionError",
]
