"""キュープロトコル

ワーカーごとのタスク・レポートレコードと commander からの受信箱。
"""

from .records import (
    CorruptRecordError,
    ReportRecord,
    ReportStatus,
    TaskRecord,
    TaskStatus,
    parse_report_document,
    parse_task_document,
)
from .store import (
    DispatcherQueue,
    QueueAccessError,
    QueueStore,
    WorkerBusyError,
    WorkerQueue,
    WorkerSnapshot,
)
from .inbox import CommandInbox, InboxEntry

__all__ = [
    # Records
    "TaskRecord",
    "TaskStatus",
    "ReportRecord",
    "ReportStatus",
    "CorruptRecordError",
    "parse_task_document",
    "parse_report_document",
    # Store
    "QueueStore",
    "DispatcherQueue",
    "WorkerQueue",
    "WorkerSnapshot",
    "QueueAccessError",
    "WorkerBusyError",
    # Inbox
    "CommandInbox",
    "InboxEntry",
]
