"""状態機械モジュール"""

from .machines import (
    ReportRecordStateMachine,
    StateMachine,
    TaskRecordStateMachine,
    Transition,
    TransitionError,
)

__all__ = [
    "StateMachine",
    "Transition",
    "TaskRecordStateMachine",
    "ReportRecordStateMachine",
    "TransitionError",
]
