"""状態機械 (State Machines)

タスクレコード・レポートレコードの書き込み時の状態遷移を検証する。
単一割当の不変条件（実行中タスクの上書き禁止）もここで強制。
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from ..queue.records import ReportRecord, ReportStatus, TaskRecord, TaskStatus


class TransitionError(Exception):
    """不正な状態遷移"""

    pass


@dataclass(frozen=True)
class Transition:
    """状態遷移の定義"""

    from_state: Enum
    to_state: Enum


class StateMachine:
    """汎用状態機械基底クラス"""

    def __init__(self, transitions: list[Transition]):
        self._transitions = {(t.from_state, t.to_state) for t in transitions}

    def can_transition(self, from_state: Enum, to_state: Enum) -> bool:
        """遷移可能か確認"""
        return (from_state, to_state) in self._transitions

    def get_valid_targets(self, from_state: Enum) -> list[Enum]:
        """指定状態から遷移可能な状態一覧"""
        return [to for (frm, to) in self._transitions if frm == from_state]

    def check(self, from_state: Enum, to_state: Enum) -> None:
        """遷移を検証

        Raises:
            TransitionError: 不正な遷移の場合
        """
        if not self.can_transition(from_state, to_state):
            valid = sorted(str(s) for s in self.get_valid_targets(from_state))
            raise TransitionError(
                f"Invalid transition: {from_state} -> {to_state}. Valid targets: {valid}"
            )


def _same(*states: Enum) -> list[Transition]:
    return [Transition(s, s) for s in states]


class TaskRecordStateMachine(StateMachine):
    """タスクレコード状態機械（Dispatcherの書き込みを検証）

    状態遷移:
    - IDLE -> ASSIGNED (割当時)
    - ASSIGNED -> IN_PROGRESS (ワーカー着手の観測時)
    - ASSIGNED/IN_PROGRESS -> DONE/FAILED (結果の記録時)
    - * -> IDLE (回収時)
    """

    def __init__(self):
        transitions = [
            Transition(TaskStatus.IDLE, TaskStatus.ASSIGNED),
            Transition(TaskStatus.ASSIGNED, TaskStatus.IN_PROGRESS),
            Transition(TaskStatus.ASSIGNED, TaskStatus.DONE),
            Transition(TaskStatus.ASSIGNED, TaskStatus.FAILED),
            Transition(TaskStatus.IN_PROGRESS, TaskStatus.DONE),
            Transition(TaskStatus.IN_PROGRESS, TaskStatus.FAILED),
            Transition(TaskStatus.ASSIGNED, TaskStatus.IDLE),
            Transition(TaskStatus.IN_PROGRESS, TaskStatus.IDLE),
            Transition(TaskStatus.DONE, TaskStatus.IDLE),
            Transition(TaskStatus.FAILED, TaskStatus.IDLE),
            *_same(*TaskStatus),
        ]
        super().__init__(transitions)

    def check_write(self, current: TaskRecord, new: TaskRecord) -> None:
        """タスクレコードの置き換えを検証

        Raises:
            TransitionError: 実行中タスクの上書き、または不正な遷移
        """
        if (
            not current.is_idle
            and current.task_id
            and not new.is_idle
            and new.task_id != current.task_id
        ):
            raise TransitionError(
                f"task {current.task_id!r} is {current.status}; "
                f"cannot replace it with {new.task_id!r}"
            )
        if not new.is_idle and not new.task_id:
            raise TransitionError(f"task record in status {new.status} requires a task_id")
        self.check(current.status, new.status)


class ReportRecordStateMachine(StateMachine):
    """レポートレコード状態機械（ワーカーの書き込みを検証）

    状態遷移（同一task_id内）:
    - IDLE -> IN_PROGRESS/DONE/FAILED
    - IN_PROGRESS -> DONE/FAILED
    - * -> IDLE (回収されたタスクを手放す時)
    新しい task_id のレポートは IDLE から始まったものとして扱う。
    """

    def __init__(self):
        transitions = [
            Transition(ReportStatus.IDLE, ReportStatus.IN_PROGRESS),
            Transition(ReportStatus.IDLE, ReportStatus.DONE),
            Transition(ReportStatus.IDLE, ReportStatus.FAILED),
            Transition(ReportStatus.IN_PROGRESS, ReportStatus.DONE),
            Transition(ReportStatus.IN_PROGRESS, ReportStatus.FAILED),
            Transition(ReportStatus.DONE, ReportStatus.IDLE),
            Transition(ReportStatus.FAILED, ReportStatus.IDLE),
            Transition(ReportStatus.IN_PROGRESS, ReportStatus.IDLE),
            *_same(*ReportStatus),
        ]
        super().__init__(transitions)

    def check_write(self, current: ReportRecord, new: ReportRecord) -> None:
        """レポートレコードの置き換えを検証

        Raises:
            TransitionError: task_id のない非IDLEレポート、または不正な遷移
        """
        if not new.is_idle and not new.task_id:
            raise TransitionError(f"report in status {new.status} requires a task_id")
        from_state = current.status if current.task_id == new.task_id else ReportStatus.IDLE
        self.check(from_state, new.status)
