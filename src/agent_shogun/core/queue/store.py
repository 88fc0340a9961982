"""キューストア

ワーカーごとのタスクレコード・レポートレコードを YAML ファイルとして保持する。

    <queue>/tasks/worker{N}.yaml
    <queue>/reports/worker{N}_report.yaml

各レコードは「一時ファイルへ書き込み → os.replace」で丸ごと置き換えるため、
読み手が書きかけのレコードを観測することはない。レコードごとに書き手は
1ロールのみ（タスク: Dispatcher、レポート: 所有ワーカー）なのでロックは不要。
書き込みはロール別のハンドル経由でのみ行う。
"""

from __future__ import annotations

import logging
import os
import tempfile
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

import portalocker

from ..pool import PoolPlan, WorkerIdentity
from ..state.machines import ReportRecordStateMachine, TaskRecordStateMachine
from .records import (
    CorruptRecordError,
    ReportRecord,
    ReportStatus,
    TaskRecord,
    TaskStatus,
    dump_document,
    now_iso,
    parse_report_document,
    parse_task_document,
)

logger = logging.getLogger(__name__)


class QueueAccessError(Exception):
    """ロールに許可されていないレコードへの書き込み"""

    pass


class WorkerBusyError(Exception):
    """ワーカーがアイドルでないため割り当てできない"""

    def __init__(self, ordinal: int, task: TaskRecord, report: ReportRecord):
        self.ordinal = ordinal
        self.task = task
        self.report = report
        super().__init__(f"worker{ordinal} is busy (task={task.status}, report={report.status})")


@dataclass(frozen=True)
class WorkerSnapshot:
    """1ワーカー分のタスク・レポートの組"""

    identity: WorkerIdentity
    task: TaskRecord
    report: ReportRecord

    @property
    def is_idle(self) -> bool:
        return self.task.is_idle and self.report.is_idle


class QueueStore:
    """キューレコードの永続化ストレージ

    Attributes:
        root: キューディレクトリのパス
    """

    def __init__(self, root: Path | str, lock_timeout: float = 10.0):
        self.root = Path(root)
        self.lock_timeout = lock_timeout
        self.tasks_dir = self.root / "tasks"
        self.reports_dir = self.root / "reports"

    def task_path(self, ordinal: int) -> Path:
        """タスクレコードのパス"""
        return self.tasks_dir / f"worker{ordinal}.yaml"

    def report_path(self, ordinal: int) -> Path:
        """レポートレコードのパス"""
        return self.reports_dir / f"worker{ordinal}_report.yaml"

    # -------------------------------------------------------------------------
    # 読み込み
    # -------------------------------------------------------------------------

    def read_task(self, ordinal: int) -> TaskRecord:
        """タスクレコードを読み込む

        存在しない・壊れている場合は未割当として扱う。
        """
        path = self.task_path(ordinal)
        if not path.exists():
            return TaskRecord.idle()
        try:
            return parse_task_document(path.read_text(encoding="utf-8"))
        except (CorruptRecordError, OSError) as e:
            logger.warning(f"壊れたタスクレコードをidleとして扱います: {path}: {e}")
            return TaskRecord.idle()

    def read_report(self, ordinal: int) -> ReportRecord:
        """レポートレコードを読み込む

        存在しない・壊れている場合、または worker_id が一致しない場合は
        idle として扱う。
        """
        path = self.report_path(ordinal)
        if not path.exists():
            return ReportRecord.idle(ordinal)
        try:
            report = parse_report_document(path.read_text(encoding="utf-8"))
        except (CorruptRecordError, OSError) as e:
            logger.warning(f"壊れたレポートレコードをidleとして扱います: {path}: {e}")
            return ReportRecord.idle(ordinal)
        if report.worker_id != ordinal:
            logger.warning(
                f"レポートの worker_id が一致しません ({report.worker_id} != {ordinal}): {path}"
            )
            return ReportRecord.idle(ordinal)
        return report

    def snapshot(self, plan: PoolPlan) -> list[WorkerSnapshot]:
        """計画内の全ワーカーのレコードを序数順に取得"""
        return [
            WorkerSnapshot(
                identity=w,
                task=self.read_task(w.ordinal),
                report=self.read_report(w.ordinal),
            )
            for w in sorted(plan.workers, key=lambda w: w.ordinal)
        ]

    # -------------------------------------------------------------------------
    # 書き込み（ロール別ハンドルからのみ呼ぶ）
    # -------------------------------------------------------------------------

    @staticmethod
    def _write_atomic(path: Path, text: str) -> None:
        """一時ファイル経由でアトミックに置き換える"""
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(text)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def _write_task(self, ordinal: int, record: TaskRecord) -> None:
        self._write_atomic(
            self.task_path(ordinal),
            dump_document(record.to_document(), header=f"worker{ordinal} 専用タスクファイル"),
        )

    def _write_report(self, ordinal: int, record: ReportRecord) -> None:
        self._write_atomic(self.report_path(ordinal), dump_document(record.to_document()))

    # -------------------------------------------------------------------------
    # 管理操作
    # -------------------------------------------------------------------------

    def reset_worker(self, ordinal: int) -> None:
        """タスク・レポートの両方を初期状態に戻す（冪等）"""
        self._write_task(ordinal, TaskRecord.idle())
        self._write_report(ordinal, ReportRecord.idle(ordinal))
        logger.debug(f"worker{ordinal} をidleに戻しました")

    def initialize(self, plan: PoolPlan) -> list[int]:
        """計画内の全ワーカーについてレコードの組を用意する

        既存レコードはそのまま残す。計画外の序数のレコードは削除しない。

        Returns:
            新規作成したレコードを持つ序数のリスト
        """
        self.tasks_dir.mkdir(parents=True, exist_ok=True)
        self.reports_dir.mkdir(parents=True, exist_ok=True)

        created: list[int] = []
        for worker in plan.workers:
            touched = False
            if not self.task_path(worker.ordinal).exists():
                self._write_task(worker.ordinal, TaskRecord.idle())
                touched = True
            if not self.report_path(worker.ordinal).exists():
                self._write_report(worker.ordinal, ReportRecord.idle(worker.ordinal))
                touched = True
            if touched:
                created.append(worker.ordinal)

        if created:
            logger.info(f"キューレコードを作成しました: {created}")
        return created

    def existing_ordinals(self) -> list[int]:
        """タスクまたはレポートのレコードが存在する序数"""
        ordinals: set[int] = set()
        for directory, suffix in ((self.tasks_dir, ".yaml"), (self.reports_dir, "_report.yaml")):
            if not directory.exists():
                continue
            for path in directory.iterdir():
                name = path.name
                if not name.startswith("worker") or not name.endswith(suffix):
                    continue
                number = name[len("worker") : -len(suffix)]
                if number.isdigit():
                    ordinals.add(int(number))
        return sorted(ordinals)

    def prune(self, plan: PoolPlan) -> list[int]:
        """計画外の序数のレコードを削除する（保守操作）

        Returns:
            削除した序数のリスト
        """
        keep = set(plan.ordinals())
        removed: list[int] = []
        for ordinal in self.existing_ordinals():
            if ordinal in keep:
                continue
            self.task_path(ordinal).unlink(missing_ok=True)
            self.report_path(ordinal).unlink(missing_ok=True)
            removed.append(ordinal)
        if removed:
            logger.info(f"計画外のキューレコードを削除しました: {removed}")
        return removed

    @contextmanager
    def pool_lock(self, timeout: float | None = None) -> Iterator[None]:
        """プール全体の排他ロック

        ディスパッチ中とプール初期化・リサイズが重ならないようにする。

        Raises:
            portalocker.exceptions.LockException: タイムアウト時
        """
        self.root.mkdir(parents=True, exist_ok=True)
        lock_timeout = self.lock_timeout if timeout is None else timeout
        with portalocker.Lock(self.root / ".pool.lock", mode="a", timeout=lock_timeout):
            yield

    # -------------------------------------------------------------------------
    # ロール別ハンドル
    # -------------------------------------------------------------------------

    def as_dispatcher(self) -> DispatcherQueue:
        """Dispatcher用ハンドル（タスクレコードの書き手）"""
        return DispatcherQueue(self)

    def as_worker(self, ordinal: int) -> WorkerQueue:
        """ワーカー用ハンドル（自分のレポートレコードの書き手）"""
        return WorkerQueue(self, ordinal)


class DispatcherQueue:
    """Dispatcherロールのキュー操作

    タスクレコードを書き、レポートレコードは読むだけ。
    """

    def __init__(self, store: QueueStore):
        self._store = store
        self._machine = TaskRecordStateMachine()

    def read_task(self, ordinal: int) -> TaskRecord:
        return self._store.read_task(ordinal)

    def read_report(self, ordinal: int) -> ReportRecord:
        return self._store.read_report(ordinal)

    def write_task(self, ordinal: int, record: TaskRecord) -> TaskRecord:
        """タスクレコードを置き換える（状態遷移を検証）

        Raises:
            TransitionError: 不正な遷移の場合
        """
        self._machine.check_write(self._store.read_task(ordinal), record)
        if not record.timestamp:
            record = record.model_copy(update={"timestamp": now_iso()})
        self._store._write_task(ordinal, record)
        return record

    def assign(
        self,
        ordinal: int,
        *,
        task_id: str,
        description: str,
        parent_cmd: str = "",
        target_path: str = "",
    ) -> TaskRecord:
        """アイドルのワーカーにタスクを割り当てる

        Raises:
            WorkerBusyError: タスクまたはレポートがidleでない場合
        """
        current = self._store.read_task(ordinal)
        report = self._store.read_report(ordinal)
        if not current.is_idle or not report.is_idle:
            raise WorkerBusyError(ordinal, current, report)
        record = TaskRecord(
            task_id=task_id,
            parent_cmd=parent_cmd,
            description=description,
            target_path=target_path,
            status=TaskStatus.ASSIGNED,
            timestamp=now_iso(),
        )
        return self.write_task(ordinal, record)

    def mark_in_progress(self, ordinal: int, task: TaskRecord) -> TaskRecord:
        """ワーカーの着手を観測したことをタスクレコードに反映"""
        return self.write_task(
            ordinal, task.model_copy(update={"status": TaskStatus.IN_PROGRESS, "timestamp": ""})
        )

    def reset_worker(self, ordinal: int) -> None:
        """ワーカーを回収してidleに戻す"""
        self._store.reset_worker(ordinal)


class WorkerQueue:
    """ワーカーロールのキュー操作

    自分の序数のタスクレコードを読み、自分のレポートレコードだけを書く。
    """

    def __init__(self, store: QueueStore, ordinal: int):
        self._store = store
        self.ordinal = ordinal
        self._machine = ReportRecordStateMachine()

    def read_task(self) -> TaskRecord:
        return self._store.read_task(self.ordinal)

    def read_report(self) -> ReportRecord:
        return self._store.read_report(self.ordinal)

    def write_report(self, record: ReportRecord) -> ReportRecord:
        """レポートレコードを置き換える

        Raises:
            QueueAccessError: 他ワーカーのレポートを書こうとした場合
            TransitionError: 不正な遷移の場合
        """
        if record.worker_id != self.ordinal:
            raise QueueAccessError(
                f"worker{self.ordinal} cannot write a report for worker{record.worker_id}"
            )
        self._machine.check_write(self._store.read_report(self.ordinal), record)
        if not record.timestamp:
            record = record.model_copy(update={"timestamp": now_iso()})
        self._store._write_report(self.ordinal, record)
        return record

    def _current_task(self) -> TaskRecord:
        task = self.read_task()
        if task.is_idle or not task.task_id:
            raise QueueAccessError(f"worker{self.ordinal} has no assigned task")
        return task

    def accept(self) -> ReportRecord:
        """割り当てられたタスクに着手したことを報告"""
        task = self._current_task()
        return self.write_report(
            ReportRecord(
                worker_id=self.ordinal, task_id=task.task_id, status=ReportStatus.IN_PROGRESS
            )
        )

    def complete(self, result: str = "") -> ReportRecord:
        """タスク完了を報告"""
        task = self._current_task()
        return self.write_report(
            ReportRecord(
                worker_id=self.ordinal,
                task_id=task.task_id,
                status=ReportStatus.DONE,
                result=result,
            )
        )

    def fail(self, result: str = "") -> ReportRecord:
        """タスク失敗を報告"""
        task = self._current_task()
        return self.write_report(
            ReportRecord(
                worker_id=self.ordinal,
                task_id=task.task_id,
                status=ReportStatus.FAILED,
                result=result,
            )
        )

    def release(self) -> ReportRecord | None:
        """現在のタスクに対応しないレポートを手放してidleに戻す

        回収済みタスクのレポートが残っているとワーカーは割当対象にならない。

        Returns:
            書き込んだレコード。手放すものがなければNone
        """
        task = self.read_task()
        report = self.read_report()
        if report.is_idle and not report.task_id:
            return None
        if not task.is_idle and report.matches(task):
            return None
        return self.write_report(ReportRecord.idle(self.ordinal))
