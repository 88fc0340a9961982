"""Dispatcher（manager のディスパッチロジック）

保留中の作業単位をアイドルのワーカーに割り当て、ワーカーのレポートを
突き合わせて完了・失敗を確定する。ワーカーとのやり取りはキューストア経由のみ。

ワーカーごとの組み合わせ状態:

    task=idle,        report=idle         空き。割当可能
    task=assigned,    report=idle         未着手。割当タイムアウトで放棄扱い
    task=assigned/in_progress, report=in_progress  実行中。最大実行時間で打ち切り
    task=*,           report=done         成功。記録して回収
    task=*,           report=failed       失敗。リトライポリシーを適用して回収
    report.task_id != task.task_id        古いレポート。無視
"""

from __future__ import annotations

import bisect
import itertools
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import StrEnum

from ulid import ULID

from ..core.config import DispatchConfig
from ..core.pool import PoolPlan
from ..core.queue.inbox import CommandInbox
from ..core.queue.records import (
    ReportRecord,
    ReportStatus,
    TaskRecord,
    TaskStatus,
    parse_timestamp,
)
from ..core.queue.store import QueueStore, WorkerBusyError
from ..core.state.machines import TransitionError
from .retry import RetryManager, RetryPolicy

logger = logging.getLogger(__name__)


class AssignmentExhausted(Exception):
    """即時割当を要求されたがアイドルのワーカーがいない"""

    def __init__(self, unit: WorkUnit):
        self.unit = unit
        super().__init__(f"no idle worker available for {unit.unit_id}")


class RetryLimitExceeded(Exception):
    """作業単位がリトライ上限を超えて失敗した"""

    def __init__(self, unit: WorkUnit, attempts: int, reason: str):
        self.unit = unit
        self.attempts = attempts
        self.reason = reason
        super().__init__(
            f"{unit.unit_id} failed {attempts} time(s)"
            f" (parent_cmd={unit.parent_cmd or '-'}): {reason}"
        )


class StaleReport(Exception):
    """レポートの task_id が現在のタスクと一致しない"""

    def __init__(self, ordinal: int, report_task_id: str, task_id: str):
        self.ordinal = ordinal
        self.report_task_id = report_task_id
        self.task_id = task_id
        super().__init__(
            f"worker{ordinal}: stale report for {report_task_id!r} (current task {task_id!r})"
        )


class OutcomeStatus(StrEnum):
    """作業結果"""

    DONE = "done"
    FAILED = "failed"


@dataclass
class WorkUnit:
    """ディスパッチ対象の作業単位

    リトライしても unit_id は変わらない。task_id は割当ごとに新しく発行する。
    """

    description: str
    parent_cmd: str = ""
    target_path: str = ""
    unit_id: str = field(default_factory=lambda: f"unit-{ULID()}")
    submitted_seq: int = 0
    attempts: int = 0
    not_before: datetime | None = None


@dataclass
class Assignment:
    """ワーカーへの割当状況"""

    ordinal: int
    unit: WorkUnit
    task_id: str
    assigned_at: datetime
    started_at: datetime | None = None


@dataclass
class TaskOutcome:
    """確定した作業結果"""

    unit: WorkUnit
    ordinal: int
    task_id: str
    status: OutcomeStatus
    result: str = ""
    reason: str = ""
    will_retry: bool = False
    finished_at: datetime | None = None


@dataclass
class PollResult:
    """1回のポーリングの結果"""

    outcomes: list[TaskOutcome] = field(default_factory=list)
    assignments: list[Assignment] = field(default_factory=list)
    started: list[int] = field(default_factory=list)

    @property
    def has_activity(self) -> bool:
        return bool(self.outcomes or self.assignments or self.started)


def check_report(ordinal: int, task: TaskRecord, report: ReportRecord) -> ReportRecord | None:
    """現在のタスクに対応するレポートを返す

    Returns:
        一致するレポート。まだ何も報告されていなければNone

    Raises:
        StaleReport: 別タスクのレポートの場合
    """
    if report.is_idle and not report.task_id:
        return None
    if report.task_id != task.task_id:
        raise StaleReport(ordinal, report.task_id, task.task_id)
    return report


class Dispatcher:
    """ディスパッチャ

    PoolPlan のワーカーに作業単位を割り当てる。保留キューは投入順 (FIFO)、
    空きワーカーは序数の昇順で選ぶ。
    """

    def __init__(
        self,
        plan: PoolPlan,
        store: QueueStore,
        config: DispatchConfig | None = None,
        *,
        clock: Callable[[], datetime] | None = None,
        on_outcome: Callable[[TaskOutcome], None] | None = None,
        on_exhausted: Callable[[RetryLimitExceeded], None] | None = None,
    ):
        self.plan = plan
        self.config = config or DispatchConfig()
        self._store = store
        self._queue = store.as_dispatcher()
        self._retry = RetryManager(RetryPolicy.from_config(self.config))
        self._clock = clock or (lambda: datetime.now(UTC))
        self._on_outcome = on_outcome
        self._on_exhausted = on_exhausted
        self._seq = itertools.count(1)
        self._pending: list[WorkUnit] = []
        self._inflight: dict[int, Assignment] = {}
        self.outcomes: list[TaskOutcome] = []
        self.exhausted: list[RetryLimitExceeded] = []
        self.failed_parents: dict[str, str] = {}

    # -------------------------------------------------------------------------
    # 参照
    # -------------------------------------------------------------------------

    @property
    def pending(self) -> list[WorkUnit]:
        """保留中の作業単位（投入順）"""
        return list(self._pending)

    @property
    def inflight(self) -> dict[int, Assignment]:
        """序数 → 割当中の作業"""
        return dict(self._inflight)

    def idle_workers(self) -> list[int]:
        """割当可能なワーカーの序数（昇順）

        タスク・レポートの両方がidleで、かつ追跡中の割当がないワーカーのみ。
        """
        idle = []
        for snapshot in self._store.snapshot(self.plan):
            ordinal = snapshot.identity.ordinal
            if ordinal in self._inflight:
                continue
            if snapshot.is_idle:
                idle.append(ordinal)
            elif snapshot.task.is_idle and snapshot.report.task_id:
                logger.debug(f"worker{ordinal}: 未回収のレポートがあるため割当を見送ります")
        return idle

    # -------------------------------------------------------------------------
    # 投入・割当
    # -------------------------------------------------------------------------

    def enqueue(self, unit: WorkUnit) -> WorkUnit:
        """作業単位を保留キューに入れる（投入順を維持）"""
        if unit.submitted_seq == 0:
            unit.submitted_seq = next(self._seq)
        bisect.insort(self._pending, unit, key=lambda u: u.submitted_seq)
        return unit

    def submit(
        self,
        description: str,
        *,
        parent_cmd: str = "",
        target_path: str = "",
        immediate: bool = False,
    ) -> WorkUnit:
        """作業単位を作成して投入

        Args:
            immediate: Trueなら保留せず即時割当する

        Raises:
            AssignmentExhausted: immediate=True でアイドルのワーカーがいない場合
        """
        unit = WorkUnit(description=description, parent_cmd=parent_cmd, target_path=target_path)
        unit.submitted_seq = next(self._seq)
        if immediate:
            self.assign_now(unit)
        else:
            self.enqueue(unit)
        return unit

    def ingest(self, inbox: CommandInbox) -> list[WorkUnit]:
        """受信箱の指示をすべて保留キューに取り込む"""
        units = [
            self.submit(
                entry.description,
                parent_cmd=entry.parent_cmd or entry.cmd_id,
                target_path=entry.target_path,
            )
            for entry in inbox.drain()
        ]
        if units:
            logger.info(f"受信箱から {len(units)} 件の指示を取り込みました")
        return units

    def assign_now(self, unit: WorkUnit) -> Assignment:
        """作業単位を今すぐ割り当てる（保留キューには入れない）

        Raises:
            AssignmentExhausted: アイドルのワーカーがいない場合
        """
        idle = self.idle_workers()
        while idle:
            ordinal = self._pick_worker(unit, idle)
            if ordinal is None:
                break
            try:
                return self._assign(unit, ordinal)
            except WorkerBusyError:
                idle.remove(ordinal)
        raise AssignmentExhausted(unit)

    def dispatch_pending(self) -> list[Assignment]:
        """保留中の作業単位をアイドルのワーカーに割り当てる"""
        now = self._clock()
        idle = self.idle_workers()
        assignments: list[Assignment] = []
        for unit in list(self._pending):
            if not idle:
                break
            if unit.not_before is not None and unit.not_before > now:
                continue
            ordinal = self._pick_worker(unit, idle)
            if ordinal is None:
                continue
            try:
                assignment = self._assign(unit, ordinal)
            except WorkerBusyError as e:
                # 読み取り後にワーカーがレポートを書いた
                logger.debug(str(e))
                idle.remove(ordinal)
                continue
            self._pending.remove(unit)
            idle.remove(ordinal)
            assignments.append(assignment)
        return assignments

    def _pick_worker(self, unit: WorkUnit, idle: list[int]) -> int | None:
        ranked = self._retry.rank_workers(unit.unit_id, idle, self.plan.ordinals())
        return ranked[0] if ranked else None

    def _assign(self, unit: WorkUnit, ordinal: int) -> Assignment:
        task_id = str(ULID())
        self._queue.assign(
            ordinal,
            task_id=task_id,
            description=unit.description,
            parent_cmd=unit.parent_cmd,
            target_path=unit.target_path,
        )
        assignment = Assignment(
            ordinal=ordinal, unit=unit, task_id=task_id, assigned_at=self._clock()
        )
        self._inflight[ordinal] = assignment
        logger.info(f"worker{ordinal} に {unit.unit_id} を割り当てました (task_id={task_id})")
        return assignment

    # -------------------------------------------------------------------------
    # 突き合わせ
    # -------------------------------------------------------------------------

    def reconcile(self) -> PollResult:
        """割当中の全ワーカーのレポートを突き合わせる

        1ワーカーのレコード書き込みに失敗しても他のワーカーの処理は続ける。
        """
        result = PollResult()
        now = self._clock()
        for ordinal in sorted(self._inflight):
            try:
                self._reconcile_worker(ordinal, now, result)
            except (OSError, TransitionError) as e:
                logger.error(f"worker{ordinal} の突き合わせに失敗しました: {e}")
        return result

    def _reconcile_worker(self, ordinal: int, now: datetime, result: PollResult) -> None:
        assignment = self._inflight[ordinal]
        task = self._queue.read_task(ordinal)
        if task.task_id != assignment.task_id:
            logger.warning(
                f"worker{ordinal} のタスクレコードが外部で変更されました。"
                f"{assignment.unit.unit_id} を再投入します"
            )
            del self._inflight[ordinal]
            self.enqueue(assignment.unit)
            return

        try:
            report = check_report(ordinal, task, self._queue.read_report(ordinal))
        except StaleReport as e:
            logger.debug(str(e))
            report = None

        if report is None or report.is_idle:
            if now - assignment.assigned_at > timedelta(
                seconds=self.config.assignment_timeout_seconds
            ):
                result.outcomes.append(
                    self._fail(assignment, now, reason="assignment timed out (not picked up)")
                )
            return

        if report.status == ReportStatus.IN_PROGRESS:
            if assignment.started_at is None:
                assignment.started_at = now
                if task.status == TaskStatus.ASSIGNED:
                    self._queue.mark_in_progress(ordinal, task)
                result.started.append(ordinal)
                logger.info(f"worker{ordinal} が {assignment.task_id} に着手しました")
            if now - assignment.started_at > timedelta(seconds=self.config.max_runtime_seconds):
                result.outcomes.append(
                    self._fail(
                        assignment, now, reason="max runtime exceeded", output=report.result
                    )
                )
            return

        if report.status == ReportStatus.DONE:
            result.outcomes.append(self._succeed(assignment, now, report))
        elif report.status == ReportStatus.FAILED:
            result.outcomes.append(
                self._fail(
                    assignment,
                    now,
                    reason=report.result or "worker reported failure",
                    output=report.result,
                )
            )

    def _release(self, assignment: Assignment) -> None:
        self._queue.reset_worker(assignment.ordinal)
        del self._inflight[assignment.ordinal]

    def _record(self, outcome: TaskOutcome) -> TaskOutcome:
        self.outcomes.append(outcome)
        if self._on_outcome:
            self._on_outcome(outcome)
        return outcome

    def _succeed(self, assignment: Assignment, now: datetime, report: ReportRecord) -> TaskOutcome:
        self._release(assignment)
        self._retry.reset_unit(assignment.unit.unit_id)
        logger.info(f"worker{assignment.ordinal} が {assignment.task_id} を完了しました")
        return self._record(
            TaskOutcome(
                unit=assignment.unit,
                ordinal=assignment.ordinal,
                task_id=assignment.task_id,
                status=OutcomeStatus.DONE,
                result=report.result,
                finished_at=now,
            )
        )

    def _fail(
        self, assignment: Assignment, now: datetime, *, reason: str, output: str = ""
    ) -> TaskOutcome:
        unit = assignment.unit
        # 失敗はワーカーを解放できてから数える
        self._release(assignment)
        state = self._retry.record_failure(unit.unit_id, assignment.ordinal, reason)
        unit.attempts = state.attempt

        will_retry = self._retry.should_retry(unit.unit_id)
        if will_retry:
            delay = self._retry.get_retry_delay(unit.unit_id)
            unit.not_before = now + timedelta(seconds=delay)
            self.enqueue(unit)
            logger.warning(
                f"worker{assignment.ordinal} で {unit.unit_id} が失敗しました"
                f"（{delay:.1f}秒後にリトライ）: {reason}"
            )
        else:
            error = RetryLimitExceeded(unit, unit.attempts, reason)
            self.exhausted.append(error)
            if unit.parent_cmd:
                self.failed_parents[unit.parent_cmd] = reason
            logger.error(f"リトライ上限に達しました: {error}")
            if self._on_exhausted:
                self._on_exhausted(error)

        return self._record(
            TaskOutcome(
                unit=unit,
                ordinal=assignment.ordinal,
                task_id=assignment.task_id,
                status=OutcomeStatus.FAILED,
                result=output,
                reason=reason,
                will_retry=will_retry,
                finished_at=now,
            )
        )

    # -------------------------------------------------------------------------
    # 再起動時の復元
    # -------------------------------------------------------------------------

    def adopt_inflight(self) -> list[Assignment]:
        """タスクレコードから割当中の作業を復元する

        Dispatcherの再起動後、実行中の作業を失わずに突き合わせを続けるために使う。
        """
        adopted: list[Assignment] = []
        now = self._clock()
        for snapshot in self._store.snapshot(self.plan):
            task = snapshot.task
            ordinal = snapshot.identity.ordinal
            if task.is_idle or not task.task_id or ordinal in self._inflight:
                continue
            unit = WorkUnit(
                description=task.description,
                parent_cmd=task.parent_cmd,
                target_path=task.target_path,
                unit_id=f"unit-{task.task_id}",
                submitted_seq=next(self._seq),
            )
            stamp = parse_timestamp(task.timestamp) or now
            assignment = Assignment(
                ordinal=ordinal,
                unit=unit,
                task_id=task.task_id,
                assigned_at=stamp,
                started_at=stamp if task.status == TaskStatus.IN_PROGRESS else None,
            )
            self._inflight[ordinal] = assignment
            adopted.append(assignment)
        if adopted:
            logger.info(f"割当中の作業を復元しました: {[a.ordinal for a in adopted]}")
        return adopted

    # -------------------------------------------------------------------------
    # ポーリングループ
    # -------------------------------------------------------------------------

    def poll_once(self) -> PollResult:
        """突き合わせ → 割当 を1回実行"""
        result = self.reconcile()
        result.assignments.extend(self.dispatch_pending())
        return result

    def next_interval(self, current: float, active: bool) -> float:
        """次のポーリング間隔（アイドル時は倍率で延ばし、活動があれば戻す）"""
        if active:
            return self.config.poll_interval_seconds
        return min(current * self.config.backoff_multiplier, self.config.max_poll_interval_seconds)

    def run(
        self,
        *,
        inbox: CommandInbox | None = None,
        max_cycles: int | None = None,
        stop: Callable[[Dispatcher], bool] | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> list[TaskOutcome]:
        """ポーリングループを実行

        実行中はプールロックを保持し、プール初期化・リサイズと重ならないようにする。

        Args:
            inbox: 毎サイクル取り込む受信箱
            max_cycles: 最大サイクル数（Noneなら stop が真になるまで）
            stop: 各サイクル後に評価する停止条件
            sleep: 待機関数

        Returns:
            このループ中に確定した作業結果
        """
        start = len(self.outcomes)
        interval = self.config.poll_interval_seconds
        cycles = 0
        with self._store.pool_lock():
            self.adopt_inflight()
            while True:
                if inbox is not None:
                    self.ingest(inbox)
                result = self.poll_once()
                cycles += 1
                if stop is not None and stop(self):
                    break
                if max_cycles is not None and cycles >= max_cycles:
                    break
                interval = self.next_interval(interval, result.has_activity)
                sleep(interval)
        return self.outcomes[start:]

    def is_drained(self) -> bool:
        """保留も割当中もない"""
        return not self._pending and not self._inflight
