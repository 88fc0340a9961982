"""Agent Shogun CLI

コマンドラインインターフェース。
"""

import argparse
import json
import logging
import sys
from pathlib import Path

import portalocker

from .core import ConfigError, PoolPlan, QueueStore, ShogunSettings, resolve
from .core.config import provider_label
from .core.queue import CommandInbox, CorruptRecordError, QueueAccessError
from .core.state import TransitionError

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

REPORT_STATUSES = ["in_progress", "done", "failed", "idle"]


def main():
    """メインエントリーポイント"""
    parser = argparse.ArgumentParser(
        description="Agent Shogun - マルチエージェント協調ツール",
        prog="shogun",
    )
    parser.add_argument("--config", help="設定ファイル（省略時は既定パスを探索）")
    parser.add_argument("--root", help="キューディレクトリの基準パス（既定: カレント）")

    subparsers = parser.add_subparsers(dest="command", help="利用可能なコマンド")

    # init コマンド
    subparsers.add_parser("init", help="キューレコードを初期化")

    # status コマンド
    subparsers.add_parser("status", help="ワーカーの状態を表示")

    # resolve コマンド（dry-run）
    resolve_parser = subparsers.add_parser("resolve", help="プール計画を表示（何も変更しない）")
    resolve_parser.add_argument("--json", action="store_true", help="JSONで出力")

    # start / teardown コマンド
    subparsers.add_parser("start", help="tmux セッションを起動")
    subparsers.add_parser("teardown", help="tmux セッションを終了")

    # submit コマンド
    submit_parser = subparsers.add_parser("submit", help="manager への指示を受信箱に追加")
    submit_parser.add_argument("description", help="指示内容")
    submit_parser.add_argument("--parent-cmd", help="親コマンドID")
    submit_parser.add_argument("--target-path", help="対象パス")

    # dispatch コマンド
    dispatch_parser = subparsers.add_parser("dispatch", help="ディスパッチループを実行")
    dispatch_parser.add_argument("--once", action="store_true", help="1サイクルだけ実行")
    dispatch_parser.add_argument("--max-cycles", type=int, help="最大サイクル数")

    # report コマンド（ワーカー側）
    report_parser = subparsers.add_parser("report", help="ワーカーとしてレポートを書く")
    report_parser.add_argument("--worker", type=int, required=True, help="ワーカー序数")
    report_parser.add_argument("--status", required=True, choices=REPORT_STATUSES, help="状態")
    report_parser.add_argument("--result", default="", help="結果の要約")

    # reset コマンド
    reset_parser = subparsers.add_parser("reset", help="ワーカーのレコードをidleに戻す")
    reset_parser.add_argument("--worker", type=int, required=True, help="ワーカー序数")

    # prune コマンド
    subparsers.add_parser("prune", help="計画外の序数のレコードを削除")

    args = parser.parse_args()

    handlers = {
        "init": run_init,
        "status": run_status,
        "resolve": run_resolve,
        "start": run_start,
        "teardown": run_teardown,
        "submit": run_submit,
        "dispatch": run_dispatch,
        "report": run_report,
        "reset": run_reset,
        "prune": run_prune,
    }
    handler = handlers.get(args.command)
    if handler is None:
        parser.print_help()
        sys.exit(1)

    try:
        settings = ShogunSettings.from_yaml(args.config)
    except ConfigError as e:
        print(f"設定エラー: {e}", file=sys.stderr)
        sys.exit(2)

    setup_logging(settings)
    handler(args, settings)


def setup_logging(settings: ShogunSettings) -> None:
    """ルートロガーを設定"""
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if settings.logging.path:
        log_dir = Path(settings.logging.path).expanduser()
        log_dir.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_dir / "shogun.log", encoding="utf-8"))
    logging.basicConfig(level=settings.logging.level, format=LOG_FORMAT, handlers=handlers)


def _store(args, settings: ShogunSettings) -> QueueStore:
    return QueueStore(
        settings.get_queue_path(args.root), lock_timeout=settings.queue.lock_timeout_seconds
    )


def _inbox(args, settings: ShogunSettings) -> CommandInbox:
    return CommandInbox(
        settings.get_queue_path(args.root), lock_timeout=settings.queue.lock_timeout_seconds
    )


def _fail(message: str, code: int = 1):
    print(f"✗ {message}", file=sys.stderr)
    sys.exit(code)


def run_init(args, settings: ShogunSettings):
    """キューレコードを初期化"""
    plan = resolve(settings)
    store = _store(args, settings)
    try:
        with store.pool_lock():
            created = store.initialize(plan)
    except portalocker.exceptions.LockException:
        _fail("ディスパッチャが実行中のため初期化できません")

    print(f"✓ キューディレクトリ: {store.root}")
    print(f"✓ ワーカー数: {plan.size}")
    if created:
        print(f"✓ 作成したレコード: {', '.join(f'worker{n}' for n in created)}")
    extra = [n for n in store.existing_ordinals() if plan.get(n) is None]
    if extra:
        print(f"⚠ 計画外のレコードが残っています: {extra}（shogun prune で削除）")


def run_status(args, settings: ShogunSettings):
    """ワーカーの状態を表示"""
    plan = resolve(settings)
    store = _store(args, settings)

    print(f"\n=== Pool: {store.root} ===")
    for snapshot in store.snapshot(plan):
        identity = snapshot.identity
        task = snapshot.task
        report = snapshot.report
        line = f"  {identity.name:<9} [{identity.provider}] task={task.status.value}"
        if task.task_id:
            line += f" ({task.task_id})"
        line += f" report={report.status.value}"
        if report.task_id and report.task_id != task.task_id:
            line += f" (stale: {report.task_id})"
        print(line)

    try:
        waiting = len(_inbox(args, settings).peek())
    except CorruptRecordError as e:
        print(f"\n⚠ 受信箱が壊れています: {e}")
        return
    print(f"\n受信箱の指示: {waiting}件")


def _print_plan(plan: PoolPlan) -> None:
    for binding in (plan.commander, plan.manager):
        print(f"{binding.role:<9} {provider_label(binding.provider)}: {binding.command}")
    for worker in plan.workers:
        print(f"{worker.name:<9} {provider_label(worker.provider)}: {worker.command}")
    for warning in plan.warnings:
        print(f"⚠ {warning}")


def run_resolve(args, settings: ShogunSettings):
    """プール計画を表示"""
    plan = resolve(settings)
    if args.json:
        print(json.dumps(plan.to_dict(), ensure_ascii=False, indent=2))
    else:
        _print_plan(plan)


def run_start(args, settings: ShogunSettings):
    """tmux セッションを起動"""
    from .session import TmuxSessionSupervisor

    plan = resolve(settings)
    store = _store(args, settings)
    try:
        with store.pool_lock():
            store.initialize(plan)
    except portalocker.exceptions.LockException:
        _fail("ディスパッチャが実行中のため起動できません")

    supervisor = TmuxSessionSupervisor.from_settings(settings)
    targets = supervisor.start(plan)
    print(f"✓ {len(targets)} 人のワーカーを起動しました")
    print(f"  tmux attach -t {supervisor.pool_session}")


def run_teardown(args, settings: ShogunSettings):
    """tmux セッションを終了"""
    from .session import TmuxSessionSupervisor

    TmuxSessionSupervisor.from_settings(settings).teardown()
    print("✓ セッションを終了しました")


def run_submit(args, settings: ShogunSettings):
    """受信箱に指示を追加"""
    try:
        entry = _inbox(args, settings).submit(
            args.description, parent_cmd=args.parent_cmd, target_path=args.target_path
        )
    except CorruptRecordError as e:
        _fail(f"受信箱が壊れています: {e}")
    print(entry.cmd_id)


def run_dispatch(args, settings: ShogunSettings):
    """ディスパッチループを実行"""
    from .dispatcher import Dispatcher

    plan = resolve(settings)
    store = _store(args, settings)
    dispatcher = Dispatcher(plan, store, settings.dispatch)
    max_cycles = 1 if args.once else args.max_cycles

    try:
        outcomes = dispatcher.run(inbox=_inbox(args, settings), max_cycles=max_cycles)
    except portalocker.exceptions.LockException:
        _fail("別のディスパッチャまたは管理操作がプールを使用中です")
    except KeyboardInterrupt:
        outcomes = dispatcher.outcomes
        print("\n中断しました")

    for outcome in outcomes:
        mark = "✓" if outcome.status.value == "done" else "✗"
        print(f"{mark} worker{outcome.ordinal} {outcome.unit.unit_id}: {outcome.status.value}")
    if dispatcher.pending or dispatcher.inflight:
        print(f"保留中: {len(dispatcher.pending)} / 実行中: {len(dispatcher.inflight)}")
    if dispatcher.failed_parents:
        print(f"⚠ 失敗した指示: {', '.join(sorted(dispatcher.failed_parents))}")


def run_report(args, settings: ShogunSettings):
    """ワーカーとしてレポートを書く"""
    plan = resolve(settings)
    if plan.get(args.worker) is None:
        _fail(f"worker{args.worker} は現在のプール計画に含まれていません")

    worker = _store(args, settings).as_worker(args.worker)
    try:
        if args.status == "in_progress":
            record = worker.accept()
        elif args.status == "done":
            record = worker.complete(args.result)
        elif args.status == "failed":
            record = worker.fail(args.result)
        else:
            record = worker.release()
    except (QueueAccessError, TransitionError) as e:
        _fail(str(e))

    if record is None:
        print(f"worker{args.worker}: 変更なし")
    else:
        print(f"✓ worker{args.worker}: {record.status.value} ({record.task_id or '-'})")


def run_reset(args, settings: ShogunSettings):
    """ワーカーのレコードをidleに戻す"""
    store = _store(args, settings)
    store.as_dispatcher().reset_worker(args.worker)
    print(f"✓ worker{args.worker} をidleに戻しました")


def run_prune(args, settings: ShogunSettings):
    """計画外の序数のレコードを削除"""
    from .dispatcher import busy_workers

    plan = resolve(settings)
    store = _store(args, settings)
    try:
        with store.pool_lock():
            busy = busy_workers(store, plan)
            if busy:
                _fail(f"割当中のワーカーがいるため削除できません: {busy}")
            removed = store.prune(plan)
    except portalocker.exceptions.LockException:
        _fail("ディスパッチャが実行中のため削除できません")

    if removed:
        print(f"✓ 削除したレコード: {', '.join(f'worker{n}' for n in removed)}")
    else:
        print("削除するレコードはありません")
