"""Agent Shogun テスト設定"""

import os
from datetime import UTC, datetime, timedelta

import pytest

from agent_shogun.core.config import DispatchConfig
from agent_shogun.core.pool import PoolPlan, resolve
from agent_shogun.core.queue import CommandInbox, QueueStore


@pytest.fixture(autouse=True)
def isolated_env(tmp_path, monkeypatch):
    """環境変数・ホームディレクトリの設定ファイルを読まないようにする"""
    for key in list(os.environ):
        if key.startswith("SHOGUN_"):
            monkeypatch.delenv(key)
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))


class FakeClock:
    """テスト用の手動で進める時計"""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 1, 1, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def queue_root(tmp_path):
    """テスト用キューディレクトリ"""
    return tmp_path / "queue"


@pytest.fixture
def store(queue_root):
    return QueueStore(queue_root, lock_timeout=1.0)


@pytest.fixture
def inbox(queue_root):
    return CommandInbox(queue_root, lock_timeout=1.0)


@pytest.fixture
def make_plan():
    """指定人数のプール計画を作る関数"""

    def _make(count: int = 3) -> PoolPlan:
        return resolve({"workers": {"count": count}})

    return _make


@pytest.fixture
def plan(make_plan):
    return make_plan(3)


@pytest.fixture
def dispatch_config():
    """リトライ待機なしの設定"""
    return DispatchConfig(
        poll_interval_seconds=1.0,
        max_poll_interval_seconds=8.0,
        backoff_multiplier=2.0,
        assignment_timeout_seconds=60,
        max_runtime_seconds=600,
        max_retries=2,
        retry_backoff_seconds=0,
    )
