"""作業単位の再試行

失敗した作業単位を何回まで、どれだけ待って、どのワーカーで
やり直すかを決める。
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum

from ..core.config import DispatchConfig


class RetryStrategy(str, Enum):
    """再試行時のワーカーの選び方"""

    NONE = "none"  # 再試行しない
    SAME_WORKER = "same_worker"  # 直前に失敗したワーカーが空いていれば優先
    DIFFERENT_WORKER = "different_worker"  # 失敗したワーカーを避ける
    ANY_WORKER = "any_worker"  # 序数順


@dataclass
class RetryPolicy:
    """再試行の方針

    max_retries は最初の失敗の後に許す再試行の回数。
    """

    max_retries: int = 3
    strategy: RetryStrategy = RetryStrategy.DIFFERENT_WORKER
    backoff_seconds: float = 1.0
    backoff_multiplier: float = 2.0

    @classmethod
    def from_config(cls, config: DispatchConfig) -> RetryPolicy:
        return cls(
            max_retries=config.max_retries,
            strategy=RetryStrategy(config.retry_strategy),
            backoff_seconds=config.retry_backoff_seconds,
            backoff_multiplier=config.retry_backoff_multiplier,
        )

    def delay_after(self, failures: int) -> float:
        """failures 回目の失敗から再割当までの秒数"""
        return self.backoff_seconds * self.backoff_multiplier ** max(failures - 1, 0)


@dataclass
class UnitRetryState:
    """作業単位ごとの失敗履歴"""

    unit_id: str
    attempt: int = 0
    failed_workers: list[int] = field(default_factory=list)
    last_error: str | None = None

    @property
    def last_worker(self) -> int | None:
        return self.failed_workers[-1] if self.failed_workers else None


@dataclass
class RetryManager:
    """作業単位の失敗履歴から再試行を判断する

    成功した作業単位の履歴は reset_unit で破棄する。
    """

    policy: RetryPolicy = field(default_factory=RetryPolicy)
    _states: dict[str, UnitRetryState] = field(default_factory=dict)

    def record_failure(self, unit_id: str, worker: int, error: str) -> UnitRetryState:
        """ワーカー worker での失敗を履歴に追加"""
        state = self._states.setdefault(unit_id, UnitRetryState(unit_id=unit_id))
        state.attempt += 1
        state.failed_workers.append(worker)
        state.last_error = error
        return state

    def should_retry(self, unit_id: str) -> bool:
        if self.policy.strategy == RetryStrategy.NONE:
            return False
        return self.get_attempt_count(unit_id) <= self.policy.max_retries

    def get_retry_delay(self, unit_id: str) -> float:
        return self.policy.delay_after(self.get_attempt_count(unit_id))

    def get_excluded_workers(self, unit_id: str) -> list[int]:
        """再割当で避けるワーカー（different_worker のときのみ）"""
        state = self._states.get(unit_id)
        if state is None or self.policy.strategy != RetryStrategy.DIFFERENT_WORKER:
            return []
        return list(state.failed_workers)

    def get_preferred_worker(self, unit_id: str) -> int | None:
        """再割当で優先するワーカー（same_worker のときのみ）"""
        state = self._states.get(unit_id)
        if state is None or self.policy.strategy != RetryStrategy.SAME_WORKER:
            return None
        return state.last_worker

    def rank_workers(self, unit_id: str, idle: Iterable[int], pool: Iterable[int]) -> list[int]:
        """空きワーカーを割当の優先順に並べる

        除外対象は含めない。ただしプールの全員が除外対象なら除外しない
        （1人だけのプールでも再試行できるように）。

        Args:
            unit_id: 作業単位ID
            idle: 空いているワーカーの序数
            pool: プール計画の全序数
        """
        candidates = sorted(idle)
        excluded = set(self.get_excluded_workers(unit_id))
        if excluded and not excluded.issuperset(pool):
            candidates = [n for n in candidates if n not in excluded]

        preferred = self.get_preferred_worker(unit_id)
        if preferred in candidates:
            candidates.remove(preferred)
            candidates.insert(0, preferred)
        return candidates

    def get_retry_state(self, unit_id: str) -> UnitRetryState | None:
        return self._states.get(unit_id)

    def get_attempt_count(self, unit_id: str) -> int:
        """これまでの失敗回数"""
        state = self._states.get(unit_id)
        return state.attempt if state else 0

    def reset_unit(self, unit_id: str) -> None:
        self._states.pop(unit_id, None)
