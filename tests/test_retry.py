"""リトライマネージャーのテスト"""

from agent_shogun.core.config import DispatchConfig
from agent_shogun.dispatcher.retry import RetryManager, RetryPolicy, RetryStrategy


class TestRetryManager:
    """RetryManagerのテスト"""

    def test_record_failure(self):
        """失敗を記録"""
        # Arrange
        manager = RetryManager()

        # Act
        manager.record_failure("unit-1", 1, "Timeout")

        # Assert
        state = manager.get_retry_state("unit-1")
        assert state is not None
        assert state.attempt == 1
        assert 1 in state.failed_workers
        assert state.last_error == "Timeout"

    def test_should_retry_default(self):
        """デフォルトでリトライ可能"""
        manager = RetryManager()
        assert manager.should_retry("unit-1") is True

    def test_retries_are_counted_after_first_failure(self):
        """max_retries 回まではリトライし、それを超えたら不可"""
        manager = RetryManager(policy=RetryPolicy(max_retries=2))

        manager.record_failure("unit-1", 1, "Error 1")
        assert manager.should_retry("unit-1") is True
        manager.record_failure("unit-1", 2, "Error 2")
        assert manager.should_retry("unit-1") is True
        manager.record_failure("unit-1", 3, "Error 3")
        assert manager.should_retry("unit-1") is False

    def test_zero_retries(self):
        """max_retries=0 なら最初の失敗で打ち切り"""
        manager = RetryManager(policy=RetryPolicy(max_retries=0))
        manager.record_failure("unit-1", 1, "Error")
        assert manager.should_retry("unit-1") is False

    def test_should_retry_none_strategy(self):
        """NONE戦略ではリトライしない"""
        manager = RetryManager(policy=RetryPolicy(strategy=RetryStrategy.NONE))
        assert manager.should_retry("unit-1") is False


class TestRetryDelay:
    """リトライ遅延のテスト"""

    def test_initial_delay(self):
        """初回は基本遅延"""
        manager = RetryManager(policy=RetryPolicy(backoff_seconds=1.0))
        assert manager.get_retry_delay("unit-1") == 1.0

    def test_exponential_backoff(self):
        """指数バックオフ"""
        manager = RetryManager(policy=RetryPolicy(backoff_seconds=1.0, backoff_multiplier=2.0))

        manager.record_failure("unit-1", 1, "Error")
        # 1回目失敗後: 1.0 * 2^0
        assert manager.get_retry_delay("unit-1") == 1.0

        manager.record_failure("unit-1", 2, "Error")
        # 2回目失敗後: 1.0 * 2^1
        assert manager.get_retry_delay("unit-1") == 2.0


class TestExcludedWorkers:
    """除外ワーカー取得のテスト"""

    def test_different_worker_strategy(self):
        """DIFFERENT_WORKER戦略で失敗ワーカーを除外"""
        manager = RetryManager(policy=RetryPolicy(strategy=RetryStrategy.DIFFERENT_WORKER))
        manager.record_failure("unit-1", 3, "Error")

        assert manager.get_excluded_workers("unit-1") == [3]

    def test_same_worker_strategy(self):
        """SAME_WORKER戦略では除外なし"""
        manager = RetryManager(policy=RetryPolicy(strategy=RetryStrategy.SAME_WORKER))
        manager.record_failure("unit-1", 3, "Error")

        assert manager.get_excluded_workers("unit-1") == []

    def test_same_worker_prefers_last_failed_worker(self):
        """SAME_WORKER戦略では直前に失敗したワーカーを先頭にする"""
        # Arrange
        manager = RetryManager(policy=RetryPolicy(strategy=RetryStrategy.SAME_WORKER))
        manager.record_failure("unit-1", 1, "Error")
        manager.record_failure("unit-1", 3, "Error")

        # Act
        ranked = manager.rank_workers("unit-1", [1, 2, 3], pool=[1, 2, 3])

        # Assert
        assert manager.get_preferred_worker("unit-1") == 3
        assert ranked == [3, 1, 2]

    def test_same_worker_falls_back_when_busy(self):
        """優先ワーカーが空いていなければ序数順"""
        manager = RetryManager(policy=RetryPolicy(strategy=RetryStrategy.SAME_WORKER))
        manager.record_failure("unit-1", 1, "Error")

        assert manager.rank_workers("unit-1", [3, 2], pool=[1, 2, 3]) == [2, 3]

    def test_any_worker_keeps_ordinal_order(self):
        """ANY_WORKER戦略では除外も優先もしない"""
        manager = RetryManager(policy=RetryPolicy(strategy=RetryStrategy.ANY_WORKER))
        manager.record_failure("unit-1", 2, "Error")

        assert manager.get_preferred_worker("unit-1") is None
        assert manager.rank_workers("unit-1", [2, 1], pool=[1, 2]) == [1, 2]

    def test_different_worker_skips_failed_workers(self):
        manager = RetryManager(policy=RetryPolicy(strategy=RetryStrategy.DIFFERENT_WORKER))
        manager.record_failure("unit-1", 1, "Error")

        assert manager.rank_workers("unit-1", [1, 2], pool=[1, 2, 3]) == [2]

    def test_exclusion_ignored_when_whole_pool_failed(self):
        """プール全員が失敗済みなら除外しない"""
        manager = RetryManager(policy=RetryPolicy(strategy=RetryStrategy.DIFFERENT_WORKER))
        manager.record_failure("unit-1", 1, "Error")
        manager.record_failure("unit-1", 2, "Error")

        assert manager.rank_workers("unit-1", [2, 1], pool=[1, 2]) == [1, 2]


class TestRetryStateManagement:
    """リトライ状態管理のテスト"""

    def test_reset_unit(self):
        """作業単位の状態をリセット"""
        manager = RetryManager()
        manager.record_failure("unit-1", 1, "Error")

        manager.reset_unit("unit-1")

        assert manager.get_retry_state("unit-1") is None
        assert manager.get_attempt_count("unit-1") == 0

    def test_policy_from_config(self):
        """ディスパッチ設定からポリシーを作る"""
        config = DispatchConfig(
            max_retries=5, retry_strategy="any_worker", retry_backoff_seconds=0.5
        )

        policy = RetryPolicy.from_config(config)

        assert policy.max_retries == 5
        assert policy.strategy == RetryStrategy.ANY_WORKER
        assert policy.backoff_seconds == 0.5
