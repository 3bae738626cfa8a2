"""
错误处理与重试策略测试
"""
import pytest

from process_engine.core.error_handler import (
    RetryPolicy, RetryStrategy, calculate_retry_delay, is_instance_fatal, is_soft_error
)
from process_engine.exceptions import (
    StepConfigError, CollaboratorError, ConcurrencyConflictError, NotFoundError,
    AlreadyTerminalError, StoreUnavailableError, DefinitionInvalidError
)


class TestRetryPolicy:
    """重试策略测试类"""

    @pytest.mark.parametrize("strategy, expected", [
        (RetryStrategy.FIXED_DELAY, [1.0, 1.0, 1.0, 1.0]),
        (RetryStrategy.LINEAR_BACKOFF, [1.0, 2.0, 3.0, 4.0]),
        (RetryStrategy.EXPONENTIAL_BACKOFF, [1.0, 2.0, 4.0, 5.0]),
    ])
    def test_delays(self, strategy, expected):
        """测试各策略的延迟，不超过上限"""
        policy = RetryPolicy(initial_delay=1.0, max_delay=5.0, strategy=strategy, jitter=False)

        assert [policy.delay_for(n) for n in range(4)] == expected

    def test_jitter_stays_within_ten_percent(self):
        """测试抖动范围"""
        policy = RetryPolicy(initial_delay=2.0, jitter=True)

        for _ in range(20):
            assert 2.0 <= calculate_retry_delay(0, policy) <= 2.2

    def test_zero_delay(self):
        """测试零延迟不加抖动"""
        assert RetryPolicy(initial_delay=0, max_delay=0).delay_for(3) == 0

    def test_step_overrides(self):
        """测试步骤配置覆盖默认策略"""
        default = RetryPolicy()

        policy = default.with_overrides({
            "max_attempts": 2,
            "backoff": {"initial": 0.1, "strategy": "linear", "jitter": False}
        })

        assert policy.max_attempts == 2
        assert policy.initial_delay == 0.1
        assert policy.strategy == RetryStrategy.LINEAR_BACKOFF
        assert policy.max_delay == default.max_delay
        assert default.with_overrides(None) is default


class TestErrorClassification:
    """错误分类测试类"""

    @pytest.mark.parametrize("error", [
        StepConfigError("gate", "no edge matched"),
        CollaboratorError("call", "timeout", attempts=5),
        KeyError("amount"),
    ])
    def test_instance_fatal(self, error):
        """测试只导致实例失败的错误"""
        assert is_instance_fatal(error) is True

    @pytest.mark.parametrize("error", [
        StoreUnavailableError("database is down"),
        ConcurrencyConflictError("i-1", 3),
        NotFoundError("missing"),
    ])
    def test_not_instance_fatal(self, error):
        """测试向调用方传播的错误"""
        assert is_instance_fatal(error) is False

    def test_soft_errors(self):
        """测试软错误"""
        assert is_soft_error(NotFoundError("missing"))
        assert is_soft_error(AlreadyTerminalError("done"))
        assert not is_soft_error(DefinitionInvalidError(["bad"]))

    def test_error_messages(self):
        """测试异常信息"""
        assert str(StepConfigError("gate", "boom")) == "Step 'gate': boom"
        assert "after 5 attempt(s)" in str(CollaboratorError("call", "timeout", attempts=5))
        assert DefinitionInvalidError(["a", "b"]).errors == ["a", "b"]
