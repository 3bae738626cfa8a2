"""
错误处理与重试策略
"""
import random
import logging
from typing import Dict, Any, Optional
from dataclasses import dataclass
from enum import Enum

from ..exceptions import (
    ProcessEngineError, StepConfigError, CollaboratorError,
    StoreUnavailableError, NotFoundError, AlreadyTerminalError
)


logger = logging.getLogger(__name__)


class RetryStrategy(Enum):
    """重试策略"""
    FIXED_DELAY = "fixed"                 # 固定延迟
    EXPONENTIAL_BACKOFF = "exponential"   # 指数退避
    LINEAR_BACKOFF = "linear"             # 线性退避


@dataclass
class RetryPolicy:
    """重试策略"""
    max_attempts: int = 5
    initial_delay: float = 0.5  # 秒
    max_delay: float = 30.0     # 秒
    strategy: RetryStrategy = RetryStrategy.EXPONENTIAL_BACKOFF
    backoff_factor: float = 2.0
    jitter: bool = True         # 添加随机抖动

    def with_overrides(self, config: Optional[Dict[str, Any]]) -> "RetryPolicy":
        """按步骤配置覆盖默认策略"""
        if not config:
            return self
        backoff = config.get("backoff") or {}
        return RetryPolicy(
            max_attempts=int(config.get("max_attempts", self.max_attempts)),
            initial_delay=float(backoff.get("initial", self.initial_delay)),
            max_delay=float(backoff.get("max", self.max_delay)),
            strategy=RetryStrategy(backoff.get("strategy", self.strategy.value)),
            backoff_factor=float(backoff.get("factor", self.backoff_factor)),
            jitter=bool(backoff.get("jitter", self.jitter)),
        )

    def delay_for(self, retry_count: int) -> float:
        """计算第 retry_count 次重试前的等待时间（从0开始）"""
        return calculate_retry_delay(retry_count, self)


def calculate_retry_delay(retry_count: int, policy: RetryPolicy) -> float:
    """计算重试延迟"""
    if policy.strategy == RetryStrategy.FIXED_DELAY:
        delay = policy.initial_delay
    elif policy.strategy == RetryStrategy.LINEAR_BACKOFF:
        delay = policy.initial_delay * (retry_count + 1)
    else:  # exponential
        delay = policy.initial_delay * (policy.backoff_factor ** retry_count)

    # 限制最大延迟
    delay = min(delay, policy.max_delay)

    # 添加抖动
    if policy.jitter and delay > 0:
        delay += random.uniform(0, delay * 0.1)

    return delay


def is_instance_fatal(error: Exception) -> bool:
    """该错误是否只终止当前实例（而非整个引擎）"""
    if isinstance(error, StoreUnavailableError):
        return False
    return isinstance(error, (StepConfigError, CollaboratorError)) or not isinstance(
        error, ProcessEngineError
    )


def is_soft_error(error: Exception) -> bool:
    """调用方可见的软错误（不存在/已终止）"""
    return isinstance(error, (NotFoundError, AlreadyTerminalError))
