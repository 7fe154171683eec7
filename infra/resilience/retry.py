"""
重试与退避模块

- ExponentialBackoff: 有状态的指数退避序列（连接器重连使用）
- with_retry: 带指数退避的异步重试装饰器（短暂网络错误使用）
"""

import asyncio
import functools
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Set, Tuple, Type, TypeVar

import httpx

from logger import get_logger

logger = get_logger("resilience.retry")

T = TypeVar("T")


@dataclass
class RetryConfig:
    """重试配置"""
    max_retries: int = 2                    # 最大重试次数
    base_delay: float = 0.5                 # 基础延迟（秒）
    max_delay: float = 10.0                 # 最大延迟（秒）
    exponential_base: float = 2.0           # 指数退避基数
    retryable_errors: Tuple[Type[Exception], ...] = (
        ConnectionError,
        TimeoutError,
        asyncio.TimeoutError,
        httpx.TransportError,
    )
    # 429 / 502 / 503 / 504
    retryable_status_codes: Set[int] = field(default_factory=lambda: {429, 502, 503, 504})


# 全局重试配置实例
_retry_config = RetryConfig()


def get_retry_config() -> RetryConfig:
    """获取全局重试配置"""
    return _retry_config


def set_retry_config(config: RetryConfig) -> None:
    """设置全局重试配置"""
    global _retry_config
    _retry_config = config
    logger.info(
        "Retry config updated",
        extra={"max_retries": config.max_retries, "base_delay": config.base_delay},
    )


def _calculate_delay(attempt: int, base_delay: float, exponential_base: float, max_delay: float) -> float:
    """
    计算指数退避延迟

    Args:
        attempt: 当前重试次数（从 0 开始）
        base_delay: 基础延迟
        exponential_base: 指数基数
        max_delay: 最大延迟

    Returns:
        延迟时间（秒）
    """
    delay = base_delay * (exponential_base ** attempt)
    return min(delay, max_delay)


class ExponentialBackoff:
    """
    有上限的指数退避序列

    next_delay() 依次返回 initial, initial*factor, ... 直到 maximum 后保持不变；
    reset() 回到初始值（连接成功后调用）。

    Usage:
        backoff = ExponentialBackoff(initial=1.0, maximum=60.0)
        backoff.next_delay()  # 1.0
        backoff.next_delay()  # 2.0
        backoff.reset()
    """

    def __init__(self, initial: float = 1.0, maximum: float = 60.0, factor: float = 2.0) -> None:
        if initial <= 0:
            raise ValueError("initial backoff must be positive")
        if maximum < initial:
            raise ValueError("maximum backoff must be >= initial backoff")
        if factor < 1:
            raise ValueError("backoff factor must be >= 1")
        self.initial = initial
        self.maximum = maximum
        self.factor = factor
        self._attempt = 0

    @property
    def attempts(self) -> int:
        """自上次 reset 以来已经发放的延迟次数"""
        return self._attempt

    def peek(self) -> float:
        """下一次将返回的延迟（不推进序列）"""
        return _calculate_delay(self._attempt, self.initial, self.factor, self.maximum)

    def next_delay(self) -> float:
        delay = self.peek()
        # 到达上限后不再增长，避免指数溢出
        if delay < self.maximum:
            self._attempt += 1
        return delay

    def reset(self) -> None:
        self._attempt = 0


def _is_retryable_error(
    error: Exception,
    retryable_errors: Tuple[Type[Exception], ...],
    retryable_status_codes: Optional[Set[int]] = None,
) -> bool:
    """
    判断错误是否可重试

    Args:
        error: 异常对象
        retryable_errors: 可重试的异常类型元组
        retryable_status_codes: 可重试的 HTTP 状态码集合
    """
    if isinstance(error, retryable_errors):
        return True

    if retryable_status_codes and isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code in retryable_status_codes

    return False


def with_retry(
    max_retries: Optional[int] = None,
    base_delay: Optional[float] = None,
    retryable_errors: Optional[Tuple[Type[Exception], ...]] = None,
):
    """
    重试装饰器

    Args:
        max_retries: 最大重试次数
        base_delay: 基础延迟（秒）
        retryable_errors: 可重试的异常类型

    使用示例:
        @with_retry(max_retries=2, base_delay=0.5)
        async def fetch_token():
            ...
    """
    def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            config = get_retry_config()

            actual_max_retries = max_retries if max_retries is not None else config.max_retries
            actual_base_delay = base_delay if base_delay is not None else config.base_delay
            actual_retryable_errors = retryable_errors if retryable_errors is not None else config.retryable_errors

            for attempt in range(actual_max_retries + 1):
                try:
                    result = await func(*args, **kwargs)
                    if attempt > 0:
                        logger.info(
                            "Retry succeeded",
                            extra={"func": func.__name__, "attempt": attempt + 1},
                        )
                    return result

                except Exception as e:
                    if not _is_retryable_error(e, actual_retryable_errors, config.retryable_status_codes):
                        raise

                    if attempt >= actual_max_retries:
                        logger.error(
                            "Retries exhausted",
                            extra={
                                "func": func.__name__,
                                "max_retries": actual_max_retries,
                                "error": str(e),
                            },
                        )
                        raise

                    delay = _calculate_delay(
                        attempt,
                        actual_base_delay,
                        config.exponential_base,
                        config.max_delay,
                    )
                    logger.warning(
                        "Call failed, retrying",
                        extra={
                            "func": func.__name__,
                            "delay_seconds": round(delay, 2),
                            "attempt": attempt + 1,
                            "error": str(e),
                        },
                    )
                    await asyncio.sleep(delay)

        return wrapper
    return decorator
