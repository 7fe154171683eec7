"""
容错与弹性模块

提供统一的超时、重试、指数退避机制
"""

from infra.resilience.retry import (
    ExponentialBackoff,
    RetryConfig,
    get_retry_config,
    set_retry_config,
    with_retry,
)
from infra.resilience.timeout import DEFAULT_TIMEOUTS, TimeoutConfig, run_with_timeout

__all__ = [
    "DEFAULT_TIMEOUTS",
    "ExponentialBackoff",
    "RetryConfig",
    "TimeoutConfig",
    "get_retry_config",
    "run_with_timeout",
    "set_retry_config",
    "with_retry",
]
