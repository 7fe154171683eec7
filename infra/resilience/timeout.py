"""
超时控制模块

为握手、引擎调用、回复窗口等操作提供统一的超时包装。
"""

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from logger import get_logger

logger = get_logger("resilience.timeout")

T = TypeVar("T")


@dataclass
class TimeoutConfig:
    """默认超时配置（秒），各通道可在配置中覆盖"""
    handshake_timeout: float = 10.0     # 流式连接握手
    heartbeat_interval: float = 20.0    # 心跳间隔
    heartbeat_timeout: float = 10.0     # 心跳应答超时（触发重连）
    stream_reply_timeout: float = 60.0  # 流式通道回复窗口
    webhook_reply_timeout: float = 5.0  # 回调通道推送窗口
    engine_timeout: float = 120.0       # AI 引擎调用
    shutdown_grace: float = 5.0         # 关闭时在途请求宽限期


DEFAULT_TIMEOUTS = TimeoutConfig()


async def run_with_timeout(
    awaitable: Awaitable[T],
    timeout: Optional[float],
    *,
    operation: str,
    error_factory: Optional[Callable[[str], Exception]] = None,
) -> T:
    """
    在超时内等待 awaitable 完成

    Args:
        awaitable: 待等待的协程
        timeout: 超时时间（秒），None 表示不限时
        operation: 操作名称（用于日志与错误信息）
        error_factory: 超时时构造异常的工厂，默认抛出内置 TimeoutError

    Usage:
        reply = await run_with_timeout(
            engine.respond(msg), 120, operation="engine", error_factory=EngineTimeout
        )
    """
    if timeout is None:
        return await awaitable

    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except asyncio.TimeoutError:
        message = f"{operation} timed out after {timeout}s"
        logger.warning("Operation timed out", extra={"operation": operation, "timeout_seconds": timeout})
        if error_factory is not None:
            raise error_factory(message) from None
        raise TimeoutError(message) from None
