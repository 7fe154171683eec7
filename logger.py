"""
日志管理模块

为网关提供统一的日志接口，支持消息上下文追踪。

快速开始:
=========

```python
from logger import get_logger, set_message_context, clear_message_context

logger = get_logger("gateway.dispatcher")

# 在处理一条入站消息前设置上下文（通道 / 发送者 / 关联 ID）
set_message_context(channel_id="dingtalk", sender_id="u1", correlation_id="m1")

logger.info("Inbound message accepted", extra={"text_length": 12})
logger.error("Delivery failed", exc_info=True)

clear_message_context()
```

日志输出:
========
- 控制台：彩色易读格式
- 文件：JSON 格式（app.log / error.log，按大小滚动）

环境变量:
========
- GATEWAY_LOG_LEVEL: 日志级别（默认 INFO）
- GATEWAY_LOG_DIR:   日志目录（默认系统临时目录下的 channel-gateway/logs）
- GATEWAY_LOG_FILE:  设为 0 / false 时关闭文件日志
"""
import json
import logging
import os
import sys
import tempfile
import time
import traceback
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

ROOT_LOGGER_NAME = "channel_gateway"

# ============================================================
# 配置
# ============================================================


def _get_log_dir() -> Path:
    """获取日志目录（GATEWAY_LOG_DIR 优先）"""
    configured = os.environ.get("GATEWAY_LOG_DIR")
    if configured:
        return Path(configured).expanduser()
    return Path(tempfile.gettempdir()) / "channel-gateway" / "logs"


_log_dir = _get_log_dir()


LOG_CONFIG = {
    "level": os.environ.get("GATEWAY_LOG_LEVEL", "INFO").upper(),
    "console_enabled": True,
    "file_enabled": os.environ.get("GATEWAY_LOG_FILE", "1").lower() not in ("0", "false", "no"),
    "file": str(_log_dir / "app.log"),
    "error_file": str(_log_dir / "error.log"),
    "max_size": 20 * 1024 * 1024,  # 20MB
    "backup_count": 5,
}

# ============================================================
# 上下文变量（用于追踪单条消息）
# ============================================================
_channel_id: ContextVar[str] = ContextVar("channel_id", default="")
_sender_id: ContextVar[str] = ContextVar("sender_id", default="")
_correlation_id: ContextVar[str] = ContextVar("correlation_id", default="")


def set_message_context(
    channel_id: str = "",
    sender_id: str = "",
    correlation_id: str = "",
) -> None:
    """
    设置消息上下文（在处理入站消息的入口处调用）

    Args:
        channel_id: 通道 ID
        sender_id: 平台发送者 ID
        correlation_id: 平台消息 ID（用于回复路由）
    """
    if channel_id:
        _channel_id.set(channel_id)
    if sender_id:
        _sender_id.set(sender_id)
    if correlation_id:
        _correlation_id.set(correlation_id)


def clear_message_context() -> None:
    """清除消息上下文"""
    _channel_id.set("")
    _sender_id.set("")
    _correlation_id.set("")


@contextmanager
def log_execution_time(operation: str, logger: Optional[logging.Logger] = None):
    """
    记录操作执行时间

    Usage:
        with log_execution_time("engine call", logger):
            reply = await engine.respond(msg)
    """
    if logger is None:
        logger = logging.getLogger(ROOT_LOGGER_NAME)

    start = time.perf_counter()
    try:
        yield
    finally:
        duration_ms = (time.perf_counter() - start) * 1000
        logger.info(f"{operation} finished", extra={
            "operation": operation,
            "duration_ms": round(duration_ms, 2),
        })


# ============================================================
# 格式化器
# ============================================================

class _ContextFilter(logging.Filter):
    """添加消息上下文到日志记录"""

    def filter(self, record: logging.LogRecord) -> bool:
        record.channel_id = _channel_id.get() or "-"
        record.sender_id = _sender_id.get() or "-"
        record.correlation_id = _correlation_id.get() or "-"
        return True


class _ConsoleFormatter(logging.Formatter):
    """控制台格式化器（彩色易读）"""

    COLORS = {
        "DEBUG": "\033[36m",     # 青色
        "INFO": "\033[32m",      # 绿色
        "WARNING": "\033[33m",   # 黄色
        "ERROR": "\033[31m",     # 红色
        "CRITICAL": "\033[35m",  # 紫色
    }
    RESET = "\033[0m"

    def __init__(self):
        super().__init__(
            fmt="%(asctime)s [%(levelname)s] [%(channel_id)s:%(correlation_id)s] %(name)s: %(message)s",
            datefmt="%H:%M:%S",
        )
        self.use_colors = sys.stdout.isatty()

    def format(self, record: logging.LogRecord) -> str:
        if self.use_colors:
            record = logging.makeLogRecord(record.__dict__)
            color = self.COLORS.get(record.levelname, "")
            record.levelname = f"{color}{record.levelname}{self.RESET}"
        return super().format(record)


class _JsonFormatter(logging.Formatter):
    """
    JSON 格式化器（用于文件输出）

    输出示例:
    {"ts":"2026-01-01T12:00:00.123+00:00","level":"INFO","channel":"wecom","sender":"u1","corr":"m1","logger":"gateway.dispatcher","msg":"Reply delivered"}
    """

    # 排除的内置属性
    _RESERVED = {
        "name", "msg", "args", "created", "levelname", "levelno",
        "pathname", "filename", "module", "exc_info", "exc_text",
        "stack_info", "lineno", "funcName", "msecs", "relativeCreated",
        "thread", "threadName", "processName", "process", "message",
        "taskName", "channel_id", "sender_id", "correlation_id",
    }

    def format(self, record: logging.LogRecord) -> str:
        log = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "channel": getattr(record, "channel_id", "-"),
            "sender": getattr(record, "sender_id", "-"),
            "corr": getattr(record, "correlation_id", "-"),
            "logger": record.name.replace(f"{ROOT_LOGGER_NAME}.", ""),
            "file": f"{record.filename}:{record.lineno}",
            "func": record.funcName or "-",
            "msg": record.getMessage(),
        }

        # 添加异常信息
        if record.exc_info:
            log["error"] = {
                "type": record.exc_info[0].__name__ if record.exc_info[0] else None,
                "msg": str(record.exc_info[1]) if record.exc_info[1] else None,
                "trace": "".join(traceback.format_exception(*record.exc_info)).strip(),
            }

        # 添加 extra 字段
        for key, value in record.__dict__.items():
            if key not in self._RESERVED:
                try:
                    json.dumps(value)
                    log[key] = value
                except (TypeError, ValueError):
                    log[key] = str(value)

        return json.dumps(log, ensure_ascii=False, default=str)


# ============================================================
# Logger 管理
# ============================================================

class _LoggerManager:
    """日志管理器（单例）"""

    _initialized = False
    _loggers: dict[str, logging.Logger] = {}

    @classmethod
    def setup(cls) -> None:
        """初始化日志系统"""
        if cls._initialized:
            return

        file_enabled = LOG_CONFIG["file_enabled"]
        if file_enabled:
            # 只读文件系统时退化为仅控制台输出
            try:
                Path(LOG_CONFIG["file"]).parent.mkdir(parents=True, exist_ok=True)
                Path(LOG_CONFIG["error_file"]).parent.mkdir(parents=True, exist_ok=True)
            except OSError:
                file_enabled = False

        root = logging.getLogger(ROOT_LOGGER_NAME)
        root.setLevel(LOG_CONFIG["level"])
        root.handlers.clear()

        context_filter = _ContextFilter()

        # 控制台处理器
        if LOG_CONFIG["console_enabled"]:
            console = logging.StreamHandler(sys.stdout)
            console.setLevel(LOG_CONFIG["level"])
            console.setFormatter(_ConsoleFormatter())
            console.addFilter(context_filter)
            root.addHandler(console)

        # 主日志文件（JSON 格式）
        if file_enabled:
            from logging.handlers import RotatingFileHandler

            file_handler = RotatingFileHandler(
                LOG_CONFIG["file"],
                maxBytes=LOG_CONFIG["max_size"],
                backupCount=LOG_CONFIG["backup_count"],
                encoding="utf-8",
            )
            file_handler.setLevel(LOG_CONFIG["level"])
            file_handler.setFormatter(_JsonFormatter())
            file_handler.addFilter(context_filter)
            root.addHandler(file_handler)

            # 错误日志文件
            error_handler = RotatingFileHandler(
                LOG_CONFIG["error_file"],
                maxBytes=LOG_CONFIG["max_size"],
                backupCount=LOG_CONFIG["backup_count"],
                encoding="utf-8",
            )
            error_handler.setLevel(logging.ERROR)
            error_handler.setFormatter(_JsonFormatter())
            error_handler.addFilter(context_filter)
            root.addHandler(error_handler)

        cls._initialized = True

    @classmethod
    def get(cls, name: Optional[str] = None) -> logging.Logger:
        """
        获取日志记录器

        Args:
            name: 日志记录器名称（不提供则使用根记录器）
        """
        if not cls._initialized:
            cls.setup()

        full_name = f"{ROOT_LOGGER_NAME}.{name}" if name and name != ROOT_LOGGER_NAME else ROOT_LOGGER_NAME
        if full_name not in cls._loggers:
            cls._loggers[full_name] = logging.getLogger(full_name)

        return cls._loggers[full_name]


# ============================================================
# 公开接口
# ============================================================

def get_logger(name: Optional[str] = None) -> logging.Logger:
    """
    获取日志记录器

    Args:
        name: 日志记录器名称，如 "gateway.dispatcher"

    Returns:
        日志记录器实例
    """
    return _LoggerManager.get(name)


def set_level(level: str) -> None:
    """
    设置日志级别

    Args:
        level: 日志级别 ('DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL')
    """
    LOG_CONFIG["level"] = level.upper()
    root = logging.getLogger(ROOT_LOGGER_NAME)
    root.setLevel(level.upper())
    for handler in root.handlers:
        if handler.level != logging.ERROR:
            handler.setLevel(level.upper())
