"""Loguru日志配置与代理事件日志"""

import sys
import uuid
from pathlib import Path
from typing import Any

from loguru import logger

REQUEST_ID_HEADER = "X-Request-ID"


def _ensure_request_id(record) -> bool:
    record["extra"].setdefault("request_id", "---")
    return True


def configure_logging(log_config) -> None:
    """配置Loguru日志系统

    Args:
        log_config: 日志配置对象，file 为 None 时只输出到控制台
    """
    # 移除默认的handler
    logger.remove()

    # 控制台日志格式（包含请求ID）
    console_format = "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | <cyan>{extra[request_id]}</cyan> | <cyan>{name}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>"

    logger.add(
        sys.stdout,
        format=console_format,
        level=log_config.level,
        colorize=True,
        filter=_ensure_request_id,
    )

    if log_config.file:
        log_path = Path(log_config.file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            str(log_path),
            format="{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {extra[request_id]} | {name}:{line} | {message}",
            level=log_config.level,
            rotation="10 MB",
            retention="1 day",
            encoding="utf-8",
            backtrace=True,
            diagnose=False,
            filter=_ensure_request_id,
        )

    def exception_handler(exc_type, exc_value, exc_traceback):
        """全局异常处理器"""
        if issubclass(exc_type, KeyboardInterrupt):
            sys.__excepthook__(exc_type, exc_value, exc_traceback)
            return

        logger.opt(exception=(exc_type, exc_value, exc_traceback)).critical(
            "未捕获的异常"
        )

    sys.excepthook = exception_handler


def generate_request_id() -> str:
    """生成唯一的请求ID

    Returns:
        str: 格式为 req_xxxxxxxx-xxxx-xxxx-xxxx-xxxxxxxxxxxx 的请求ID
    """
    return f"req_{uuid.uuid4()}"


def get_request_id_from_request(request) -> str | None:
    """从请求对象中安全地获取请求ID"""
    return getattr(request.state, "request_id", None)


def get_logger_with_request_id(request_id: str | None = None):
    """获取绑定了请求ID的日志器实例"""
    return logger.bind(request_id=request_id or "---")


def format_proxy_event(event: str, **fields: Any) -> str:
    """把代理事件格式化为 `event=<name> key=value ...` 结构化字符串

    值为 None 的字段会被省略，包含空格的值加引号。
    """
    parts = [f"event={event}"]
    for key, value in fields.items():
        if value is None:
            continue
        if isinstance(value, bool):
            value = str(value).lower()
        text = str(value)
        if " " in text or not text:
            text = f'"{text}"'
        parts.append(f"{key}={text}")
    return " ".join(parts)


class ProxyEventLogger:
    """代理可观测事件日志

    请求开始/成功/失败、重试、压缩、输出上限调整、工具调用丢弃等事件
    都以统一的结构化字符串输出，并带上服务商与模型标签。
    """

    def __init__(self, request_id: str | None = None, provider: str | None = None, model: str | None = None):
        self._logger = get_logger_with_request_id(request_id)
        self.provider = provider
        self.model = model

    def bind_target(self, provider: str, model: str) -> None:
        self.provider = provider
        self.model = model

    def emit(self, event: str, level: str = "INFO", **fields: Any) -> str:
        message = format_proxy_event(
            event, provider=self.provider, model=self.model, **fields
        )
        self._logger.log(level, message)
        return message

    def request_start(self, **fields: Any) -> str:
        return self.emit("request_start", **fields)

    def request_success(self, **fields: Any) -> str:
        return self.emit("request_success", **fields)

    def request_failure(self, **fields: Any) -> str:
        return self.emit("request_failure", level="WARNING", **fields)

    def retry(self, **fields: Any) -> str:
        return self.emit("retry", level="WARNING", **fields)

    def compaction(self, **fields: Any) -> str:
        return self.emit("compaction", **fields)

    def max_tokens_capped(self, **fields: Any) -> str:
        return self.emit("max_tokens_capped", **fields)
