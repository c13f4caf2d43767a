"""结构化日志系统 - 基于 structlog"""
import contextvars
import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional

import structlog

# 上下文变量：在一次聊天请求的整个链路中传递追踪信息
request_id_var = contextvars.ContextVar("request_id", default=None)
conversation_id_var = contextvars.ContextVar("conversation_id", default=None)
user_id_var = contextvars.ContextVar("user_id", default=None)


def add_context_info(logger, method_name, event_dict):
    """添加上下文信息到日志"""
    request_id = request_id_var.get()
    conversation_id = conversation_id_var.get()
    user_id = user_id_var.get()

    if request_id:
        event_dict.setdefault("request_id", request_id)
    if conversation_id:
        event_dict.setdefault("conversation_id", conversation_id)
    if user_id:
        event_dict.setdefault("user_id", user_id)

    return event_dict


def setup_structured_logging(
    log_level: str = "INFO",
    log_dir: Optional[str] = "logs",
    enable_json: bool = True,
    enable_console: bool = True,
):
    """
    配置结构化日志系统

    Args:
        log_level: 日志级别（DEBUG/INFO/WARNING/ERROR）
        log_dir: 日志目录，None 表示不写文件
        enable_json: 是否输出JSON格式（生产环境推荐）
        enable_console: 是否输出到控制台（开发环境推荐）
    """
    level = getattr(logging, log_level.upper(), logging.INFO)
    formatter = logging.Formatter("%(message)s")

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.setLevel(level)

    if enable_console:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(level)
        console_handler.setFormatter(formatter)
        root_logger.addHandler(console_handler)

    if log_dir:
        log_path = Path(log_dir)
        log_path.mkdir(parents=True, exist_ok=True)
        date_str = datetime.now().strftime("%Y%m%d")

        # 文件记录所有级别，错误日志单独保存
        file_handler = logging.FileHandler(log_path / f"chat_{date_str}.log", encoding="utf-8")
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

        error_handler = logging.FileHandler(log_path / f"chat_error_{date_str}.log", encoding="utf-8")
        error_handler.setLevel(logging.ERROR)
        error_handler.setFormatter(formatter)
        root_logger.addHandler(error_handler)

    # 静默第三方库的调试日志（减少噪音）
    noisy_loggers = [
        "aiosqlite",
        "httpx",
        "httpcore",
        "asyncio",
        "openai",
        "langchain",
        "langchain_core",
        "langfuse",
    ]
    for logger_name in noisy_loggers:
        logging.getLogger(logger_name).setLevel(logging.WARNING)

    shared_processors = [
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        add_context_info,
        structlog.processors.CallsiteParameterAdder(
            {
                structlog.processors.CallsiteParameter.FILENAME,
                structlog.processors.CallsiteParameter.LINENO,
                structlog.processors.CallsiteParameter.FUNC_NAME,
            }
        ),
        structlog.processors.format_exc_info,
    ]

    if enable_json:
        processors = shared_processors + [structlog.processors.JSONRenderer(ensure_ascii=False)]
    else:
        processors = shared_processors + [structlog.dev.ConsoleRenderer(colors=enable_console)]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str = None) -> structlog.BoundLogger:
    """
    获取结构化日志记录器

    Args:
        name: 日志器名称（通常是模块名）
    """
    return structlog.get_logger(name)


class LogContext:
    """日志上下文管理器 - 用于在代码块中设置追踪信息"""

    def __init__(
        self,
        request_id: Optional[str] = None,
        conversation_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ):
        self.request_id = request_id
        self.conversation_id = conversation_id
        self.user_id = user_id
        self._tokens = []

    def __enter__(self):
        if self.request_id:
            self._tokens.append((request_id_var, request_id_var.set(self.request_id)))
        if self.conversation_id:
            self._tokens.append((conversation_id_var, conversation_id_var.set(self.conversation_id)))
        if self.user_id:
            self._tokens.append((user_id_var, user_id_var.set(self.user_id)))
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        for var, token in reversed(self._tokens):
            var.reset(token)
        self._tokens = []
