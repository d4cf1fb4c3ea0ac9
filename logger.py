"""
SOCKS5 代理 - 日志管理模块

功能概述:
本模块提供了完整的日志管理功能，包括：
1. 多级别日志记录（DEBUG, INFO, WARNING, ERROR, CRITICAL）
2. 日志轮转（按日期/大小）
3. 结构化日志格式（时间戳、级别、会话上下文）
4. 配置文件和环境变量支持
5. 异常记录

会话上下文:
每个客户端连接在独立的 asyncio 任务中运行。上下文信息保存在
contextvars.ContextVar 中，任务创建时会复制当前上下文，因此并发会话
各自的 peer / session_id / username 互不干扰。
"""

import contextvars
import logging
import logging.handlers
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

try:
    from systemd.journal import JournalHandler
    HAS_JOURNAL = True
except ImportError:
    HAS_JOURNAL = False


DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - [%(context)s] - %(message)s"
DEFAULT_CONTEXT_FIELDS = ["peer", "session_id", "username"]

_context: contextvars.ContextVar = contextvars.ContextVar('socks5_relay_log_context', default={})


@dataclass
class LogConfig:
    """
    日志配置数据类

    Attributes:
        level: 日志级别（DEBUG, INFO, WARNING, ERROR, CRITICAL）
        log_dir: 日志存储目录
        log_file: 日志文件名
        max_bytes: 单个日志文件最大大小（字节）
        backup_count: 保留的备份文件数量
        rotation_type: 轮转类型（size, date, none）
        format_string: 日志格式字符串
        enable_console: 是否输出到控制台
        enable_file: 是否输出到文件
        enable_journal: 是否输出到系统日志
        context_fields: 上下文字段列表
    """
    level: str = "INFO"
    log_dir: str = "logs"
    log_file: str = "socks5-relay.log"
    max_bytes: int = 10 * 1024 * 1024  # 10MB
    backup_count: int = 10
    rotation_type: str = "size"  # size, date, none
    format_string: str = DEFAULT_FORMAT
    enable_console: bool = True
    enable_file: bool = False
    enable_journal: bool = False
    context_fields: list = None

    def __post_init__(self):
        if self.context_fields is None:
            self.context_fields = list(DEFAULT_CONTEXT_FIELDS)


def _env_bool(name: str, default: Any) -> bool:
    return os.getenv(name, str(default)).lower() == 'true'


class ContextFilter(logging.Filter):
    """
    上下文过滤器

    为日志记录添加当前任务的上下文信息
    """

    def __init__(self, context_fields: list = None):
        super().__init__()
        self.context_fields = context_fields or []

    def filter(self, record):
        context_data = _context.get()
        context_parts = []
        for field in self.context_fields:
            value = context_data.get(field, "-")
            context_parts.append(f"{field}={value}")

        record.context = " | ".join(context_parts) or "-"
        return True


class LogFormatter(logging.Formatter):
    """
    自定义日志格式化器

    支持彩色输出
    """

    COLORS = {
        'DEBUG': '\033[36m',      # 青色
        'INFO': '\033[32m',       # 绿色
        'WARNING': '\033[33m',    # 黄色
        'ERROR': '\033[31m',      # 红色
        'CRITICAL': '\033[35m',   # 紫色
    }
    RESET = '\033[0m'

    def __init__(self, fmt=None, datefmt=None, style='%', use_color=False):
        super().__init__(fmt, datefmt, style)
        self.use_color = use_color

    def format(self, record):
        # 未经过 ContextFilter 的记录（例如第三方处理器）也要能格式化
        if not hasattr(record, 'context'):
            record.context = "-"

        levelname = record.levelname
        if self.use_color and levelname in self.COLORS:
            record.levelname = f"{self.COLORS[levelname]}{levelname}{self.RESET}"

        try:
            return super().format(record)
        finally:
            record.levelname = levelname


class LoggerManager:
    """
    日志管理器

    管理日志系统的初始化和配置
    """

    _instance = None
    _initialized = False

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self):
        if not self._initialized:
            self.config = None
            self.context_filter = None
            self._initialized = True

    def load_config(self, log_config: Optional[Dict[str, Any]] = None) -> LogConfig:
        """
        从 config.yaml 的 logging 段加载日志配置，环境变量优先

        Args:
            log_config: logging 段的内容（可选）

        Returns:
            LogConfig: 日志配置对象
        """
        log_config = log_config or {}
        defaults = LogConfig()

        return LogConfig(
            level=os.getenv('LOG_LEVEL', log_config.get('level', defaults.level)),
            log_dir=os.getenv('LOG_DIR', log_config.get('log_dir', defaults.log_dir)),
            log_file=os.getenv('LOG_FILE', log_config.get('log_file', defaults.log_file)),
            max_bytes=int(os.getenv('LOG_MAX_BYTES', log_config.get('max_bytes', defaults.max_bytes))),
            backup_count=int(os.getenv('LOG_BACKUP_COUNT', log_config.get('backup_count', defaults.backup_count))),
            rotation_type=os.getenv('LOG_ROTATION_TYPE', log_config.get('rotation_type', defaults.rotation_type)),
            format_string=os.getenv('LOG_FORMAT', log_config.get('format_string', defaults.format_string)),
            enable_console=_env_bool('LOG_ENABLE_CONSOLE', log_config.get('enable_console', defaults.enable_console)),
            enable_file=_env_bool('LOG_ENABLE_FILE', log_config.get('enable_file', defaults.enable_file)),
            enable_journal=_env_bool('LOG_ENABLE_JOURNAL', log_config.get('enable_journal', defaults.enable_journal)),
            context_fields=log_config.get('context_fields', list(DEFAULT_CONTEXT_FIELDS)),
        )

    def initialize(self, config: Optional[LogConfig] = None, log_config: Optional[Dict[str, Any]] = None):
        """
        初始化日志系统

        Args:
            config: 日志配置对象（可选）
            log_config: config.yaml 的 logging 段（可选，config 为空时使用）
        """
        self.config = config or self.load_config(log_config)
        self.context_filter = ContextFilter(self.config.context_fields)

        root_logger = logging.getLogger()
        root_logger.setLevel(self._level())
        for handler in list(root_logger.handlers):
            root_logger.removeHandler(handler)
            handler.close()

        if self.config.enable_console:
            self._add_console_handler(root_logger)

        if self.config.enable_file:
            Path(self.config.log_dir).mkdir(parents=True, exist_ok=True)
            self._add_file_handler(root_logger)

        if self.config.enable_journal:
            if HAS_JOURNAL:
                self._add_journal_handler(root_logger)
            else:
                root_logger.warning("未安装 systemd 日志支持，忽略 enable_journal")

    def set_level(self, level: str):
        """调整根日志记录器及其处理器的级别"""
        if self.config:
            self.config.level = level
        root_logger = logging.getLogger()
        root_logger.setLevel(self._level())
        for handler in root_logger.handlers:
            handler.setLevel(self._level())

    def _level(self) -> int:
        level = self.config.level if self.config else "INFO"
        return getattr(logging, level.upper(), logging.INFO)

    def _add_handler(self, logger: logging.Logger, handler: logging.Handler, use_color: bool = False):
        # 过滤器挂在处理器上，传播上来的记录同样会带上上下文
        handler.setLevel(self._level())
        handler.addFilter(self.context_filter)
        handler.setFormatter(LogFormatter(
            fmt=self.config.format_string,
            datefmt='%Y-%m-%d %H:%M:%S',
            use_color=use_color
        ))
        logger.addHandler(handler)

    def _add_console_handler(self, logger: logging.Logger):
        self._add_handler(logger, logging.StreamHandler(sys.stdout), use_color=sys.stdout.isatty())

    def _add_file_handler(self, logger: logging.Logger):
        """
        添加文件处理器（支持轮转）

        Args:
            logger: 日志记录器
        """
        log_file_path = Path(self.config.log_dir) / self.config.log_file

        if self.config.rotation_type == 'size':
            file_handler = logging.handlers.RotatingFileHandler(
                filename=log_file_path,
                maxBytes=self.config.max_bytes,
                backupCount=self.config.backup_count,
                encoding='utf-8'
            )
        elif self.config.rotation_type == 'date':
            file_handler = logging.handlers.TimedRotatingFileHandler(
                filename=log_file_path,
                when='midnight',
                interval=1,
                backupCount=self.config.backup_count,
                encoding='utf-8'
            )
        else:
            file_handler = logging.FileHandler(
                filename=log_file_path,
                encoding='utf-8'
            )

        self._add_handler(logger, file_handler)

    def _add_journal_handler(self, logger: logging.Logger):
        self._add_handler(logger, JournalHandler())


def add_context(**kwargs):
    """
    为当前任务添加上下文信息

    Args:
        **kwargs: 上下文键值对
    """
    context_data = dict(_context.get())
    context_data.update(kwargs)
    _context.set(context_data)


def current_context() -> Dict[str, Any]:
    """返回当前任务的上下文信息副本"""
    return dict(_context.get())


def log_exception(logger: logging.Logger, message: str = "发生异常"):
    """
    记录异常信息（含堆栈）

    Args:
        logger: 日志记录器
        message: 日志消息
    """
    logger.error(message, exc_info=True)
