"""
SOCKS5 中继 - 日志管理模块

版本: 1.0.0

功能概述:
本模块提供了日志管理功能，包括：
1. 多级别日志记录（DEBUG, INFO, WARNING, ERROR, CRITICAL）
2. 日志轮转（按日期/大小）
3. 结构化日志格式（时间戳、级别、连接上下文）
4. 配置文件和环境变量支持
5. 异常捕获和错误追踪

连接上下文保存在 ContextVar 中。每个连接任务创建时复制一份上下文，
因此并发连接之间的 client/conn 字段互不影响。
"""

import logging
import logging.handlers
import os
import sys
from contextvars import ContextVar
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

try:
    from systemd.journal import JournalHandler
    HAS_JOURNAL = True
except ImportError:
    HAS_JOURNAL = False

DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - [%(context)s] - %(message)s"

_context: ContextVar = ContextVar('socks5_relay_log_context', default={})


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
            self.context_fields = ["client", "conn"]


def _env_bool(name: str, default: Any) -> bool:
    return os.getenv(name, str(default)).lower() in ('1', 'true', 'yes', 'on')


class ContextFilter(logging.Filter):
    """
    上下文过滤器

    为日志记录添加当前任务的连接上下文信息
    """

    def __init__(self, context_fields: list = None):
        super().__init__()
        self.context_fields = context_fields or []

    def filter(self, record):
        """
        过滤日志记录，添加上下文信息

        Returns:
            bool: 总是返回 True
        """
        data = _context.get()
        context_parts = []
        for field in self.context_fields:
            value = data.get(field, "-")
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
        # 确保context字段存在
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
        """
        单例模式
        """
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self):
        if not self._initialized:
            self.config = None
            self.context_filter = None
            self.handlers = []
            self._initialized = True

    @staticmethod
    def config_from_dict(log_config: Optional[Dict[str, Any]] = None) -> LogConfig:
        """
        从配置文件的 logging 段创建日志配置，环境变量优先

        Args:
            log_config: 配置文件中 logging 段的内容

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
            context_fields=log_config.get('context_fields', defaults.context_fields),
        )

    def initialize(self, config: Optional[LogConfig] = None):
        """
        初始化日志系统

        Args:
            config: 日志配置对象（可选，默认从环境变量读取）
        """
        self.config = config or self.config_from_dict()
        self.context_filter = ContextFilter(self.config.context_fields)
        self._setup_root_logger()

    @property
    def level(self) -> int:
        return getattr(logging, self.config.level.upper(), logging.INFO)

    def set_level(self, level: int):
        """运行时调整根日志记录器和所有处理器的级别"""
        logging.getLogger().setLevel(level)
        for handler in self.handlers:
            handler.setLevel(level)

    def _setup_root_logger(self):
        root_logger = logging.getLogger()
        root_logger.setLevel(self.level)

        for handler in self.handlers:
            root_logger.removeHandler(handler)
            handler.close()
        self.handlers = []

        if self.config.enable_console:
            self._add_handler(root_logger, self._console_handler())

        if self.config.enable_file:
            Path(self.config.log_dir).mkdir(parents=True, exist_ok=True)
            self._add_handler(root_logger, self._file_handler())

        if self.config.enable_journal and HAS_JOURNAL:
            self._add_handler(root_logger, JournalHandler())

    def _add_handler(self, logger: logging.Logger, handler: logging.Handler):
        # 过滤器挂在处理器上，子日志记录器传播上来的记录也会经过它
        handler.setLevel(self.level)
        handler.addFilter(self.context_filter)
        logger.addHandler(handler)
        self.handlers.append(handler)

    def _console_handler(self) -> logging.Handler:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(LogFormatter(
            fmt=self.config.format_string,
            datefmt='%Y-%m-%d %H:%M:%S',
            use_color=sys.stdout.isatty()
        ))
        return handler

    def _file_handler(self) -> logging.Handler:
        """
        创建文件处理器（支持轮转）
        """
        log_file_path = Path(self.config.log_dir) / self.config.log_file

        if self.config.rotation_type == 'size':
            handler = logging.handlers.RotatingFileHandler(
                filename=log_file_path,
                maxBytes=self.config.max_bytes,
                backupCount=self.config.backup_count,
                encoding='utf-8'
            )
        elif self.config.rotation_type == 'date':
            handler = logging.handlers.TimedRotatingFileHandler(
                filename=log_file_path,
                when='midnight',
                interval=1,
                backupCount=self.config.backup_count,
                encoding='utf-8'
            )
        else:
            handler = logging.FileHandler(filename=log_file_path, encoding='utf-8')

        handler.setFormatter(LogFormatter(
            fmt=self.config.format_string,
            datefmt='%Y-%m-%d %H:%M:%S',
            use_color=False
        ))
        return handler


def add_context(**kwargs):
    """
    为当前任务添加上下文信息

    Args:
        **kwargs: 上下文键值对
    """
    data = dict(_context.get())
    data.update(kwargs)
    _context.set(data)


def clear_context():
    """
    清除当前任务的上下文信息
    """
    _context.set({})


def get_context() -> Dict[str, Any]:
    return dict(_context.get())


def log_exception(logger: logging.Logger, message: str = "发生异常"):
    """
    记录当前正在处理的异常及堆栈

    Args:
        logger: 日志记录器
        message: 日志消息
    """
    logger.error(message, exc_info=True)
