"""
SOCKS5 中继 - 配置管理模块
加载和保存配置文件，合并命令行参数。

版本: 1.0.0

功能概述:
本模块提供了配置管理功能，包括：
1. 中继配置数据类
2. YAML 配置文件的加载和保存
3. 命令行参数覆盖配置文件

配置优先级（从高到低）:
- 命令行参数
- 配置文件中的 relay 段
- 内置默认值

配置文件格式:
    relay:
      host: 0.0.0.0
      port: 1080
      idle_timeout: 300
    logging:
      level: INFO
"""

import logging
from dataclasses import dataclass, asdict, fields
from typing import Any, Dict

import yaml

logger = logging.getLogger('socks5-relay-config')


# ============================================================================
# 配置数据类
# ============================================================================

@dataclass
class RelayConfig:
    """
    中继配置数据类

    Attributes:
        host: 监听地址（默认: "0.0.0.0"，所有网卡）
        port: 监听端口（默认: 1080）
        idle_timeout: 中继空闲超时（秒，0 表示不限制，默认: 300）
        connect_timeout: 连接目标主机的超时（秒，默认: 30）
        buffer_size: 每个方向的读缓冲区大小（字节，默认: 4096）
        stats_interval: 统计报告间隔（秒，0 表示不报告，默认: 60）
    """
    host: str = "0.0.0.0"
    port: int = 1080
    idle_timeout: float = 300.0
    connect_timeout: float = 30.0
    buffer_size: int = 4096
    stats_interval: float = 60.0

    def __post_init__(self):
        self.port = int(self.port)
        self.idle_timeout = float(self.idle_timeout or 0)
        self.connect_timeout = float(self.connect_timeout)
        self.buffer_size = int(self.buffer_size)
        self.stats_interval = float(self.stats_interval or 0)
        if not 0 <= self.port <= 65535:
            raise ValueError(f"监听端口超出范围: {self.port}")
        if self.buffer_size <= 0:
            raise ValueError(f"缓冲区大小必须为正数: {self.buffer_size}")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'RelayConfig':
        """
        从字典创建配置，忽略未知字段

        Args:
            data: 配置文件中 relay 段的内容

        Returns:
            RelayConfig: 配置对象
        """
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            logger.warning(f"忽略未知配置项: {', '.join(sorted(unknown))}")
        return cls(**{k: v for k, v in data.items() if k in known})

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# ============================================================================
# 配置文件管理函数
# ============================================================================

def load_config(config_file: str) -> Dict[str, Any]:
    """
    加载配置文件

    从 YAML 格式的配置文件中加载配置数据

    Args:
        config_file: 配置文件路径

    Returns:
        Dict[str, Any]: 配置数据字典，如果文件不存在或格式错误则返回空字典
    """
    try:
        with open(config_file, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f)
    except FileNotFoundError:
        return {}
    except yaml.YAMLError as e:
        logger.warning(f"配置文件格式错误: {e}")
        return {}

    if not isinstance(data, dict):
        if data is not None:
            logger.warning(f"配置文件顶层必须是映射: {config_file}")
        return {}
    return data


def save_config(config_file: str, config_data: Dict[str, Any]) -> bool:
    """
    保存配置文件

    Args:
        config_file: 配置文件路径
        config_data: 要保存的配置数据字典

    Returns:
        bool: 保存成功返回 True，失败返回 False
    """
    try:
        with open(config_file, 'w', encoding='utf-8') as f:
            yaml.dump(config_data, f, default_flow_style=False, allow_unicode=True)
        return True
    except OSError as e:
        logger.error(f"保存配置文件失败: {e}")
        return False


def build_config(config_data: Dict[str, Any], **overrides) -> RelayConfig:
    """
    合并配置文件和命令行参数

    值为 None 的覆盖项视为未指定。

    Args:
        config_data: load_config() 返回的完整配置字典
        **overrides: 命令行参数（host, port, idle_timeout 等）

    Returns:
        RelayConfig: 最终配置
    """
    relay_conf = dict(config_data.get('relay') or {})
    for key, value in overrides.items():
        if value is not None:
            relay_conf[key] = value
    return RelayConfig.from_dict(relay_conf)
