#!/usr/bin/env python3
"""
资源监控模块 - 统计中继连接并监控进程资源使用情况

功能:
1. 记录连接总数、活跃数、按原因分类的失败数和转发字节数
2. 使用 psutil 采样当前进程的内存、CPU 和文件描述符
3. 超过阈值时输出告警
4. 定期输出统计日志
"""

import asyncio
import logging
import os
from collections import Counter
from typing import Dict, List, Optional

import psutil

logger = logging.getLogger('socks5-relay-monitor')


class ConnectionStats:
    """中继连接统计"""

    def __init__(self):
        self.total_connections = 0
        self.active_connections = 0
        self.relayed_connections = 0
        self.failures = Counter()
        self.bytes_upstream = 0    # 客户端 -> 目标
        self.bytes_downstream = 0  # 目标 -> 客户端

    def connection_opened(self):
        self.total_connections += 1
        self.active_connections += 1

    def connection_closed(self):
        self.active_connections -= 1

    def record_failure(self, reason: str):
        self.failures[reason] += 1

    def record_relay(self, upstream: int, downstream: int):
        self.relayed_connections += 1
        self.bytes_upstream += upstream
        self.bytes_downstream += downstream

    @property
    def failed_connections(self) -> int:
        return sum(self.failures.values())

    def snapshot(self) -> Dict:
        return {
            'total': self.total_connections,
            'active': self.active_connections,
            'relayed': self.relayed_connections,
            'failed': self.failed_connections,
            'failures': dict(self.failures),
            'bytes_upstream': self.bytes_upstream,
            'bytes_downstream': self.bytes_downstream,
        }


class ResourceMonitor:
    """当前进程的资源监控器"""

    def __init__(self, stats: ConnectionStats, pid: Optional[int] = None):
        """
        初始化资源监控器

        参数:
            stats: 连接统计对象
            pid: 要监控的进程 ID（默认: 当前进程）
        """
        self.stats = stats
        self.process = psutil.Process(pid or os.getpid())

        # 告警阈值
        self.thresholds = {
            'memory_mb': 500,        # 内存阈值: 500MB
            'cpu_percent': 80,       # CPU 阈值: 80%
            'num_fds': 1000,         # 文件描述符阈值
            'connections': 1000,     # 活跃连接数阈值
        }

    def sample(self) -> Dict:
        """
        采样一次进程资源

        返回:
            Dict: 内存、CPU、文件描述符；进程不可访问时对应项为 0
        """
        try:
            with self.process.oneshot():
                memory_mb = self.process.memory_info().rss / 1024 / 1024
                cpu_percent = self.process.cpu_percent(interval=None)
                num_fds = self.process.num_fds() if hasattr(self.process, 'num_fds') else 0
        except (psutil.NoSuchProcess, psutil.AccessDenied) as e:
            logger.debug(f"无法读取进程信息: {e}")
            memory_mb, cpu_percent, num_fds = 0.0, 0.0, 0
        return {
            'memory_mb': memory_mb,
            'cpu_percent': cpu_percent,
            'num_fds': num_fds,
        }

    def check_thresholds(self, sample: Dict) -> List[str]:
        """
        检查是否超过阈值

        参数:
            sample: sample() 返回的资源信息

        返回:
            List[str]: 告警信息列表
        """
        warnings = []

        if sample['memory_mb'] > self.thresholds['memory_mb']:
            warnings.append(f"内存使用过高: {sample['memory_mb']:.2f} MB > {self.thresholds['memory_mb']} MB")

        if sample['cpu_percent'] > self.thresholds['cpu_percent']:
            warnings.append(f"CPU 使用过高: {sample['cpu_percent']:.2f}% > {self.thresholds['cpu_percent']}%")

        if sample['num_fds'] > self.thresholds['num_fds']:
            warnings.append(f"文件描述符过多: {sample['num_fds']} > {self.thresholds['num_fds']}")

        if self.stats.active_connections > self.thresholds['connections']:
            warnings.append(f"活跃连接数过多: {self.stats.active_connections} > {self.thresholds['connections']}")

        return warnings

    def report(self) -> Dict:
        """输出一行统计日志和所有告警"""
        sample = self.sample()
        snap = self.stats.snapshot()
        logger.info(f"连接统计: 总计={snap['total']}, "
                    f"活跃={snap['active']}, "
                    f"已中继={snap['relayed']}, "
                    f"失败={snap['failed']}, "
                    f"上行={snap['bytes_upstream']}B, "
                    f"下行={snap['bytes_downstream']}B, "
                    f"任务={len(asyncio.all_tasks())}, "
                    f"文件描述符={sample['num_fds']}, "
                    f"内存={sample['memory_mb']:.1f}MB, "
                    f"CPU={sample['cpu_percent']:.1f}%")
        for warning in self.check_thresholds(sample):
            logger.warning(warning)
        snap.update(sample)
        return snap

    async def run(self, interval: float):
        """定期报告统计，直到任务被取消"""
        while True:
            await asyncio.sleep(interval)
            try:
                self.report()
            except psutil.Error as e:
                logger.error(f"报告连接统计时出错: {e}")
