"""
中继引擎模块

协商成功后，在客户端和目标主机之间双向转发数据。

每个方向各有一个转发任务:
- 客户端 -> 目标（上行）
- 目标 -> 客户端（下行）

转发任务读到 EOF 时半关闭对端的写方向，让对端也看到 EOF；出错时
直接关闭对端，另一个方向随之读到 EOF 或错误并退出。每个任务退出时
向一个容量为 2 的完成队列放入一个事件，引擎收到两个事件后才关闭
两个套接字，保证不会在另一个方向仍在使用时关闭套接字。
"""

import asyncio
import time
import logging
from dataclasses import dataclass, field
from typing import Optional, Tuple

logger = logging.getLogger('socks5-relay-relay')

DEFAULT_BUFFER_SIZE = 4096

UPSTREAM = 'upstream'
DOWNSTREAM = 'downstream'


async def close_writer(writer: Optional[asyncio.StreamWriter]):
    """
    关闭写入器并等待底层连接关闭

    对端已经断开时产生的连接错误不影响关闭结果，只记录调试日志。
    """
    if writer is None:
        return
    try:
        writer.close()
        await writer.wait_closed()
    except (ConnectionError, OSError) as e:
        logger.debug(f"关闭连接时出错: {e}")


@dataclass
class RelayPair:
    """
    中继连接对

    Attributes:
        client_reader: 从 SOCKS 客户端读取数据的异步流读取器
        client_writer: 向 SOCKS 客户端写入数据的异步流写入器
        upstream_reader: 从目标主机读取数据的异步流读取器
        upstream_writer: 向目标主机写入数据的异步流写入器
        peer: 客户端地址（用于日志）
        target: 目标地址（用于日志）
        last_activity: 最近一次任一方向有数据的时间（monotonic）
        bytes_upstream: 客户端 -> 目标 的字节数
        bytes_downstream: 目标 -> 客户端 的字节数
    """
    client_reader: asyncio.StreamReader
    client_writer: asyncio.StreamWriter
    upstream_reader: asyncio.StreamReader
    upstream_writer: asyncio.StreamWriter
    peer: str = '-'
    target: str = '-'
    last_activity: float = field(default_factory=time.monotonic)
    bytes_upstream: int = 0
    bytes_downstream: int = 0

    def record(self, direction: str, count: int):
        self.last_activity = time.monotonic()
        if direction == UPSTREAM:
            self.bytes_upstream += count
        else:
            self.bytes_downstream += count

    def idle_for(self) -> float:
        return time.monotonic() - self.last_activity

    def abort(self):
        """立即关闭两个套接字，不等待"""
        self.client_writer.close()
        self.upstream_writer.close()

    async def close(self):
        await close_writer(self.upstream_writer)
        await close_writer(self.client_writer)


class RelayEngine:
    """
    双向中继引擎

    Attributes:
        buffer_size: 每次读取的最大字节数
        idle_timeout: 两个方向都没有数据的最长时间（秒），0 表示不限制
    """

    def __init__(self, buffer_size: int = DEFAULT_BUFFER_SIZE, idle_timeout: float = 0.0):
        self.buffer_size = buffer_size
        self.idle_timeout = idle_timeout

    async def run(self, pair: RelayPair) -> Tuple[int, int]:
        """
        运行中继直到两个方向都结束

        Returns:
            Tuple[int, int]: (上行字节数, 下行字节数)
        """
        logger.debug(f"{pair.peer}: 开始中继 -> {pair.target}")
        done: asyncio.Queue = asyncio.Queue(maxsize=2)
        tasks = [
            asyncio.create_task(self._copy(pair, pair.client_reader, pair.upstream_writer, UPSTREAM, done)),
            asyncio.create_task(self._copy(pair, pair.upstream_reader, pair.client_writer, DOWNSTREAM, done)),
        ]
        try:
            for _ in range(2):
                direction = await done.get()
                logger.debug(f"{pair.peer}: {direction} 方向已结束")
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            await pair.close()

        logger.info(f"{pair.peer}: 中继结束 {pair.target}, "
                    f"上行={pair.bytes_upstream}B, 下行={pair.bytes_downstream}B")
        return pair.bytes_upstream, pair.bytes_downstream

    async def _read(self, pair: RelayPair, reader: asyncio.StreamReader) -> bytes:
        """
        读取一块数据

        启用空闲超时时，只有整个连接对都空闲满 idle_timeout 才抛出
        asyncio.TimeoutError；另一个方向仍有数据时继续等待。
        """
        if not self.idle_timeout:
            return await reader.read(self.buffer_size)

        while True:
            remaining = self.idle_timeout - pair.idle_for()
            if remaining <= 0:
                raise asyncio.TimeoutError()
            try:
                return await asyncio.wait_for(reader.read(self.buffer_size), timeout=remaining)
            except asyncio.TimeoutError:
                if pair.idle_for() >= self.idle_timeout:
                    raise

    async def _copy(self, pair: RelayPair, reader: asyncio.StreamReader,
                    writer: asyncio.StreamWriter, direction: str, done: asyncio.Queue):
        """单方向转发循环，退出时恰好向 done 放入一个事件"""
        try:
            while True:
                try:
                    data = await self._read(pair, reader)
                except asyncio.TimeoutError:
                    logger.info(f"{pair.peer}: 连接空闲超过 {self.idle_timeout:.0f} 秒，关闭中继")
                    pair.abort()
                    break

                if not data:
                    logger.debug(f"{pair.peer}: {direction} 读取到 EOF")
                    self._half_close(writer)
                    break

                writer.write(data)
                await writer.drain()
                pair.record(direction, len(data))
        except (ConnectionError, OSError) as e:
            logger.debug(f"{pair.peer}: {direction} 转发失败: {e}")
            writer.close()
        finally:
            done.put_nowait(direction)

    @staticmethod
    def _half_close(writer: asyncio.StreamWriter):
        """向对端发送 EOF；不支持半关闭的传输直接关闭"""
        if writer.is_closing():
            return
        try:
            if writer.can_write_eof():
                writer.write_eof()
                return
        except (ConnectionError, OSError) as e:
            logger.debug(f"半关闭失败: {e}")
        writer.close()
