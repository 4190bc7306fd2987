#!/usr/bin/env python3
"""
SOCKS5 中继服务端

版本: 1.0.0

协议:
1. SOCKS5 握手（仅支持 '无需认证' 方法）
2. CONNECT 请求（IPv4 / 域名 / IPv6）
3. 连接目标主机成功后，在客户端和目标之间双向转发数据

功能:
- 每个客户端连接一个独立任务
- 区分临时性和致命的 accept 错误，临时错误退避后继续监听
- 中继空闲超时
- 定期输出连接统计和进程资源使用情况
"""

import asyncio
import argparse
import errno
import itertools
import logging
import socket
from enum import Enum
from typing import Optional, Set

from config import RelayConfig, load_config, build_config
from logger import LoggerManager, add_context, clear_context, log_exception
from negotiation import Negotiation, format_address
from relay import RelayEngine, close_writer
from resolver import Resolver
from resource_monitor import ConnectionStats, ResourceMonitor

logger = logging.getLogger('socks5-relay-server')


# ============================================================================
# accept 错误分类
# ============================================================================

class AcceptErrorKind(Enum):
    TRANSIENT = 'transient'
    FATAL = 'fatal'


# 这些错误只影响单次 accept，监听套接字本身仍然可用
TRANSIENT_ACCEPT_ERRNOS = frozenset(
    code for code in (
        errno.ECONNABORTED,
        errno.ECONNRESET,
        errno.EMFILE,
        errno.ENFILE,
        errno.ENOBUFS,
        errno.ENOMEM,
        errno.EAGAIN,
        errno.EINTR,
        errno.EPERM,
        getattr(errno, 'EPROTO', None),
    ) if code is not None
)

ACCEPT_RETRY_DELAY = 0.1
ACCEPT_MAX_RETRY_DELAY = 1.0


def classify_accept_error(exc: OSError) -> AcceptErrorKind:
    """
    判断 accept 错误是否可以重试

    Args:
        exc: accept 抛出的异常

    Returns:
        AcceptErrorKind: TRANSIENT 表示记录日志后继续监听，FATAL 表示停止服务
    """
    if isinstance(exc, ConnectionAbortedError) or exc.errno in TRANSIENT_ACCEPT_ERRNOS:
        return AcceptErrorKind.TRANSIENT
    return AcceptErrorKind.FATAL


# ============================================================================
# 服务端
# ============================================================================

class RelayServer:
    """
    SOCKS5 中继服务端

    持有监听套接字，循环 accept，为每个客户端启动一个
    协商 + 中继任务。

    Attributes:
        config: 中继配置
        resolver: 地址解析器
        stats: 连接统计
        address: 实际监听的 (host, port)，start() 之后可用
    """

    def __init__(self, config: RelayConfig, resolver: Optional[Resolver] = None,
                 stats: Optional[ConnectionStats] = None):
        self.config = config
        self.resolver = resolver or Resolver()
        self.stats = stats or ConnectionStats()
        self.engine = RelayEngine(config.buffer_size, config.idle_timeout)
        self.address = None

        self._listener: Optional[socket.socket] = None
        self._tasks: Set[asyncio.Task] = set()
        self._ids = itertools.count(1)
        self._closing = False
        self._serve_task: Optional[asyncio.Task] = None

    async def start(self):
        """
        创建监听套接字

        Raises:
            OSError: 端口被占用或地址不可用
        """
        family = socket.AF_INET6 if ':' in self.config.host else socket.AF_INET
        self._listener = socket.create_server(
            (self.config.host, self.config.port), family=family, backlog=128
        )
        self._listener.setblocking(False)
        self.address = self._listener.getsockname()[:2]
        logger.info(f"SOCKS5 中继运行在 {format_address(self.address)}")

    async def serve_forever(self):
        """
        accept 循环

        临时错误退避后继续；致命错误或 stop() 时返回。
        """
        if self._listener is None:
            await self.start()

        self._serve_task = asyncio.current_task()
        delay = ACCEPT_RETRY_DELAY

        try:
            while not self._closing:
                try:
                    sock, addr = await self._accept()
                except OSError as e:
                    if self._closing:
                        break
                    if classify_accept_error(e) is AcceptErrorKind.TRANSIENT:
                        logger.warning(f"接受客户端连接失败（临时错误，{delay:.1f}秒后重试）: {e}")
                        await asyncio.sleep(delay)
                        delay = min(delay * 2, ACCEPT_MAX_RETRY_DELAY)
                        continue
                    logger.error(f"接受客户端连接失败（致命错误），停止服务: {e}")
                    break

                delay = ACCEPT_RETRY_DELAY
                task = asyncio.create_task(self._handle_socket(sock, addr))
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)
        except asyncio.CancelledError:
            if not self._closing:
                raise
        finally:
            self._serve_task = None
            await self.stop()

    async def _accept(self):
        loop = asyncio.get_running_loop()
        return await loop.sock_accept(self._listener)

    async def stop(self):
        """关闭监听套接字并取消所有连接任务"""
        if self._closing and self._listener is None:
            return
        self._closing = True

        if self._serve_task is not None and self._serve_task is not asyncio.current_task():
            self._serve_task.cancel()

        if self._listener is not None:
            self._listener.close()
            self._listener = None
            logger.info("监听已关闭")

        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    @property
    def active_connections(self) -> int:
        return len(self._tasks)

    async def _handle_socket(self, sock: socket.socket, addr):
        try:
            reader, writer = await asyncio.open_connection(sock=sock)
        except OSError as e:
            logger.warning(f"{format_address(addr)}: 无法建立流: {e}")
            sock.close()
            return
        await self.handle_client(reader, writer)

    async def handle_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        """
        处理一个客户端连接

        流程:
        1. 协商（问候、请求、解析、连接目标、应答）
        2. 协商成功后运行中继直到两个方向都结束
        3. 关闭客户端连接并更新统计

        所有错误都在本任务内处理，不影响其他连接和监听循环。

        Args:
            reader: 客户端读取流
            writer: 客户端写入流
        """
        conn_id = next(self._ids)
        peer = format_address(writer.get_extra_info('peername'))
        add_context(client=peer, conn=conn_id)
        self.stats.connection_opened()
        logger.debug(f"{peer}: 新连接")

        try:
            negotiation = Negotiation(reader, writer, self.resolver, self.config.connect_timeout)
            pair = await negotiation.run()
            if pair is None:
                self.stats.record_failure(negotiation.failure_reason)
                return

            upstream, downstream = await self.engine.run(pair)
            self.stats.record_relay(upstream, downstream)
        except Exception:
            log_exception(logger, f"{peer}: 处理连接时出现未预期的错误")
            self.stats.record_failure('InternalError')
        finally:
            await close_writer(writer)
            self.stats.connection_closed()
            logger.debug(f"{peer}: 连接已关闭")
            clear_context()


# ============================================================================
# 主程序
# ============================================================================

async def run_server(config: RelayConfig) -> int:
    """
    运行服务端直到致命错误或被中断

    Returns:
        int: 进程退出码
    """
    server = RelayServer(config)
    try:
        await server.start()
    except OSError as e:
        logger.error(f"无法监听端口 {config.port}: {e}")
        return 1

    monitor_task = None
    if config.stats_interval > 0:
        monitor = ResourceMonitor(server.stats)
        monitor_task = asyncio.create_task(monitor.run(config.stats_interval))

    try:
        await server.serve_forever()
    finally:
        if monitor_task is not None:
            monitor_task.cancel()
            await asyncio.gather(monitor_task, return_exceptions=True)
        await server.stop()
    return 0


def main(argv=None):
    """
    主函数 - 解析命令行参数并启动服务端

    命令行参数:
        --config, -c: 配置文件路径 (默认: config.yaml)
        --host: 监听地址
        --port, -p: 监听端口
        --idle-timeout: 中继空闲超时（秒，0 表示不限制）
        --debug, -d: 启用调试模式
    """
    parser = argparse.ArgumentParser(description='SOCKS5 中继服务端')
    parser.add_argument('--config', '-c', default='config.yaml', help='配置文件路径')
    parser.add_argument('--host', default=None, help='监听地址（默认: 0.0.0.0）')
    parser.add_argument('--port', '-p', type=int, default=None, help='监听端口（默认: 1080）')
    parser.add_argument('--idle-timeout', type=float, default=None, help='中继空闲超时（秒，0 表示不限制）')
    parser.add_argument('--debug', '-d', action='store_true', help='启用调试模式')
    args = parser.parse_args(argv)

    # 加载配置文件
    config_data = load_config(args.config)

    manager = LoggerManager()
    manager.initialize(LoggerManager.config_from_dict(config_data.get('logging')))
    if args.debug:
        manager.set_level(logging.DEBUG)

    try:
        config = build_config(
            config_data,
            host=args.host,
            port=args.port,
            idle_timeout=args.idle_timeout,
        )
    except (TypeError, ValueError) as e:
        logger.error(f"配置无效: {e}")
        return 1

    logger.info(f"中继配置: 监听={config.host}:{config.port}, "
                f"空闲超时={config.idle_timeout:.0f}s, 连接超时={config.connect_timeout:.0f}s")

    try:
        return asyncio.run(run_server(config))
    except KeyboardInterrupt:
        logger.info("服务端已停止")
        return 0


if __name__ == '__main__':
    exit(main())
