"""
SOCKS5 协商状态机

驱动一个客户端连接完成:
问候 -> 方法选择 -> 请求解析 -> 地址解析 -> 连接目标 -> 应答

状态转换:
    AWAIT_GREETING -> AWAIT_METHOD_ACK -> AWAIT_REQUEST -> RESOLVING
    -> DIALING -> REPLYING -> DONE
任何一步失败都进入 FAILED，关闭已持有的所有套接字。

错误与应答:
- ProtocolError（版本号、保留字节、方法数量、没有 '无需认证'）: 不发送应答
- UnsupportedCommand: 发送 4 字节简略应答 0x07
- UnsupportedAddressType: 发送 4 字节简略应答 0x08
- ResolutionError / DialError: 发送 8 字节失败应答 0x05
- TransportError: 不发送应答
"""

import asyncio
import logging
from enum import Enum
from typing import Awaitable, Callable, Optional, Tuple

from protocol import (
    GREETING_HEADER_SIZE, REQUEST_HEADER_SIZE, METHOD_NO_AUTH, ATYP_DOMAIN,
    MethodSelection, ConnectRequest, ConnectReply,
    decode_greeting_header, decode_greeting, encode_method_selection,
    decode_request_header, request_remainder_length, decode_connect_request,
    encode_connect_reply,
    Socks5Error, TransportError, NoAcceptableMethod, UnsupportedCommand,
    UnsupportedAddressType, ResolutionError, DialError,
)
from relay import RelayPair, close_writer
from resolver import Resolver, ResolvedTarget

logger = logging.getLogger('socks5-relay-negotiation')

Opener = Callable[..., Awaitable[Tuple[asyncio.StreamReader, asyncio.StreamWriter]]]


class State(Enum):
    """协商状态"""
    AWAIT_GREETING = 'AWAIT_GREETING'
    AWAIT_METHOD_ACK = 'AWAIT_METHOD_ACK'
    AWAIT_REQUEST = 'AWAIT_REQUEST'
    RESOLVING = 'RESOLVING'
    DIALING = 'DIALING'
    REPLYING = 'REPLYING'
    DONE = 'DONE'
    FAILED = 'FAILED'


def format_address(address) -> str:
    """格式化 (host, port[, ...]) 地址元组"""
    if not address:
        return '-'
    host, port = address[0], address[1]
    if ':' in host:
        return f"[{host}]:{port}"
    return f"{host}:{port}"


class Negotiation:
    """
    单个客户端连接的协商状态机

    只负责按帧长度精确读写，不包含转发循环。成功时 run() 返回
    RelayPair 交给中继引擎；失败时返回 None，failure 保存失败原因。

    Attributes:
        reader: 客户端读取流
        writer: 客户端写入流
        resolver: 地址解析器
        connect_timeout: 连接目标主机的超时（秒）
        opener: 打开出站连接的协程函数（默认 asyncio.open_connection）
        state: 当前状态
        request: 解析出的 CONNECT 请求
        target: 解析后的目标地址
        failure: 失败原因
    """

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter,
                 resolver: Optional[Resolver] = None, connect_timeout: float = 30.0,
                 opener: Opener = asyncio.open_connection):
        self.reader = reader
        self.writer = writer
        self.resolver = resolver or Resolver()
        self.connect_timeout = connect_timeout
        self.opener = opener
        self.peer = format_address(writer.get_extra_info('peername'))

        self.state = State.AWAIT_GREETING
        self.request: Optional[ConnectRequest] = None
        self.target: Optional[ResolvedTarget] = None
        self.failure: Optional[Socks5Error] = None

        self.upstream_reader: Optional[asyncio.StreamReader] = None
        self.upstream_writer: Optional[asyncio.StreamWriter] = None

    def transition(self, new_state: State):
        """转换到新状态"""
        logger.debug(f"{self.peer}: {self.state.value} -> {new_state.value}")
        self.state = new_state

    def is_state(self, state: State) -> bool:
        return self.state == state

    @property
    def failure_reason(self) -> str:
        return type(self.failure).__name__ if self.failure else ''

    async def run(self) -> Optional[RelayPair]:
        """
        执行完整的协商流程

        Returns:
            Optional[RelayPair]: 成功时返回中继连接对，失败时返回 None
        """
        try:
            await self._await_greeting()
            await self._await_request()
            await self._resolve()
            await self._dial()
            return await self._reply()
        except Socks5Error as e:
            self.failure = e
            self.transition(State.FAILED)
            logger.warning(f"{self.peer}: 协商失败 ({type(e).__name__}): {e}")
            await self._close()
            return None
        except asyncio.CancelledError:
            self.transition(State.FAILED)
            await self._close()
            raise

    # ------------------------------------------------------------------
    # 各状态处理
    # ------------------------------------------------------------------

    async def _await_greeting(self):
        header = await self._read_exactly(GREETING_HEADER_SIZE)
        nmethods = decode_greeting_header(header)
        methods = await self._read_exactly(nmethods)
        greeting, _ = decode_greeting(header + methods)

        if not greeting.offers(METHOD_NO_AUTH):
            raise NoAcceptableMethod(
                f"仅实现了 '无需认证' 方法，客户端提供: {list(greeting.methods)}")

        self.transition(State.AWAIT_METHOD_ACK)
        await self._write(encode_method_selection(MethodSelection(METHOD_NO_AUTH)))
        self.transition(State.AWAIT_REQUEST)

    async def _await_request(self):
        header = await self._read_exactly(REQUEST_HEADER_SIZE)
        try:
            _, atyp = decode_request_header(header)
        except (UnsupportedCommand, UnsupportedAddressType) as e:
            await self._send_reply(ConnectReply.abbreviated(e.reply_code))
            raise

        if atyp == ATYP_DOMAIN:
            length = await self._read_exactly(1)
            header += length
            remainder = await self._read_exactly(request_remainder_length(atyp, length[0]))
        else:
            remainder = await self._read_exactly(request_remainder_length(atyp))

        self.request, _ = decode_connect_request(header + remainder)
        logger.debug(f"{self.peer}: 请求地址 {self.request.host}:{self.request.port}")
        self.transition(State.RESOLVING)

    async def _resolve(self):
        request = self.request
        try:
            self.target = await self.resolver.resolve(request.atyp, request.address, request.port)
        except ResolutionError:
            await self._send_reply(ConnectReply.failure())
            raise
        logger.info(f"{self.peer}: 请求地址: {self.target}")
        self.transition(State.DIALING)

    async def _dial(self):
        target = self.target
        try:
            self.upstream_reader, self.upstream_writer = await asyncio.wait_for(
                self.opener(target.host, target.port, family=target.family),
                timeout=self.connect_timeout
            )
        except (OSError, asyncio.TimeoutError) as e:
            await self._send_reply(ConnectReply.failure())
            raise DialError(f"连接 {target} 失败: {str(e) or type(e).__name__}") from e
        self.transition(State.REPLYING)

    async def _reply(self) -> RelayPair:
        sockname = self.upstream_writer.get_extra_info('sockname')
        await self._write(encode_connect_reply(ConnectReply.success(sockname[0], sockname[1])))
        self.transition(State.DONE)
        return RelayPair(
            client_reader=self.reader,
            client_writer=self.writer,
            upstream_reader=self.upstream_reader,
            upstream_writer=self.upstream_writer,
            peer=self.peer,
            target=str(self.target),
        )

    # ------------------------------------------------------------------
    # I/O 辅助方法
    # ------------------------------------------------------------------

    async def _read_exactly(self, size: int) -> bytes:
        """精确读取 size 字节，连接断开或数据不足时抛出 TransportError"""
        try:
            return await self.reader.readexactly(size)
        except asyncio.IncompleteReadError as e:
            raise TransportError(f"连接提前关闭: 需要 {size} 字节，实际 {len(e.partial)} 字节")
        except (ConnectionError, OSError) as e:
            raise TransportError(f"读取失败: {e}")

    async def _write(self, frame: bytes):
        try:
            self.writer.write(frame)
            await self.writer.drain()
        except (ConnectionError, OSError) as e:
            raise TransportError(f"写入失败: {e}")

    async def _send_reply(self, reply: ConnectReply):
        """发送错误应答；写入失败不覆盖原来的错误"""
        try:
            await self._write(encode_connect_reply(reply))
        except TransportError as e:
            logger.debug(f"{self.peer}: 发送应答 0x{reply.code:02X} 失败: {e}")

    async def _close(self):
        await close_writer(self.upstream_writer)
        await close_writer(self.writer)
