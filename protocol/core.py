"""
SOCKS5 中继 - 核心协议模块
定义 SOCKS5 协议的常量、应答码、帧结构和编解码函数。

版本: 1.0.0

功能概述:
本模块只处理字节缓冲区，不做任何 I/O。协商状态机负责按帧长度
精确读取数据，再交给这里的函数解析；应答帧也在这里编码。

帧格式（RFC 1928）:

问候帧:
┌─────────┬────────────┬──────────────────┐
│ VER     │ NMETHODS   │ METHODS          │
│ 1 字节  │  1 字节    │  1-255 字节      │
└─────────┴────────────┴──────────────────┘

请求帧:
┌─────────┬─────────┬─────────┬─────────┬────────────┬────────────┐
│ VER     │ CMD     │ RSV     │ ATYP    │ DST.ADDR   │ DST.PORT   │
│ 1 字节  │ 1 字节  │ 0x00    │ 1 字节  │ 可变长度   │ 2 字节     │
└─────────┴─────────┴─────────┴─────────┴────────────┴────────────┘

应答帧:
┌─────────┬─────────┬─────────┬─────────┬────────────┬────────────┐
│ VER     │ REP     │ RSV     │ ATYP    │ BND.ADDR   │ BND.PORT   │
└─────────┴─────────┴─────────┴─────────┴────────────┴────────────┘

所有多字节字段使用大端序（网络字节序）。
"""

import struct
import socket
import logging
from enum import IntEnum
from typing import Tuple, Optional
from dataclasses import dataclass

logger = logging.getLogger('socks5-relay-protocol')


# ============================================================================
# 协议常量
# ============================================================================

SOCKS_VERSION = 0x05
RESERVED = 0x00

METHOD_NO_AUTH = 0x00
METHOD_NO_ACCEPTABLE = 0xFF

CMD_CONNECT = 0x01
CMD_BIND = 0x02
CMD_UDP_ASSOCIATE = 0x03

ATYP_UNSPECIFIED = 0x00  # 失败应答中尚无绑定地址时使用
ATYP_IPV4 = 0x01
ATYP_DOMAIN = 0x03
ATYP_IPV6 = 0x04

GREETING_HEADER_SIZE = 2
REQUEST_HEADER_SIZE = 4
PORT_SIZE = 2

# 各地址类型的固定地址长度（域名为变长，单独处理）
ADDRESS_SIZES = {
    ATYP_IPV4: 4,
    ATYP_IPV6: 16,
}


class ReplyCode(IntEnum):
    """
    SOCKS5 应答码（RFC 1928 第 6 节）
    """
    SUCCEEDED = 0x00
    GENERAL_FAILURE = 0x01
    NOT_ALLOWED_BY_RULESET = 0x02
    NETWORK_UNREACHABLE = 0x03
    HOST_UNREACHABLE = 0x04
    CONNECTION_REFUSED = 0x05
    TTL_EXPIRED = 0x06
    COMMAND_NOT_SUPPORTED = 0x07
    ADDRESS_TYPE_NOT_SUPPORTED = 0x08


# 拨号或解析失败时发送的应答码
FAILURE_REPLY_CODE = ReplyCode.CONNECTION_REFUSED


# ============================================================================
# 异常
# ============================================================================

class Socks5Error(Exception):
    """所有 SOCKS5 中继错误的基类"""

    # 需要向客户端发送应答时的应答码，None 表示直接关闭连接
    reply_code: Optional[ReplyCode] = None


class TransportError(Socks5Error):
    """套接字读写失败或数据不足"""


class ProtocolError(Socks5Error):
    """固定格式字段非法（版本号、保留字节、方法数量等）"""


class NoAcceptableMethod(ProtocolError):
    """客户端没有提供 '无需认证' 方法"""


class UnsupportedAddressType(ProtocolError):
    """无法识别的地址类型"""

    reply_code = ReplyCode.ADDRESS_TYPE_NOT_SUPPORTED

    def __init__(self, atyp: int):
        super().__init__(f"不支持的地址类型: 0x{atyp:02X}")
        self.atyp = atyp


class UnsupportedCommand(Socks5Error):
    """请求格式正确，但命令不是 CONNECT"""

    reply_code = ReplyCode.COMMAND_NOT_SUPPORTED

    def __init__(self, command: int):
        super().__init__(f"不支持的命令: 0x{command:02X}")
        self.command = command


class ResolutionError(Socks5Error):
    """域名解析失败或没有返回地址"""

    reply_code = FAILURE_REPLY_CODE


class DialError(Socks5Error):
    """无法连接到目标主机"""

    reply_code = FAILURE_REPLY_CODE


# ============================================================================
# 帧结构
# ============================================================================

@dataclass
class Greeting:
    """
    客户端问候帧

    Attributes:
        version: 协议版本，必须为 5
        methods: 客户端提供的认证方法列表（按客户端给出的顺序）
    """
    version: int
    methods: Tuple[int, ...]

    def offers(self, method: int) -> bool:
        """检查客户端是否提供了指定的认证方法"""
        return method in self.methods


@dataclass
class MethodSelection:
    """服务器选择的认证方法"""
    method: int
    version: int = SOCKS_VERSION


@dataclass
class ConnectRequest:
    """
    CONNECT 请求帧

    Attributes:
        command: 命令码
        atyp: 地址类型
        address: 原始地址字节（域名不含长度前缀）
        port: 目标端口
        version: 协议版本
    """
    command: int
    atyp: int
    address: bytes
    port: int
    version: int = SOCKS_VERSION

    @property
    def host(self) -> str:
        """便于日志输出的主机字符串"""
        if self.atyp == ATYP_IPV4:
            return socket.inet_ntop(socket.AF_INET, self.address)
        if self.atyp == ATYP_IPV6:
            return socket.inet_ntop(socket.AF_INET6, self.address)
        return self.address.decode('utf-8', errors='replace')


@dataclass
class ConnectReply:
    """
    CONNECT 应答帧

    bind_address 保存已打包的地址字节；bind_port 为 None 时省略
    地址和端口，得到 4 字节的简略应答。

    Attributes:
        code: 应答码
        atyp: 绑定地址类型
        bind_address: 绑定地址（打包后的字节）
        bind_port: 绑定端口
    """
    code: int
    atyp: int = ATYP_UNSPECIFIED
    bind_address: bytes = b''
    bind_port: Optional[int] = None
    version: int = SOCKS_VERSION

    @classmethod
    def success(cls, host: str, port: int) -> 'ConnectReply':
        """根据本地绑定的 IP 和端口创建成功应答"""
        if ':' in host:
            packed = socket.inet_pton(socket.AF_INET6, host.split('%', 1)[0])
            atyp = ATYP_IPV6
        else:
            packed = socket.inet_pton(socket.AF_INET, host)
            atyp = ATYP_IPV4
        return cls(ReplyCode.SUCCEEDED, atyp, packed, port)

    @classmethod
    def abbreviated(cls, code: int) -> 'ConnectReply':
        """创建 4 字节简略应答，用于尚未解析出地址时的拒绝"""
        return cls(code)

    @classmethod
    def failure(cls, code: int = FAILURE_REPLY_CODE) -> 'ConnectReply':
        """创建 8 字节失败应答：地址类型为 0，地址和端口全部填零"""
        return cls(code, ATYP_UNSPECIFIED, b'\x00\x00', 0)


# ============================================================================
# 编解码函数
# ============================================================================

def _require(data: bytes, size: int, what: str):
    """数据不足时抛出 TransportError"""
    if len(data) < size:
        raise TransportError(f"数据不足，无法解析{what}: 需要 {size} 字节，实际 {len(data)} 字节")


def decode_greeting_header(header: bytes) -> int:
    """
    校验 2 字节问候头

    Returns:
        int: 客户端声明的认证方法数量

    Raises:
        ProtocolError: 版本不是 5，或没有提供任何认证方法
        TransportError: 数据不足
    """
    _require(header, GREETING_HEADER_SIZE, "问候头")
    version, nmethods = header[0], header[1]
    if version != SOCKS_VERSION:
        raise ProtocolError(f"仅支持 SOCKS5，收到版本: 0x{version:02X}")
    if nmethods == 0:
        raise ProtocolError("至少需要提供一种认证方法")
    return nmethods


def decode_greeting(data: bytes) -> Tuple[Greeting, bytes]:
    """
    解析问候帧

    Args:
        data: 从客户端读取的字节

    Returns:
        (问候帧, 剩余字节)

    Raises:
        ProtocolError: 版本不是 5，或没有提供任何认证方法
        TransportError: 数据不足
    """
    nmethods = decode_greeting_header(data)
    version = data[0]
    total = GREETING_HEADER_SIZE + nmethods
    _require(data, total, "认证方法列表")
    methods = tuple(data[GREETING_HEADER_SIZE:total])
    return Greeting(version, methods), data[total:]


def encode_greeting(methods) -> bytes:
    """编码问候帧（客户端使用，测试中也会用到）"""
    methods = bytes(methods)
    return struct.pack('>BB', SOCKS_VERSION, len(methods)) + methods


def encode_method_selection(selection: MethodSelection) -> bytes:
    """编码 2 字节的方法选择应答"""
    return struct.pack('>BB', selection.version, selection.method)


def decode_request_header(header: bytes) -> Tuple[int, int]:
    """
    校验请求帧的 4 字节固定头部

    校验顺序: 版本号、保留字节、命令、地址类型。保留字节非零时
    无论其他字段如何都视为协议错误。

    Returns:
        (命令, 地址类型)

    Raises:
        ProtocolError: 版本号或保留字节非法
        UnsupportedCommand: 命令不是 CONNECT
        UnsupportedAddressType: 地址类型无法识别
        TransportError: 数据不足
    """
    _require(header, REQUEST_HEADER_SIZE, "请求头")
    version, command, reserved, atyp = struct.unpack('>BBBB', header[:REQUEST_HEADER_SIZE])
    if version != SOCKS_VERSION:
        raise ProtocolError(f"请求中的版本号与协商时不一致: 0x{version:02X}")
    if reserved != RESERVED:
        raise ProtocolError(f"保留字段必须为 0: 0x{reserved:02X}")
    if command != CMD_CONNECT:
        raise UnsupportedCommand(command)
    if atyp not in (ATYP_IPV4, ATYP_DOMAIN, ATYP_IPV6):
        raise UnsupportedAddressType(atyp)
    return command, atyp


def request_remainder_length(atyp: int, length_byte: Optional[int] = None) -> int:
    """
    计算请求头之后还需读取的字节数

    域名类型需要先读出 1 字节长度，再以 length_byte 传入；
    返回值不包括已经读取的长度字节。
    """
    if atyp == ATYP_DOMAIN:
        if length_byte is None:
            raise ValueError("域名地址需要长度字节")
        return length_byte + PORT_SIZE
    return ADDRESS_SIZES[atyp] + PORT_SIZE


def decode_connect_request(data: bytes) -> Tuple[ConnectRequest, bytes]:
    """
    解析完整的 CONNECT 请求帧

    Returns:
        (请求帧, 剩余字节)

    Raises:
        与 decode_request_header 相同；地址或端口被截断时抛出 TransportError
    """
    command, atyp = decode_request_header(data)
    offset = REQUEST_HEADER_SIZE

    if atyp == ATYP_DOMAIN:
        _require(data, offset + 1, "域名长度")
        addr_len = data[offset]
        offset += 1
    else:
        addr_len = ADDRESS_SIZES[atyp]

    end = offset + addr_len + PORT_SIZE
    _require(data, end, "目标地址")
    address = bytes(data[offset:offset + addr_len])
    port_hi, port_lo = data[end - 2], data[end - 1]
    port = (port_hi << 8) + port_lo
    return ConnectRequest(command, atyp, address, port), data[end:]


def encode_connect_request(request: ConnectRequest) -> bytes:
    """编码 CONNECT 请求帧"""
    header = struct.pack('>BBBB', request.version, request.command, RESERVED, request.atyp)
    if request.atyp == ATYP_DOMAIN:
        header += struct.pack('>B', len(request.address))
    return header + request.address + struct.pack('>H', request.port)


def encode_connect_reply(reply: ConnectReply) -> bytes:
    """
    编码 CONNECT 应答帧

    帧长度取决于绑定地址:
    - IPv4 成功应答 10 字节，IPv6 成功应答 22 字节
    - 简略应答 4 字节（bind_port 为 None）
    - 失败应答 8 字节
    """
    frame = struct.pack('>BBBB', reply.version, reply.code, RESERVED, reply.atyp)
    if reply.bind_port is None:
        return frame
    return frame + reply.bind_address + struct.pack('>H', reply.bind_port)
