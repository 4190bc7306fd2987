#!/usr/bin/env python3
"""
测试 SOCKS5 协商状态机

每个测试在回环地址上启动一个只运行协商的服务端，用真实的 TCP
连接扮演 SOCKS5 客户端。

测试内容:
1. 问候阶段的失败（版本号、方法列表）
2. 请求阶段的简略应答（0x07 / 0x08）
3. 解析失败和连接失败的 8 字节应答
4. 成功应答中的绑定地址
"""

import asyncio
import socket
import struct

import pytest

from negotiation import Negotiation, State
from protocol import (
    NoAcceptableMethod, ProtocolError, TransportError, UnsupportedCommand,
    UnsupportedAddressType, ResolutionError, DialError,
)
from resolver import Resolver

FAILURE_FRAME = b'\x05\x05\x00\x00\x00\x00\x00\x00'


class StubResolver(Resolver):
    """把所有域名解析到固定地址，answers 为空时模拟解析失败"""

    def __init__(self, answers):
        self.answers = answers

    async def lookup(self, host, port):
        return list(self.answers)


class NegotiationHarness:
    """在回环地址上运行协商状态机并收集结果"""

    def __init__(self, resolver=None, opener=asyncio.open_connection, connect_timeout=2.0):
        self.resolver = resolver
        self.opener = opener
        self.connect_timeout = connect_timeout
        self.results = asyncio.Queue()
        self.server = None

    async def __aenter__(self):
        self.server = await asyncio.start_server(self._handle, '127.0.0.1', 0)
        self.port = self.server.sockets[0].getsockname()[1]
        return self

    async def __aexit__(self, *exc):
        self.server.close()
        await self.server.wait_closed()

    async def _handle(self, reader, writer):
        negotiation = Negotiation(reader, writer, self.resolver,
                                  connect_timeout=self.connect_timeout, opener=self.opener)
        pair = await negotiation.run()
        await self.results.put((negotiation, pair))

    async def connect(self):
        return await asyncio.open_connection('127.0.0.1', self.port)

    async def result(self):
        return await asyncio.wait_for(self.results.get(), timeout=5.0)


async def start_echo_server():
    async def echo(reader, writer):
        try:
            while True:
                data = await reader.read(4096)
                if not data:
                    break
                writer.write(data)
                await writer.drain()
        finally:
            writer.close()

    server = await asyncio.start_server(echo, '127.0.0.1', 0)
    return server, server.sockets[0].getsockname()[1]


def closed_port() -> int:
    """返回一个当前没有监听的本地端口"""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(('127.0.0.1', 0))
    port = sock.getsockname()[1]
    sock.close()
    return port


async def read_all(reader) -> bytes:
    return await asyncio.wait_for(reader.read(), timeout=5.0)


def ipv4_connect(host: str, port: int) -> bytes:
    return b'\x05\x01\x00\x01' + socket.inet_aton(host) + struct.pack('>H', port)


def domain_connect(name: bytes, port: int) -> bytes:
    return b'\x05\x01\x00\x03' + bytes([len(name)]) + name + struct.pack('>H', port)


# ============================================================================
# 问候阶段
# ============================================================================

async def test_greeting_without_no_auth_closes_silently():
    async with NegotiationHarness() as harness:
        reader, writer = await harness.connect()
        writer.write(b'\x05\x02\x01\x02')
        await writer.drain()

        assert await read_all(reader) == b''
        negotiation, pair = await harness.result()
        assert pair is None
        assert negotiation.is_state(State.FAILED)
        assert isinstance(negotiation.failure, NoAcceptableMethod)
        writer.close()


async def test_greeting_wrong_version():
    async with NegotiationHarness() as harness:
        reader, writer = await harness.connect()
        writer.write(b'\x04\x01\x00')
        await writer.drain()

        assert await read_all(reader) == b''
        negotiation, _ = await harness.result()
        assert type(negotiation.failure) is ProtocolError
        writer.close()


async def test_greeting_truncated():
    async with NegotiationHarness() as harness:
        reader, writer = await harness.connect()
        writer.write(b'\x05\x03\x00')
        writer.write_eof()

        assert await read_all(reader) == b''
        negotiation, _ = await harness.result()
        assert isinstance(negotiation.failure, TransportError)
        writer.close()


# ============================================================================
# 请求阶段
# ============================================================================

async def test_unsupported_command_gets_abbreviated_reply():
    async with NegotiationHarness() as harness:
        reader, writer = await harness.connect()
        writer.write(b'\x05\x01\x00' + b'\x05\x02\x00\x01')
        await writer.drain()

        assert await read_all(reader) == b'\x05\x00' + b'\x05\x07\x00\x00'
        negotiation, _ = await harness.result()
        assert isinstance(negotiation.failure, UnsupportedCommand)
        writer.close()


async def test_unsupported_address_type_gets_abbreviated_reply():
    async with NegotiationHarness() as harness:
        reader, writer = await harness.connect()
        writer.write(b'\x05\x01\x00' + b'\x05\x01\x00\x02')
        await writer.drain()

        assert await read_all(reader) == b'\x05\x00' + b'\x05\x08\x00\x00'
        negotiation, _ = await harness.result()
        assert isinstance(negotiation.failure, UnsupportedAddressType)
        writer.close()


async def test_reserved_byte_closes_without_reply():
    async with NegotiationHarness() as harness:
        reader, writer = await harness.connect()
        writer.write(b'\x05\x01\x00' + b'\x05\x02\x07\x09')
        await writer.drain()

        assert await read_all(reader) == b'\x05\x00'
        negotiation, _ = await harness.result()
        assert type(negotiation.failure) is ProtocolError
        writer.close()


async def test_truncated_domain_request():
    async with NegotiationHarness(resolver=StubResolver([(socket.AF_INET, '127.0.0.1')])) as harness:
        reader, writer = await harness.connect()
        writer.write(b'\x05\x01\x00' + b'\x05\x01\x00\x03\x0aabc')
        writer.write_eof()

        assert await read_all(reader) == b'\x05\x00'
        negotiation, _ = await harness.result()
        assert isinstance(negotiation.failure, TransportError)
        assert negotiation.is_state(State.FAILED)
        writer.close()


# ============================================================================
# 解析和连接阶段
# ============================================================================

async def test_connect_to_unreachable_address():
    async with NegotiationHarness() as harness:
        reader, writer = await harness.connect()
        writer.write(b'\x05\x01\x00' + ipv4_connect('127.0.0.1', closed_port()))
        await writer.drain()

        assert await read_all(reader) == b'\x05\x00' + FAILURE_FRAME
        negotiation, pair = await harness.result()
        assert pair is None
        assert isinstance(negotiation.failure, DialError)
        writer.close()


async def test_resolution_failure_sends_failure_reply():
    async with NegotiationHarness(resolver=StubResolver([])) as harness:
        reader, writer = await harness.connect()
        writer.write(b'\x05\x01\x00' + domain_connect(b'nowhere.invalid', 80))
        await writer.drain()

        assert await read_all(reader) == b'\x05\x00' + FAILURE_FRAME
        negotiation, _ = await harness.result()
        assert isinstance(negotiation.failure, ResolutionError)
        writer.close()


async def test_dial_timeout():
    async def never_connects(host, port, **kwargs):
        await asyncio.sleep(60)

    async with NegotiationHarness(opener=never_connects, connect_timeout=0.1) as harness:
        reader, writer = await harness.connect()
        writer.write(b'\x05\x01\x00' + ipv4_connect('192.0.2.1', 80))
        await writer.drain()

        assert await read_all(reader) == b'\x05\x00' + FAILURE_FRAME
        negotiation, _ = await harness.result()
        assert isinstance(negotiation.failure, DialError)
        writer.close()


# ============================================================================
# 成功路径
# ============================================================================

@pytest.mark.parametrize('use_domain', [False, True])
async def test_successful_connect(use_domain):
    echo_server, echo_port = await start_echo_server()
    resolver = StubResolver([(socket.AF_INET, '127.0.0.1')])
    try:
        async with NegotiationHarness(resolver=resolver) as harness:
            reader, writer = await harness.connect()
            if use_domain:
                request = domain_connect(b'echo.test', echo_port)
            else:
                request = ipv4_connect('127.0.0.1', echo_port)
            writer.write(b'\x05\x01\x00' + request)
            await writer.drain()

            assert await asyncio.wait_for(reader.readexactly(2), 5.0) == b'\x05\x00'
            reply = await asyncio.wait_for(reader.readexactly(10), 5.0)
            assert reply[:4] == b'\x05\x00\x00\x01'
            bound_port = struct.unpack('>H', reply[8:10])[0]
            assert bound_port != 0

            negotiation, pair = await harness.result()
            assert negotiation.is_state(State.DONE)
            assert negotiation.failure is None
            assert pair is not None
            assert pair.upstream_writer.get_extra_info('sockname')[1] == bound_port
            assert pair.target == f'127.0.0.1:{echo_port}'

            pair.upstream_writer.close()
            pair.client_writer.close()
            writer.close()
    finally:
        echo_server.close()
        await echo_server.wait_closed()
