#!/usr/bin/env python3
"""
测试地址解析

域名查询通过替换 lookup() 完成，不依赖真实 DNS。
"""

import socket

import pytest

from protocol import ATYP_IPV4, ATYP_DOMAIN, ATYP_IPV6, ResolutionError
from resolver import Resolver


class StubResolver(Resolver):
    """返回固定结果的解析器"""

    def __init__(self, answers=None, error=None):
        self.answers = answers or []
        self.error = error
        self.queries = []

    async def lookup(self, host, port):
        self.queries.append((host, port))
        if self.error:
            raise self.error
        return list(self.answers)


async def test_ipv4_without_lookup():
    resolver = StubResolver(error=AssertionError("不应该查询 DNS"))
    target = await resolver.resolve(ATYP_IPV4, bytes([192, 168, 1, 10]), 80)
    assert target.host == '192.168.1.10'
    assert target.port == 80
    assert target.atyp == ATYP_IPV4
    assert target.family == socket.AF_INET
    assert str(target) == '192.168.1.10:80'


async def test_ipv6_without_lookup():
    resolver = StubResolver(error=AssertionError("不应该查询 DNS"))
    packed = socket.inet_pton(socket.AF_INET6, 'fe80::1')
    target = await resolver.resolve(ATYP_IPV6, packed, 443)
    assert target.host == 'fe80::1'
    assert target.atyp == ATYP_IPV6
    assert target.family == socket.AF_INET6
    assert str(target) == '[fe80::1]:443'


async def test_domain_uses_first_address():
    resolver = StubResolver(answers=[
        (socket.AF_INET6, '2001:db8::5'),
        (socket.AF_INET, '203.0.113.7'),
    ])
    target = await resolver.resolve(ATYP_DOMAIN, b'example.com', 8443)
    assert resolver.queries == [('example.com', 8443)]
    assert target.host == '2001:db8::5'
    assert target.atyp == ATYP_IPV6
    assert target.port == 8443


async def test_domain_ipv4_family():
    resolver = StubResolver(answers=[(socket.AF_INET, '203.0.113.7')])
    target = await resolver.resolve(ATYP_DOMAIN, b'example.org', 80)
    assert target.atyp == ATYP_IPV4


async def test_domain_without_addresses():
    resolver = StubResolver(answers=[])
    with pytest.raises(ResolutionError):
        await resolver.resolve(ATYP_DOMAIN, b'nothing.invalid', 80)


async def test_domain_lookup_error():
    resolver = StubResolver(error=socket.gaierror(socket.EAI_NONAME, 'Name or service not known'))
    with pytest.raises(ResolutionError) as info:
        await resolver.resolve(ATYP_DOMAIN, b'missing.invalid', 80)
    assert 'missing.invalid' in str(info.value)


async def test_undecodable_domain():
    resolver = StubResolver(answers=[(socket.AF_INET, '127.0.0.1')])
    with pytest.raises(ResolutionError):
        await resolver.resolve(ATYP_DOMAIN, b'\xff\xfe', 80)
    assert resolver.queries == []
