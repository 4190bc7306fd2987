"""
地址解析模块

将 CONNECT 请求中的地址类型和地址字节转换为具体的 IP 地址和端口。
IPv4/IPv6 地址直接由原始字节构造；域名通过事件循环的 getaddrinfo
进行正向 DNS 查询，取第一个返回的地址。
"""

import asyncio
import socket
import ipaddress
import logging
from dataclasses import dataclass
from typing import List, Tuple

from protocol import ATYP_IPV4, ATYP_DOMAIN, ATYP_IPV6, ResolutionError, UnsupportedAddressType

logger = logging.getLogger('socks5-relay-resolver')


@dataclass
class ResolvedTarget:
    """
    解析后的目标地址

    Attributes:
        host: IP 地址字符串
        port: 目标端口
        atyp: 地址族对应的 SOCKS5 地址类型（ATYP_IPV4 或 ATYP_IPV6）
    """
    host: str
    port: int
    atyp: int

    @property
    def family(self) -> int:
        return socket.AF_INET6 if self.atyp == ATYP_IPV6 else socket.AF_INET

    def __str__(self):
        if self.atyp == ATYP_IPV6:
            return f"[{self.host}]:{self.port}"
        return f"{self.host}:{self.port}"


class Resolver:
    """
    地址解析器

    lookup() 是唯一依赖 DNS 的方法，测试时可以替换。
    """

    async def lookup(self, host: str, port: int) -> List[Tuple[int, str]]:
        """
        正向 DNS 查询

        Returns:
            List[Tuple[int, str]]: (地址族, IP 地址) 列表，保持解析器返回的顺序
        """
        loop = asyncio.get_running_loop()
        infos = await loop.getaddrinfo(host, port, type=socket.SOCK_STREAM)
        return [(family, sockaddr[0]) for family, _, _, _, sockaddr in infos]

    async def resolve(self, atyp: int, address: bytes, port: int) -> ResolvedTarget:
        """
        解析目标地址

        Args:
            atyp: 地址类型
            address: 原始地址字节（域名不含长度前缀）
            port: 目标端口

        Returns:
            ResolvedTarget: 解析结果

        Raises:
            ResolutionError: 域名无法解码、查询失败或没有返回地址
        """
        if atyp == ATYP_IPV4:
            return ResolvedTarget(str(ipaddress.IPv4Address(address)), port, ATYP_IPV4)
        if atyp == ATYP_IPV6:
            return ResolvedTarget(str(ipaddress.IPv6Address(address)), port, ATYP_IPV6)
        if atyp != ATYP_DOMAIN:
            raise UnsupportedAddressType(atyp)

        try:
            host = address.decode('idna')
        except UnicodeError as e:
            raise ResolutionError(f"无法解码主机名 {address!r}: {e}")

        logger.debug(f"解析域名: {host}")
        try:
            addresses = await self.lookup(host, port)
        except (OSError, UnicodeError) as e:
            raise ResolutionError(f"解析主机 '{host}' 失败: {e}")

        if not addresses:
            raise ResolutionError(f"主机 '{host}' 没有对应的 IP 地址")

        family, ip = addresses[0]
        atyp = ATYP_IPV6 if family == socket.AF_INET6 else ATYP_IPV4
        logger.debug(f"域名 {host} 解析为 {ip} (共 {len(addresses)} 个地址)")
        return ResolvedTarget(ip, port, atyp)
