"""
连接管理模块 - 目标地址解析和出站连接

此模块把客户端请求的 AddressSpec 解析为一个或多个具体的套接字地址，
并按解析结果的顺序尝试建立到目标主机的 TCP 连接。
"""

import asyncio
import socket
import logging
from typing import Awaitable, Callable, List, Optional, Tuple

from protocol import AddrType, AddressSpec, UpstreamUnreachable

logger = logging.getLogger(__name__)

Candidate = Tuple[int, Tuple]
Connector = Callable[[AddressSpec, Optional[float]],
                     Awaitable[Tuple[asyncio.StreamReader, asyncio.StreamWriter]]]


async def resolve(spec: AddressSpec) -> List[Candidate]:
    """
    将目标地址解析为候选套接字地址列表

    IPv4 / IPv6 地址直接使用；域名通过事件循环的 getaddrinfo 做真正的
    名称解析（不要求域名本身是数字地址字面量）。

    Args:
        spec: 客户端请求的目标地址

    Returns:
        List[Tuple[int, tuple]]: (地址族, 套接字地址) 列表，保持解析器返回的顺序

    Raises:
        UpstreamUnreachable: 地址类型不支持、域名无法解码或解析失败
    """
    if spec.addr_type == AddrType.IPV4:
        return [(socket.AF_INET, (spec.host_str, spec.port))]
    if spec.addr_type == AddrType.IPV6:
        return [(socket.AF_INET6, (spec.host_str, spec.port, 0, 0))]
    if spec.addr_type != AddrType.DOMAIN:
        raise UpstreamUnreachable(f"无法解析地址类型 0x{spec.raw_type:02x}")

    try:
        name = spec.host.decode('utf-8')
    except UnicodeDecodeError as e:
        raise UpstreamUnreachable(f"域名不是有效的 UTF-8: {spec.host!r}") from e

    loop = asyncio.get_running_loop()
    try:
        infos = await loop.getaddrinfo(name, spec.port, type=socket.SOCK_STREAM)
    except (socket.gaierror, UnicodeError, ValueError, OSError) as e:
        raise UpstreamUnreachable(f"域名解析失败 {name}: {e}") from e

    candidates = []
    for family, _, _, _, sockaddr in infos:
        candidate = (family, sockaddr)
        if candidate not in candidates:
            candidates.append(candidate)

    if not candidates:
        raise UpstreamUnreachable(f"域名没有可用地址: {name}")

    logger.debug(f"解析 {name} -> {[c[1][0] for c in candidates]}")
    return candidates


async def connect_to_target(
    spec: AddressSpec,
    timeout: Optional[float] = None
) -> Tuple[asyncio.StreamReader, asyncio.StreamWriter]:
    """
    建立到目标主机的 TCP 连接

    依次尝试解析得到的每个候选地址，第一个成功的连接即被返回。
    不做解析结果之外的任何回退。

    Args:
        spec: 客户端请求的目标地址
        timeout: 单个候选地址的连接超时（秒），None 表示不限制

    Returns:
        tuple: (reader, writer)

    Raises:
        UpstreamUnreachable: 所有候选地址都连接失败（拒绝、超时或解析失败）
    """
    candidates = await resolve(spec)
    last_error = None

    for family, sockaddr in candidates:
        host, port = sockaddr[0], sockaddr[1]
        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_connection(host, port, family=family),
                timeout=timeout
            )
            logger.debug(f"已连接目标 {spec.display()} via {host}:{port}")
            return reader, writer
        except (OSError, asyncio.TimeoutError) as e:
            last_error = e
            logger.debug(f"连接候选地址失败 {host}:{port}: {e!r}")

    raise UpstreamUnreachable(f"无法连接 {spec.display()}: {last_error!r}")
