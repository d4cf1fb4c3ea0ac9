"""
SOCKS5 代理 - 核心协议模块
定义 SOCKS5 线路协议的常量、标签枚举和帧编解码函数。

功能概述:
本模块是无状态的线路编解码层，所有读取函数都作用于 asyncio.StreamReader，
所有编码函数都返回完整的字节帧。会话状态机（session.py）通过本模块完成
每一次成帧的交换。

主要功能:
1. 协议常量定义 - 版本号、保留字节、认证子协商版本
2. 标签枚举 - 认证方法、命令、地址类型、应答状态，均提供完整的字节映射
3. 变长字段读取 - 长度前缀字段、计数前缀字段
4. 地址读取 - IPv4 / IPv6 / 域名 + 端口
5. 应答编码 - 方法协商应答、认证应答、命令应答

帧格式:
    问候:        VER(1) | NMETHODS(1) | METHODS(NMETHODS)
    问候应答:    VER(1) | METHOD(1)
    认证:        AVER(1) | ULEN(1) | UNAME(ULEN) | PLEN(1) | PASSWD(PLEN)
    认证应答:    AVER(1) | STATUS(1)
    命令请求:    VER(1) | CMD(1) | RSV(1) | ATYP(1) | DST.ADDR | DST.PORT(2)
    命令应答:    VER(1) | REP(1) | RSV(1) | ATYP(1)=01 | BND.ADDR(4)=0 | BND.PORT(2)=0

所有多字节字段使用大端序（网络字节序）。
"""

import asyncio
import ipaddress
import logging
import socket
import struct
from dataclasses import dataclass
from enum import IntEnum

from .errors import EmptyField, FramingViolation, TransportIOError

logger = logging.getLogger('socks5-relay-protocol')


# ============================================================================
# 协议常量
# ============================================================================

SOCKS_VERSION = 0x05
RESERVED = 0x00
PORT_SIZE = 2
IPV4_SIZE = 4
IPV6_SIZE = 16


# ============================================================================
# 标签枚举
# ============================================================================

class Method(IntEnum):
    """
    认证方法

    ERROR 表示"没有可接受的方法"，发送该应答后会话总是终止。
    """
    NO_AUTH = 0x00
    PASSWD = 0x02
    ERROR = 0xFF

    @classmethod
    def from_byte(cls, value: int) -> 'Method':
        if value == cls.NO_AUTH:
            return cls.NO_AUTH
        if value == cls.PASSWD:
            return cls.PASSWD
        return cls.ERROR


class Command(IntEnum):
    """
    客户端命令

    仅支持 CONNECT；UNSUPPORTED 不是线路值，代表所有其他命令字节。
    """
    CONNECT = 0x01
    UNSUPPORTED = -1

    @classmethod
    def from_byte(cls, value: int) -> 'Command':
        if value == cls.CONNECT:
            return cls.CONNECT
        return cls.UNSUPPORTED


class AddrType(IntEnum):
    """目标地址类型，UNSUPPORTED 代表所有未知的 ATYP 字节"""
    IPV4 = 0x01
    DOMAIN = 0x03
    IPV6 = 0x04
    UNSUPPORTED = -1

    @classmethod
    def from_byte(cls, value: int) -> 'AddrType':
        for member in (cls.IPV4, cls.DOMAIN, cls.IPV6):
            if value == member:
                return member
        return cls.UNSUPPORTED


class ReplyStatus(IntEnum):
    """命令应答状态（REP 字段）"""
    SUCCEEDED = 0x00
    RULESET_NOT_ALLOWED = 0x02
    CONNECTION_REFUSED = 0x05
    COMMAND_UNSUPPORTED = 0x07
    ADDR_TYPE_UNSUPPORTED = 0x08


class AuthStatus(IntEnum):
    """用户名/密码子协商应答状态"""
    SUCCESS = 0x00
    FAILURE = 0xFF


# ============================================================================
# 目标地址
# ============================================================================

@dataclass
class AddressSpec:
    """
    客户端请求的目标地址

    Attributes:
        addr_type: 地址类型
        host: 原始地址字节（IPv4 为 4 字节，IPv6 为 16 字节，域名为名称字节）
        port: 目标端口
        raw_type: 线路上收到的 ATYP 字节（用于记录不支持的类型）
    """
    addr_type: AddrType
    host: bytes = b''
    port: int = 0
    raw_type: int = 0

    @classmethod
    def unsupported(cls, raw_type: int) -> 'AddressSpec':
        return cls(AddrType.UNSUPPORTED, raw_type=raw_type)

    @property
    def is_supported(self) -> bool:
        return self.addr_type != AddrType.UNSUPPORTED

    @property
    def host_str(self) -> str:
        """返回可读的主机表示（IP 字面量或域名）"""
        if self.addr_type == AddrType.IPV4:
            return str(ipaddress.IPv4Address(self.host))
        if self.addr_type == AddrType.IPV6:
            return str(ipaddress.IPv6Address(self.host))
        if self.addr_type == AddrType.DOMAIN:
            return self.host.decode('utf-8', errors='replace')
        return f"<atyp 0x{self.raw_type:02x}>"

    def display(self) -> str:
        if self.addr_type == AddrType.IPV6:
            return f"[{self.host_str}]:{self.port}"
        return f"{self.host_str}:{self.port}"

    def encode(self) -> bytes:
        """
        编码为 ATYP | ADDR | PORT

        Raises:
            ValueError: 地址类型不支持或域名长度非法
        """
        if self.addr_type in (AddrType.IPV4, AddrType.IPV6):
            return bytes([self.addr_type]) + self.host + pack_u16(self.port)
        if self.addr_type == AddrType.DOMAIN:
            if not 0 < len(self.host) <= 255:
                raise ValueError(f"域名长度非法: {len(self.host)}")
            return bytes([self.addr_type, len(self.host)]) + self.host + pack_u16(self.port)
        raise ValueError("无法编码不支持的地址类型")


# ============================================================================
# 基础读写函数
# ============================================================================

def pack_u16(value: int) -> bytes:
    """打包大端 16 位无符号整数"""
    return struct.pack('>H', value)


def unpack_u16(data: bytes) -> int:
    """解包大端 16 位无符号整数"""
    return struct.unpack('>H', data)[0]


async def read_exact(reader: asyncio.StreamReader, n: int) -> bytes:
    """
    精确读取 n 个字节

    Raises:
        FramingViolation: 连接在帧结束前关闭（截断的帧）
        TransportIOError: 读取时连接被重置或出现其他 I/O 错误
    """
    try:
        return await reader.readexactly(n)
    except asyncio.IncompleteReadError as e:
        raise FramingViolation(f"帧被截断: 需要 {n} 字节，实际收到 {len(e.partial)} 字节") from e
    except (ConnectionResetError, BrokenPipeError, OSError) as e:
        raise TransportIOError(f"读取失败: {e}") from e


async def read_u8(reader: asyncio.StreamReader) -> int:
    return (await read_exact(reader, 1))[0]


async def read_u16(reader: asyncio.StreamReader) -> int:
    return unpack_u16(await read_exact(reader, PORT_SIZE))


async def read_length_prefixed(reader: asyncio.StreamReader) -> bytes:
    """
    读取长度前缀字段: LEN(1) | DATA(LEN)

    长度为 0 属于帧格式错误而不是空值，由调用者决定发送何种应答。

    Raises:
        EmptyField: 声明的长度为 0
    """
    length = await read_u8(reader)
    if length == 0:
        raise EmptyField("变长字段长度为 0")
    return await read_exact(reader, length)


async def read_count_prefixed(reader: asyncio.StreamReader, count: int) -> bytes:
    """
    读取计数前缀的方法列表

    计数字节已由调用者读取。计数为 0 不是帧格式错误，只返回空列表。
    """
    if count == 0:
        return b''
    return await read_exact(reader, count)


async def read_address(reader: asyncio.StreamReader) -> AddressSpec:
    """
    读取目标地址: ATYP(1) | ADDR | PORT(2)

    对于未知的地址类型立即返回 UNSUPPORTED，不再读取后续字节。
    """
    raw_type = await read_u8(reader)
    addr_type = AddrType.from_byte(raw_type)

    if addr_type == AddrType.IPV4:
        host = await read_exact(reader, IPV4_SIZE)
    elif addr_type == AddrType.IPV6:
        host = await read_exact(reader, IPV6_SIZE)
    elif addr_type == AddrType.DOMAIN:
        host = await read_length_prefixed(reader)
    else:
        logger.debug(f"不支持的地址类型: 0x{raw_type:02x}")
        return AddressSpec.unsupported(raw_type)

    port = await read_u16(reader)
    return AddressSpec(addr_type=addr_type, host=host, port=port, raw_type=raw_type)


# ============================================================================
# 应答编码
# ============================================================================

def encode_method_reply(version: int, method: Method) -> bytes:
    """问候应答: VER | METHOD"""
    return pack_u16((version << 8) | int(method))


def encode_auth_reply(auth_version: int, status: AuthStatus) -> bytes:
    """认证应答: AVER | STATUS"""
    return pack_u16((auth_version << 8) | int(status))


def encode_reply(version: int, status: ReplyStatus,
                 bind_addr: str = '0.0.0.0', bind_port: int = 0) -> bytes:
    """
    命令应答，固定 10 字节

    绑定地址始终为 IPv4 格式。本代理不披露实际的绑定地址，
    调用者使用默认值 0.0.0.0:0。

    Returns:
        bytes: VER | REP | RSV | ATYP=01 | BND.ADDR(4) | BND.PORT(2)
    """
    return (struct.pack('>BBBB', version, int(status), RESERVED, AddrType.IPV4)
            + socket.inet_aton(bind_addr)
            + pack_u16(bind_port))
