"""
SOCKS5 代理协议包

本包提供了 SOCKS5 代理的线路协议定义和实现，包括：
- 协议常量和标签枚举
- 变长字段与地址的读取
- 应答帧编码
- 会话错误分类

使用示例：
    from protocol import read_address, encode_reply, ReplyStatus, SOCKS_VERSION

    spec = await read_address(reader)
    writer.write(encode_reply(SOCKS_VERSION, ReplyStatus.SUCCEEDED))
"""

from .core import (
    # 协议常量
    SOCKS_VERSION,
    RESERVED,

    # 标签枚举
    Method,
    Command,
    AddrType,
    ReplyStatus,
    AuthStatus,

    # 目标地址
    AddressSpec,

    # 读取函数
    pack_u16,
    unpack_u16,
    read_exact,
    read_u8,
    read_u16,
    read_length_prefixed,
    read_count_prefixed,
    read_address,

    # 编码函数
    encode_method_reply,
    encode_auth_reply,
    encode_reply,
)
from .errors import (
    ProxyError,
    FramingViolation,
    EmptyField,
    ProtocolVersionMismatch,
    NoAcceptableMethod,
    AuthenticationFailed,
    UnsupportedCommand,
    UnsupportedAddressType,
    UpstreamUnreachable,
    TransportIOError,
)
