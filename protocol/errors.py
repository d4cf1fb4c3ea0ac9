"""
SOCKS5 代理 - 错误分类模块

定义会话处理过程中可能出现的所有错误类型。会话状态机根据错误类型
决定在终止连接之前是否需要先向客户端发送应答帧。

错误分类:
- FramingViolation: 帧格式错误（零长度字段、截断的帧）
- ProtocolVersionMismatch: 协议版本不匹配
- NoAcceptableMethod: 没有可接受的认证方法
- AuthenticationFailed: 用户名/密码认证失败
- UnsupportedCommand: 不支持的命令
- UnsupportedAddressType: 不支持的地址类型
- UpstreamUnreachable: 无法连接目标主机
- TransportIOError: 其他传输层读写错误
"""


class ProxyError(Exception):
    """所有会话错误的基类"""

    #: 用于日志和统计的错误类型名称
    kind = 'ProxyError'

    def __init__(self, message: str = ''):
        super().__init__(message or self.kind)
        self.message = message or self.kind


class FramingViolation(ProxyError):
    """帧格式错误：截断的帧或非法的长度字段"""
    kind = 'FramingViolation'


class EmptyField(FramingViolation):
    """变长字段声明的长度为 0"""
    kind = 'EmptyField'


class ProtocolVersionMismatch(ProxyError):
    kind = 'ProtocolVersionMismatch'


class NoAcceptableMethod(ProxyError):
    kind = 'NoAcceptableMethod'


class AuthenticationFailed(ProxyError):
    kind = 'AuthenticationFailed'


class UnsupportedCommand(ProxyError):
    kind = 'UnsupportedCommand'


class UnsupportedAddressType(ProxyError):
    kind = 'UnsupportedAddressType'


class UpstreamUnreachable(ProxyError):
    """目标主机不可达（连接被拒绝、解析失败或超时）"""
    kind = 'UpstreamUnreachable'


class TransportIOError(ProxyError):
    """未归入其他类别的读/写/连接错误"""
    kind = 'TransportIOError'
