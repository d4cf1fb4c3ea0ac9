"""
SOCKS5 会话模块

本模块定义了 Socks5Session 类，负责驱动单个客户端连接走完
问候 -> (认证) -> 命令 -> 转发 的完整生命周期，并在会话结束时释放连接。
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple

from auth import Authenticator, DenyAll
from config import ServerConfig
from connection import Connector, connect_to_target
from logger import add_context, log_exception
from protocol import (
    SOCKS_VERSION,
    Method,
    Command,
    AuthStatus,
    ReplyStatus,
    AddressSpec,
    read_exact,
    read_u8,
    read_length_prefixed,
    read_count_prefixed,
    read_address,
    encode_method_reply,
    encode_auth_reply,
    encode_reply,
    ProxyError,
    EmptyField,
    ProtocolVersionMismatch,
    NoAcceptableMethod,
    AuthenticationFailed,
    UnsupportedCommand,
    UnsupportedAddressType,
    UpstreamUnreachable,
    TransportIOError,
)
from relay import RelayResult, close_writer, relay

logger = logging.getLogger('socks5-relay-session')


class SessionState(Enum):
    GREETING = 'greeting'
    AUTHENTICATION = 'authentication'
    COMMAND = 'command'
    RELAY = 'relay'
    CLOSED = 'closed'


@dataclass
class SessionOutcome:
    """
    会话结果，供接收器记录统计和日志

    Attributes:
        peer: 客户端地址字符串（IP:端口）
        state: 会话终止时所处的状态
        error: 终止会话的错误；正常完成转发时为 None
        destination: 客户端请求的目标地址（已解码时）
        relay: 转发统计（进入转发阶段时）
        username: 认证通过的用户名
    """
    peer: str
    state: SessionState
    error: Optional[ProxyError] = None
    destination: Optional[str] = None
    relay: Optional[RelayResult] = None
    username: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.error is None


class Socks5Session:
    """
    SOCKS5 会话类 - 处理单个客户端连接

    工作流程:
    1. 问候：读取版本和方法列表，优先选择用户名/密码，其次无认证
    2. 认证：仅在选择了用户名/密码时进入，调用注入的认证器
    3. 命令：仅支持 CONNECT，解析目标地址并建立出站连接
    4. 转发：把客户端流和目标流交给转发模块，直到两端都结束
    5. 关闭：释放客户端连接（目标连接由转发模块关闭）

    每个有线路应答的错误都会先尽力发送应答再终止会话；发送应答本身
    失败不会再升级为其他错误。没有对应应答的错误（例如握手中途断开）
    直接终止会话，不再尝试写入。

    Attributes:
        reader: asyncio.StreamReader，客户端读取流
        writer: asyncio.StreamWriter，客户端写入流
        version: 协商的协议版本（固定为 5）
        state: 当前会话状态
        authenticator: 凭据验证器，(username, password) -> bool
        connector: 出站连接函数，(AddressSpec, timeout) -> (reader, writer)
        config: 服务器配置（超时和转发缓冲区大小）
    """

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        authenticator: Optional[Authenticator] = None,
        connector: Optional[Connector] = None,
        config: Optional[ServerConfig] = None,
        session_id: Optional[int] = None
    ):
        self.reader = reader
        self.writer = writer
        self.version = SOCKS_VERSION
        self.state = SessionState.GREETING
        self.authenticator = authenticator or DenyAll()
        self.connector = connector or connect_to_target
        self.config = config or ServerConfig()
        self.session_id = session_id if session_id is not None else id(self)

        self.username: Optional[str] = None
        self.destination: Optional[AddressSpec] = None
        # 进入转发前由会话负责关闭目标连接，之后交给转发模块
        self.upstream_writer: Optional[asyncio.StreamWriter] = None

        peer = writer.get_extra_info('peername')
        self.peer_str = f"{peer[0]}:{peer[1]}" if peer else "unknown"

    def _log(self, level: int, msg: str):
        """记录日志，认证后附带用户名"""
        if self.username:
            logger.log(level, f"[{self.username}] {msg}")
        else:
            logger.log(level, msg)

    def _transition(self, state: SessionState):
        logger.debug(f"会话状态 {self.state.value} -> {state.value}")
        self.state = state

    async def handle(self) -> SessionOutcome:
        """
        主会话处理器

        协议错误不会抛给调用者，而是记录在返回的 SessionOutcome 中；
        任务被取消时在清理后继续抛出 CancelledError。

        Returns:
            SessionOutcome: 会话结果
        """
        add_context(peer=self.peer_str, session_id=self.session_id)
        outcome = SessionOutcome(peer=self.peer_str, state=self.state)
        self._log(logging.DEBUG, f"来自 {self.peer_str} 的连接")

        try:
            upstream_reader, upstream_writer = await self._run_handshake()

            self._transition(SessionState.RELAY)
            self.upstream_writer = None
            outcome.relay = await relay(
                self.reader, self.writer,
                upstream_reader, upstream_writer,
                buffer_size=self.config.relay_buffer_size,
                idle_timeout=self.config.relay_idle_timeout
            )
            self._log(
                logging.INFO,
                f"转发结束 {self.destination.display()}: "
                f"上行 {outcome.relay.bytes_client_to_upstream} 字节, "
                f"下行 {outcome.relay.bytes_upstream_to_client} 字节, "
                f"先关闭: {outcome.relay.first_closed}"
            )
            if outcome.relay.error is not None:
                self._log(logging.DEBUG, f"转发阶段错误: {outcome.relay.error!r}")

        except ProxyError as e:
            outcome.error = e
            level = logging.DEBUG if isinstance(e, TransportIOError) else logging.INFO
            self._log(level, f"会话终止于 {self.state.value}: {e.kind}: {e.message}")
        finally:
            outcome.state = self.state
            outcome.username = self.username
            if self.destination is not None:
                outcome.destination = self.destination.display()
            await self.cleanup()

        return outcome

    async def _run_handshake(self) -> Tuple[asyncio.StreamReader, asyncio.StreamWriter]:
        """执行问候、认证和命令阶段，可选地限制总耗时"""
        timeout = self.config.handshake_timeout
        if timeout is None:
            return await self._handshake()
        try:
            return await asyncio.wait_for(self._handshake(), timeout=timeout)
        except asyncio.TimeoutError as e:
            raise TransportIOError(f"握手超时（{timeout} 秒）") from e

    async def _handshake(self) -> Tuple[asyncio.StreamReader, asyncio.StreamWriter]:
        method = await self.negotiate_method()
        if method == Method.PASSWD:
            self._transition(SessionState.AUTHENTICATION)
            await self.authenticate()
        self._transition(SessionState.COMMAND)
        return await self.handle_command()

    # ------------------------------------------------------------------
    # 写入
    # ------------------------------------------------------------------

    async def _send(self, data: bytes):
        """写入一帧并等待发送完成"""
        try:
            self.writer.write(data)
            await self.writer.drain()
        except (ConnectionResetError, BrokenPipeError, OSError) as e:
            raise TransportIOError(f"写入失败: {e}") from e

    async def _send_best_effort(self, data: bytes):
        """尽力发送否定应答，失败只记录日志"""
        try:
            await self._send(data)
        except TransportIOError as e:
            logger.debug(f"发送应答失败: {e.message}")

    async def _reply_command(self, status: ReplyStatus):
        await self._send_best_effort(encode_reply(self.version, status))

    # ------------------------------------------------------------------
    # 问候
    # ------------------------------------------------------------------

    @staticmethod
    def select_method(methods: bytes) -> Method:
        """用户名/密码优先于无认证，与方法在列表中的顺序无关"""
        if int(Method.PASSWD) in methods:
            return Method.PASSWD
        if int(Method.NO_AUTH) in methods:
            return Method.NO_AUTH
        return Method.ERROR

    async def negotiate_method(self) -> Method:
        """
        问候阶段: VER | NMETHODS | METHODS

        版本不是 5 时不再读取方法列表，直接按"没有可接受的方法"处理；
        无论哪种情况，都会先发送方法应答。

        Raises:
            NoAcceptableMethod: 版本不匹配或没有可接受的方法（应答已发送）
        """
        version, nmethods = await read_exact(self.reader, 2)

        if version != self.version:
            method = Method.ERROR
            reason = f"问候版本不匹配: {version}"
        else:
            methods = await read_count_prefixed(self.reader, nmethods)
            method = self.select_method(methods)
            reason = f"客户端提供的方法 {methods.hex() or '(空)'} 均不可接受"

        if method == Method.ERROR:
            await self._send_best_effort(encode_method_reply(self.version, method))
            raise NoAcceptableMethod(reason)

        await self._send(encode_method_reply(self.version, method))
        logger.debug(f"选择认证方法: {method.name}")
        return method

    # ------------------------------------------------------------------
    # 认证
    # ------------------------------------------------------------------

    async def _verify(self, username: bytes, password: bytes) -> bool:
        """在线程池中调用认证器，散列验证不阻塞事件循环"""
        loop = asyncio.get_running_loop()
        try:
            return bool(await loop.run_in_executor(None, self.authenticator, username, password))
        except Exception:
            log_exception(logger, "认证器出错，按认证失败处理")
            return False

    async def authenticate(self):
        """
        用户名/密码子协商: AVER | ULEN | UNAME | PLEN | PASSWD

        AVER 不与协议版本比较，应答中原样回显。零长度的用户名或密码
        属于帧格式错误，同样发送认证失败应答。

        Raises:
            EmptyField: 用户名或密码长度为 0（失败应答已发送）
            AuthenticationFailed: 凭据不匹配（失败应答已发送）
        """
        auth_version = await read_u8(self.reader)
        failure = encode_auth_reply(auth_version, AuthStatus.FAILURE)

        try:
            username = await read_length_prefixed(self.reader)
            password = await read_length_prefixed(self.reader)
        except EmptyField as e:
            await self._send_best_effort(failure)
            raise EmptyField(f"认证字段为空: {e.message}") from e

        if not await self._verify(username, password):
            await self._send_best_effort(failure)
            raise AuthenticationFailed(
                f"用户 {username.decode('utf-8', errors='replace')} 认证失败"
            )

        await self._send(encode_auth_reply(auth_version, AuthStatus.SUCCESS))
        self.username = username.decode('utf-8', errors='replace')
        add_context(username=self.username)
        self._log(logging.DEBUG, "认证成功")

    # ------------------------------------------------------------------
    # 命令
    # ------------------------------------------------------------------

    async def handle_command(self) -> Tuple[asyncio.StreamReader, asyncio.StreamWriter]:
        """
        命令阶段: VER | CMD | RSV | ATYP | DST.ADDR | DST.PORT

        Returns:
            tuple: 已连接目标主机的 (reader, writer)

        Raises:
            ProtocolVersionMismatch: 版本不是 5（RuleSetNotAllowed 应答已发送）
            UnsupportedCommand: 命令不是 CONNECT（CommandUnsupported 应答已发送）
            EmptyField: 域名长度为 0（RuleSetNotAllowed 应答已发送）
            UnsupportedAddressType: 未知的地址类型（AddrTypeUnsupported 应答已发送）
            UpstreamUnreachable: 无法连接目标主机（ConnectionRefused 应答已发送）
        """
        version, cmd, _ = await read_exact(self.reader, 3)

        if version != self.version:
            await self._reply_command(ReplyStatus.RULESET_NOT_ALLOWED)
            raise ProtocolVersionMismatch(f"命令版本不匹配: {version}")

        if Command.from_byte(cmd) != Command.CONNECT:
            await self._reply_command(ReplyStatus.COMMAND_UNSUPPORTED)
            raise UnsupportedCommand(f"不支持的命令: 0x{cmd:02x}")

        try:
            spec = await read_address(self.reader)
        except EmptyField:
            await self._reply_command(ReplyStatus.RULESET_NOT_ALLOWED)
            raise

        if not spec.is_supported:
            await self._reply_command(ReplyStatus.ADDR_TYPE_UNSUPPORTED)
            raise UnsupportedAddressType(f"不支持的地址类型: 0x{spec.raw_type:02x}")

        self.destination = spec
        self._log(logging.INFO, f"CONNECT {spec.display()}")

        try:
            upstream_reader, upstream_writer = await self.connector(spec, self.config.connect_timeout)
        except UpstreamUnreachable:
            await self._reply_command(ReplyStatus.CONNECTION_REFUSED)
            raise
        except (OSError, asyncio.TimeoutError) as e:
            await self._reply_command(ReplyStatus.CONNECTION_REFUSED)
            raise UpstreamUnreachable(f"无法连接 {spec.display()}: {e!r}") from e

        self.upstream_writer = upstream_writer
        await self._send(encode_reply(self.version, ReplyStatus.SUCCEEDED))

        return upstream_reader, upstream_writer

    # ------------------------------------------------------------------
    # 清理
    # ------------------------------------------------------------------

    async def cleanup(self):
        """关闭客户端连接（以及尚未交给转发模块的目标连接），会话进入 CLOSED 状态"""
        self._transition(SessionState.CLOSED)
        if self.upstream_writer is not None:
            await close_writer(self.upstream_writer)
            self.upstream_writer = None
        await close_writer(self.writer)
