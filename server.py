#!/usr/bin/env python3
"""
SOCKS5 代理服务端

协议:
1. 方法协商 - 支持无认证和用户名/密码认证
2. 用户名/密码子协商（可选）
3. CONNECT 命令 - 连接 IPv4 / IPv6 / 域名目标
4. 成功后在客户端和目标主机之间透明转发字节

功能:
- 每个连接在独立的协程中处理，互不影响
- 用户名/密码来自 users.yaml，支持散列密码
- 记录每个会话的结果统计
"""

import argparse
import asyncio
import itertools
import logging
from typing import Any, Dict, Optional

from auth import Authenticator, DenyAll, UserStoreAuthenticator
from config import ServerConfig, load_config, load_users
from connection import Connector, connect_to_target
from logger import LoggerManager, log_exception
from session import SessionOutcome, Socks5Session

logger = logging.getLogger('socks5-relay-server')


class Socks5Server:
    """
    SOCKS5 代理服务端 - 管理监听套接字和客户端会话

    每个被接受的连接都会创建一个 Socks5Session，会话结束时客户端连接
    被关闭，结果记录到 stats 中。单个会话的失败不会影响服务端。

    Attributes:
        config: ServerConfig，服务器配置对象
        authenticator: 用户名/密码认证器
        connector: 出站连接函数
        stats: 会话统计 {'total', 'active', 'succeeded', 'failed', 'by_error'}
    """

    def __init__(self, config: ServerConfig, authenticator: Optional[Authenticator] = None,
                 connector: Optional[Connector] = None):
        self.config = config
        self.authenticator = authenticator or DenyAll()
        self.connector = connector or connect_to_target
        self.stats: Dict[str, Any] = {
            'total': 0,
            'active': 0,
            'succeeded': 0,
            'failed': 0,
            'by_error': {},
        }
        self._server: Optional[asyncio.AbstractServer] = None
        self._session_ids = itertools.count(1)

    async def handle_client(self, reader: asyncio.StreamReader,
                            writer: asyncio.StreamWriter) -> Optional[SessionOutcome]:
        """处理客户端连接，由 asyncio.start_server 为每个连接调用"""
        session = Socks5Session(
            reader, writer,
            authenticator=self.authenticator,
            connector=self.connector,
            config=self.config,
            session_id=next(self._session_ids)
        )
        self.stats['total'] += 1
        self.stats['active'] += 1
        outcome = None
        try:
            outcome = await session.handle()
        except Exception:
            log_exception(logger, f"会话 {session.session_id} 出现未预期的错误: {session.peer_str}")
            self._record_failure('InternalError')
        else:
            self._record(outcome)
        finally:
            self.stats['active'] -= 1
        return outcome

    def _record(self, outcome: SessionOutcome):
        if outcome.succeeded:
            self.stats['succeeded'] += 1
        else:
            self._record_failure(outcome.error.kind)

    def _record_failure(self, kind: str):
        self.stats['failed'] += 1
        by_error = self.stats['by_error']
        by_error[kind] = by_error.get(kind, 0) + 1

    @property
    def address(self):
        """监听地址 (host, port)，未启动时为 None"""
        if self._server is None or not self._server.sockets:
            return None
        return self._server.sockets[0].getsockname()[:2]

    async def listen(self) -> asyncio.AbstractServer:
        """绑定监听地址并开始接受连接"""
        self._server = await asyncio.start_server(
            self.handle_client,
            self.config.host,
            self.config.port
        )
        host, port = self.address
        logger.info(f"SOCKS5 代理运行于 {host}:{port}")
        return self._server

    async def start(self):
        """启动服务端并一直运行"""
        server = await self.listen()
        async with server:
            await server.serve_forever()

    async def stop(self):
        """停止接受新连接"""
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()
            logger.info(
                f"服务端已停止: 共 {self.stats['total']} 个会话, "
                f"成功 {self.stats['succeeded']}, 失败 {self.stats['failed']}"
            )


def build_authenticator(users_file: str) -> Authenticator:
    """根据用户文件创建认证器；没有用户时拒绝所有用户名/密码认证"""
    users = load_users(users_file)
    if not users:
        logger.warning(f"未配置用户（{users_file}），用户名/密码认证将全部被拒绝")
        return DenyAll()
    logger.info(f"已加载用户数: {len(users)}")
    return UserStoreAuthenticator(users)


def main(argv=None):
    """主函数"""
    parser = argparse.ArgumentParser(description='SOCKS5 代理服务端')
    parser.add_argument('--config', '-c', default='config.yaml', help='配置文件路径')
    parser.add_argument('--users', '-u', default=None, help='用户文件（默认：从配置或 users.yaml）')
    parser.add_argument('--bind', '-b', default=None, help='监听地址（默认: 127.0.0.1）')
    parser.add_argument('--port', '-p', type=int, default=None, help='监听端口（默认: 1080）')
    parser.add_argument('--debug', '-d', action='store_true', help='启用调试模式')
    args = parser.parse_args(argv)

    config_data = load_config(args.config)

    manager = LoggerManager()
    manager.initialize(log_config=config_data.get('logging'))
    if args.debug:
        manager.set_level('DEBUG')

    config = ServerConfig.from_dict(config_data.get('server'))
    if args.bind is not None:
        config.host = args.bind
    if args.port is not None:
        config.port = args.port
    if args.users is not None:
        config.users_file = args.users

    server = Socks5Server(config, build_authenticator(config.users_file))

    try:
        asyncio.run(server.start())
    except KeyboardInterrupt:
        logger.info("服务端已停止")

    return 0


if __name__ == '__main__':
    exit(main())
