"""
SOCKS5 代理 - 配置管理模块
加载和保存配置文件，管理用户配置。

功能概述:
本模块提供了配置管理功能，包括：
1. 服务器配置管理（监听地址、超时、转发缓冲区）
2. 用户配置管理（用户名/密码认证的凭据存储）
3. 配置文件的加载和保存

配置文件格式:
- 服务器配置: config.yaml（server: 与 logging: 两个段）
- 用户配置: users.yaml
- 使用 YAML 格式，支持 Unicode

config.yaml 示例:
    server:
      host: 127.0.0.1
      port: 1080
      users_file: users.yaml
      connect_timeout: 10
      handshake_timeout: 30
    logging:
      level: INFO
"""

import logging
from dataclasses import dataclass, fields
from typing import Any, Dict, Optional

import yaml

logger = logging.getLogger(__name__)


# ============================================================================
# 配置数据类
# ============================================================================

@dataclass
class ServerConfig:
    """
    服务器配置数据类

    Attributes:
        host: 服务器监听地址（默认: "127.0.0.1"）
        port: 服务器监听端口（默认: 1080）
        users_file: 用户配置文件路径（默认: "users.yaml"）
        connect_timeout: 连接目标主机的超时（秒，None 表示不限制）
        handshake_timeout: 握手阶段（问候到命令应答）的总超时（秒，None 表示不限制）
        relay_buffer_size: 转发阶段单次读取的最大字节数（默认: 32768）
        relay_idle_timeout: 转发阶段单个方向的空闲超时（秒，None 表示不限制）
    """
    host: str = "127.0.0.1"
    port: int = 1080
    users_file: str = "users.yaml"
    connect_timeout: Optional[float] = 10.0
    handshake_timeout: Optional[float] = None
    relay_buffer_size: int = 32768
    relay_idle_timeout: Optional[float] = None

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'ServerConfig':
        """
        从配置字典创建服务器配置

        未知的键会被忽略并记录警告。

        Args:
            data: config.yaml 中 server 段的内容

        Returns:
            ServerConfig: 服务器配置对象
        """
        data = data or {}
        known = {f.name for f in fields(cls)}
        for key in data:
            if key not in known:
                logger.warning(f"忽略未知的配置项: server.{key}")
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class UserConfig:
    """
    用户配置数据类

    password 与 password_hash 二选一；password_hash 由 auth.hash_password 生成。

    Attributes:
        username: 用户名
        password: 明文密码（可选）
        password_hash: scrypt 密码散列（可选）
        enabled: 是否允许该用户登录（默认: True）
    """
    username: str
    password: Optional[str] = None
    password_hash: Optional[str] = None
    enabled: bool = True


# ============================================================================
# 配置文件管理函数
# ============================================================================

def load_config(config_file: str) -> Dict[str, Any]:
    """
    加载配置文件

    从 YAML 格式的配置文件中加载配置数据

    Args:
        config_file: 配置文件路径

    Returns:
        Dict[str, Any]: 配置数据字典，如果文件不存在或格式错误则返回空字典
    """
    try:
        with open(config_file, 'r', encoding='utf-8') as f:
            return yaml.safe_load(f) or {}
    except FileNotFoundError:
        return {}
    except yaml.YAMLError as e:
        logger.warning(f"配置文件格式错误: {e}")
        return {}


def load_users(users_file: str) -> Dict[str, UserConfig]:
    """
    加载用户配置

    从 YAML 格式的用户配置文件中加载用户数据
    支持两种用户配置格式：
    1. 简化格式：username: password
    2. 完整格式：username: {password_hash: xxx, enabled: true/false}

    Args:
        users_file: 用户配置文件路径

    Returns:
        Dict[str, UserConfig]: 用户配置字典，如果文件不存在或格式错误则返回空字典
    """
    try:
        with open(users_file, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f)
    except FileNotFoundError:
        return {}
    except yaml.YAMLError as e:
        logger.warning(f"用户配置文件格式错误: {e}")
        return {}

    if not data or not isinstance(data, dict) or not data.get('users'):
        return {}

    if not isinstance(data['users'], dict):
        logger.warning(f"users 必须是 用户名 -> 配置 的映射，实际为 {type(data['users']).__name__}")
        return {}

    users = {}
    for username, user_data in data['users'].items():
        username = str(username)
        if isinstance(user_data, (str, int)):
            users[username] = UserConfig(username=username, password=str(user_data))
        elif isinstance(user_data, dict):
            password = user_data.get('password')
            users[username] = UserConfig(
                username=username,
                password=str(password) if password is not None else None,
                password_hash=user_data.get('password_hash'),
                enabled=bool(user_data.get('enabled', True)),
            )
        else:
            logger.warning(f"忽略格式错误的用户条目: {username}")

    return users


def save_users(users_file: str, users: Dict[str, UserConfig]) -> bool:
    """
    保存用户配置

    总是以完整格式写出，未设置的字段不写入。

    Args:
        users_file: 用户配置文件路径
        users: 用户配置字典

    Returns:
        bool: 保存成功返回 True，失败返回 False
    """
    data = {'users': {}}
    for username, user in users.items():
        entry = {}
        if user.password_hash:
            entry['password_hash'] = user.password_hash
        elif user.password is not None:
            entry['password'] = user.password
        entry['enabled'] = user.enabled
        data['users'][username] = entry

    try:
        with open(users_file, 'w', encoding='utf-8') as f:
            f.write("# SOCKS5 代理用户\n# 由 socks5-relay-adduser 管理\n\n")
            yaml.dump(data, f, default_flow_style=False, allow_unicode=True)
        return True
    except OSError as e:
        logger.error(f"保存用户配置失败: {e}")
        return False
