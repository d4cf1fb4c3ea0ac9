"""
SOCKS5 代理 - 认证模块
处理用户名/密码子协商中的凭据验证。

功能概述:
会话不直接比较凭据，而是在构造时注入一个"认证器"：任何满足
`(username: bytes, password: bytes) -> bool` 的可调用对象都可以使用。
会话在线程池中调用认证器，认证器本身可以是同步的阻塞调用。

提供的认证器:
1. StaticCredentials - 单个固定的用户名/密码对
2. UserStoreAuthenticator - 基于 users.yaml 用户存储
3. DenyAll - 未配置用户时使用，拒绝所有凭据

密码存储:
- 明文密码使用恒定时间比较（hmac.compare_digest）
- 散列密码使用 scrypt（cryptography）派生并验证

散列格式:
    scrypt$<n>$<r>$<p>$<salt base64>$<key base64>
"""

import base64
import hmac
import logging
import os
from typing import Callable, Dict, Optional

from cryptography.exceptions import InvalidKey
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

from config import UserConfig

logger = logging.getLogger(__name__)

Authenticator = Callable[[bytes, bytes], bool]

SCRYPT_N = 2 ** 14
SCRYPT_R = 8
SCRYPT_P = 1
SALT_SIZE = 16
KEY_SIZE = 32


def hash_password(password: str, salt: Optional[bytes] = None) -> str:
    """
    使用 scrypt 生成密码散列

    Args:
        password: 明文密码
        salt: 盐（可选，默认随机生成 16 字节）

    Returns:
        str: 可存入 users.yaml 的散列字符串
    """
    salt = salt or os.urandom(SALT_SIZE)
    kdf = Scrypt(salt=salt, length=KEY_SIZE, n=SCRYPT_N, r=SCRYPT_R, p=SCRYPT_P)
    key = kdf.derive(password.encode('utf-8'))
    return '$'.join([
        'scrypt', str(SCRYPT_N), str(SCRYPT_R), str(SCRYPT_P),
        base64.b64encode(salt).decode('ascii'),
        base64.b64encode(key).decode('ascii'),
    ])


def verify_password(password: bytes, password_hash: str) -> bool:
    """
    验证密码是否与 scrypt 散列匹配

    Args:
        password: 客户端提交的密码字节
        password_hash: hash_password 生成的散列字符串

    Returns:
        bool: 匹配返回 True；散列格式错误或不匹配返回 False
    """
    try:
        scheme, n, r, p, salt_b64, key_b64 = password_hash.split('$')
        if scheme != 'scrypt':
            logger.warning(f"未知的密码散列方案: {scheme}")
            return False
        salt = base64.b64decode(salt_b64)
        key = base64.b64decode(key_b64)
        kdf = Scrypt(salt=salt, length=len(key), n=int(n), r=int(r), p=int(p))
    except ValueError as e:
        logger.warning(f"密码散列格式错误: {e}")
        return False

    try:
        kdf.verify(password, key)
        return True
    except InvalidKey:
        return False


class StaticCredentials:
    """单个固定凭据的认证器"""

    def __init__(self, username: str, password: str):
        self.username = username.encode('utf-8')
        self.password = password.encode('utf-8')

    def __call__(self, username: bytes, password: bytes) -> bool:
        # 两项都要比较，避免通过耗时推测用户名
        user_ok = hmac.compare_digest(username, self.username)
        pass_ok = hmac.compare_digest(password, self.password)
        return user_ok and pass_ok


class UserStoreAuthenticator:
    """
    基于用户存储的认证器

    Attributes:
        users: {用户名: UserConfig} 字典，通常由 config.load_users 加载
    """

    def __init__(self, users: Dict[str, UserConfig]):
        self.users = users

    def __call__(self, username: bytes, password: bytes) -> bool:
        try:
            name = username.decode('utf-8')
        except UnicodeDecodeError:
            logger.debug("用户名不是有效的 UTF-8")
            return False

        user = self.users.get(name)
        if user is None:
            logger.debug(f"未知用户: {name}")
            return False
        if not user.enabled:
            logger.info(f"用户已禁用: {name}")
            return False

        if user.password_hash:
            return verify_password(password, user.password_hash)
        if user.password is not None:
            return hmac.compare_digest(password, user.password.encode('utf-8'))
        logger.warning(f"用户 {name} 未配置密码")
        return False


class DenyAll:
    """拒绝所有凭据"""

    def __call__(self, username: bytes, password: bytes) -> bool:
        return False
