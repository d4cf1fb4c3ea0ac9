#!/usr/bin/env python3
"""
SOCKS5 代理 - 用户管理工具

添加、修改、禁用或删除 users.yaml 中的用户。

使用方法:
    socks5-relay-adduser alice                  # 生成随机密码并保存散列
    socks5-relay-adduser alice -p secret        # 使用指定密码
    socks5-relay-adduser alice --disable        # 禁用用户
    socks5-relay-adduser alice --delete         # 删除用户
"""

import argparse
import secrets
import sys

from auth import hash_password
from config import UserConfig, load_users, save_users


def main(argv=None):
    parser = argparse.ArgumentParser(description='SOCKS5 代理用户管理')
    parser.add_argument('username', help='用户名（1-255 字节）')
    parser.add_argument('--users', '-u', default='users.yaml', help='用户文件路径')
    parser.add_argument('--password', '-p', default=None, help='密码（默认随机生成）')
    parser.add_argument('--plaintext', action='store_true', help='以明文保存密码')
    group = parser.add_mutually_exclusive_group()
    group.add_argument('--disable', action='store_true', help='禁用用户')
    group.add_argument('--delete', action='store_true', help='删除用户')
    args = parser.parse_args(argv)

    if not 0 < len(args.username.encode('utf-8')) <= 255:
        print("用户名长度必须在 1-255 字节之间", file=sys.stderr)
        return 1

    users = load_users(args.users)

    if args.delete:
        if users.pop(args.username, None) is None:
            print(f"用户不存在: {args.username}", file=sys.stderr)
            return 1
        if not save_users(args.users, users):
            return 1
        print(f"已删除用户: {args.username}")
        return 0

    if args.disable:
        user = users.get(args.username)
        if user is None:
            print(f"用户不存在: {args.username}", file=sys.stderr)
            return 1
        user.enabled = False
        if not save_users(args.users, users):
            return 1
        print(f"已禁用用户: {args.username}")
        return 0

    password = args.password or secrets.token_urlsafe(12)
    if not 0 < len(password.encode('utf-8')) <= 255:
        print("密码长度必须在 1-255 字节之间", file=sys.stderr)
        return 1

    if args.plaintext:
        user = UserConfig(username=args.username, password=password)
    else:
        user = UserConfig(username=args.username, password_hash=hash_password(password))
    users[args.username] = user

    if not save_users(args.users, users):
        return 1

    print(f"已保存用户: {args.username}")
    if args.password is None:
        print(f"密码: {password}")
    return 0


if __name__ == '__main__':
    exit(main())
