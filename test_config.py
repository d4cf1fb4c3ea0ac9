#!/usr/bin/env python3
"""
配置管理与用户管理工具测试
"""

import adduser
from auth import verify_password
from config import ServerConfig, UserConfig, load_config, load_users, save_users


def test_server_config_defaults():
    config = ServerConfig()
    assert config.host == '127.0.0.1'
    assert config.port == 1080
    assert config.connect_timeout == 10.0
    assert config.handshake_timeout is None
    assert config.relay_idle_timeout is None


def test_server_config_from_dict_ignores_unknown_keys():
    config = ServerConfig.from_dict({'port': 9050, 'handshake_timeout': 30, 'hostname': 'x'})
    assert config.port == 9050
    assert config.handshake_timeout == 30
    assert not hasattr(config, 'hostname')
    assert ServerConfig.from_dict(None) == ServerConfig()


def test_load_config_missing_and_malformed(tmp_path):
    assert load_config(str(tmp_path / 'missing.yaml')) == {}

    bad = tmp_path / 'bad.yaml'
    bad.write_text("server: [unclosed\n", encoding='utf-8')
    assert load_config(str(bad)) == {}

    good = tmp_path / 'config.yaml'
    good.write_text("server:\n  port: 1081\nlogging:\n  level: DEBUG\n", encoding='utf-8')
    data = load_config(str(good))
    assert data['server']['port'] == 1081
    assert data['logging']['level'] == 'DEBUG'


def test_load_users_both_formats(tmp_path):
    users_file = tmp_path / 'users.yaml'
    users_file.write_text(
        "users:\n"
        "  alice: wonderland\n"
        "  '123': 123\n"
        "  bob:\n"
        "    password_hash: scrypt$16384$8$1$AAAA$AAAA\n"
        "    enabled: false\n",
        encoding='utf-8'
    )

    users = load_users(str(users_file))

    assert users['alice'] == UserConfig(username='alice', password='wonderland')
    assert users['123'].password == '123'
    assert users['bob'].password is None
    assert users['bob'].password_hash.startswith('scrypt$')
    assert users['bob'].enabled is False


def test_load_users_missing_or_empty(tmp_path):
    assert load_users(str(tmp_path / 'missing.yaml')) == {}
    empty = tmp_path / 'empty.yaml'
    empty.write_text("users:\n", encoding='utf-8')
    assert load_users(str(empty)) == {}


def test_load_users_rejects_non_mapping(tmp_path):
    listed = tmp_path / 'list.yaml'
    listed.write_text("users:\n  - alice\n  - bob\n", encoding='utf-8')
    assert load_users(str(listed)) == {}

    scalar = tmp_path / 'scalar.yaml'
    scalar.write_text("users: alice\n", encoding='utf-8')
    assert load_users(str(scalar)) == {}


def test_save_and_reload_users(tmp_path):
    users_file = str(tmp_path / 'users.yaml')
    users = {
        'alice': UserConfig(username='alice', password='wonderland'),
        'bob': UserConfig(username='bob', password_hash='scrypt$16384$8$1$AAAA$AAAA', enabled=False),
    }

    assert save_users(users_file, users)
    assert load_users(users_file) == users


def test_adduser_generates_hashed_password(tmp_path, capsys):
    users_file = str(tmp_path / 'users.yaml')

    assert adduser.main(['alice', '-u', users_file]) == 0

    output = capsys.readouterr().out
    password = output.strip().splitlines()[-1].split(': ', 1)[1]
    user = load_users(users_file)['alice']
    assert user.password is None
    assert verify_password(password.encode('utf-8'), user.password_hash)


def test_adduser_plaintext_disable_and_delete(tmp_path):
    users_file = str(tmp_path / 'users.yaml')

    assert adduser.main(['bob', '-u', users_file, '-p', 'builder', '--plaintext']) == 0
    assert load_users(users_file)['bob'].password == 'builder'

    assert adduser.main(['bob', '-u', users_file, '--disable']) == 0
    assert load_users(users_file)['bob'].enabled is False

    assert adduser.main(['bob', '-u', users_file, '--delete']) == 0
    assert 'bob' not in load_users(users_file)

    assert adduser.main(['bob', '-u', users_file, '--delete']) == 1
