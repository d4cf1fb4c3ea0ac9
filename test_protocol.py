#!/usr/bin/env python3
"""
线路编解码测试

测试内容:
1. 标签枚举的字节映射
2. 长度前缀 / 计数前缀字段
3. 地址读取（IPv4 / IPv6 / 域名 / 不支持的类型）
4. 应答编码
"""

import asyncio

import pytest

from protocol import (
    SOCKS_VERSION,
    Method,
    Command,
    AddrType,
    ReplyStatus,
    AuthStatus,
    AddressSpec,
    pack_u16,
    unpack_u16,
    read_length_prefixed,
    read_count_prefixed,
    read_address,
    encode_method_reply,
    encode_auth_reply,
    encode_reply,
    EmptyField,
    FramingViolation,
)


def test_tag_mappings_are_total():
    assert Method.from_byte(0x00) is Method.NO_AUTH
    assert Method.from_byte(0x02) is Method.PASSWD
    assert Method.from_byte(0x01) is Method.ERROR
    assert Method.from_byte(0x80) is Method.ERROR

    assert Command.from_byte(0x01) is Command.CONNECT
    for value in (0x00, 0x02, 0x03, 0xFF):
        assert Command.from_byte(value) is Command.UNSUPPORTED

    assert AddrType.from_byte(0x01) is AddrType.IPV4
    assert AddrType.from_byte(0x03) is AddrType.DOMAIN
    assert AddrType.from_byte(0x04) is AddrType.IPV6
    for value in (0x00, 0x02, 0x05, 0xFF):
        assert AddrType.from_byte(value) is AddrType.UNSUPPORTED


def test_reply_status_wire_values():
    assert [int(s) for s in ReplyStatus] == [0x00, 0x02, 0x05, 0x07, 0x08]
    assert int(AuthStatus.SUCCESS) == 0x00
    assert int(AuthStatus.FAILURE) == 0xFF


def test_u16_big_endian():
    assert pack_u16(8080) == b'\x1f\x90'
    assert unpack_u16(b'\x00\x50') == 80


def test_read_length_prefixed(reader_factory):
    async def run():
        reader = reader_factory(b'\x03abcrest')
        assert await read_length_prefixed(reader) == b'abc'
        assert await reader.read() == b'rest'

    asyncio.run(run())


def test_read_length_prefixed_zero_is_framing_violation(reader_factory):
    async def run():
        with pytest.raises(EmptyField):
            await read_length_prefixed(reader_factory(b'\x00abc'))

    asyncio.run(run())
    assert issubclass(EmptyField, FramingViolation)


def test_read_length_prefixed_truncated(reader_factory):
    async def run():
        with pytest.raises(FramingViolation):
            await read_length_prefixed(reader_factory(b'\x05ab'))

    asyncio.run(run())


def test_read_count_prefixed_zero_yields_empty(reader_factory):
    async def run():
        reader = reader_factory(b'\x05')
        assert await read_count_prefixed(reader, 0) == b''
        assert await reader.read() == b'\x05'

    asyncio.run(run())


def test_ipv4_address_round_trip(reader_factory):
    wire = bytes.fromhex('01C00002011F90')
    spec = AddressSpec(AddrType.IPV4, bytes([192, 0, 2, 1]), 8080)
    assert spec.encode() == wire

    async def run():
        return await read_address(reader_factory(wire))

    decoded = asyncio.run(run())
    assert decoded.addr_type is AddrType.IPV4
    assert decoded.host_str == '192.0.2.1'
    assert decoded.port == 8080
    assert decoded.display() == '192.0.2.1:8080'


def test_read_ipv6_address(reader_factory):
    wire = b'\x04' + bytes(15) + b'\x01' + b'\x01\xbb'

    async def run():
        return await read_address(reader_factory(wire))

    spec = asyncio.run(run())
    assert spec.addr_type is AddrType.IPV6
    assert spec.host_str == '::1'
    assert spec.display() == '[::1]:443'


def test_read_domain_address(reader_factory):
    wire = b'\x03\x0bexample.com\x00\x50'

    async def run():
        return await read_address(reader_factory(wire))

    spec = asyncio.run(run())
    assert spec.addr_type is AddrType.DOMAIN
    assert spec.host == b'example.com'
    assert spec.port == 80
    assert spec.encode() == wire


def test_read_empty_domain(reader_factory):
    async def run():
        with pytest.raises(EmptyField):
            await read_address(reader_factory(b'\x03\x00\x00\x50'))

    asyncio.run(run())


def test_unsupported_address_type_reads_nothing_more(reader_factory):
    async def run():
        reader = reader_factory(b'\x05\xaa\xbb')
        spec = await read_address(reader)
        assert not spec.is_supported
        assert spec.raw_type == 0x05
        assert await reader.read() == b'\xaa\xbb'

    asyncio.run(run())


def test_unsupported_address_cannot_be_encoded():
    with pytest.raises(ValueError):
        AddressSpec.unsupported(0x05).encode()


def test_encode_method_and_auth_replies():
    assert encode_method_reply(SOCKS_VERSION, Method.NO_AUTH) == b'\x05\x00'
    assert encode_method_reply(SOCKS_VERSION, Method.PASSWD) == b'\x05\x02'
    assert encode_method_reply(SOCKS_VERSION, Method.ERROR) == b'\x05\xff'
    assert encode_auth_reply(0x01, AuthStatus.SUCCESS) == b'\x01\x00'
    assert encode_auth_reply(0x01, AuthStatus.FAILURE) == b'\x01\xff'


def test_encode_reply_is_fixed_zero_bound_frame():
    for status in ReplyStatus:
        frame = encode_reply(SOCKS_VERSION, status)
        assert len(frame) == 10
        assert frame == bytes([0x05, int(status), 0x00, 0x01, 0, 0, 0, 0, 0, 0])
