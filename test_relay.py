#!/usr/bin/env python3
"""
转发模块测试

测试内容:
1. 双向转发与字节统计
2. EOF 半关闭
3. 单方向错误时取消另一方向并关闭两端
4. 空闲超时（两个方向都没有数据时才触发）
"""

import asyncio

from conftest import FakeWriter, make_reader
from relay import CLIENT, UPSTREAM, relay


def test_relays_both_directions_until_eof():
    client_writer = FakeWriter()
    upstream_writer = FakeWriter()

    async def run():
        return await relay(
            make_reader(b'GET / HTTP/1.0\r\n\r\n'), client_writer,
            make_reader(b'HTTP/1.0 200 OK\r\n\r\nbody'), upstream_writer,
            buffer_size=4
        )

    result = asyncio.run(run())

    assert bytes(upstream_writer.buffer) == b'GET / HTTP/1.0\r\n\r\n'
    assert bytes(client_writer.buffer) == b'HTTP/1.0 200 OK\r\n\r\nbody'
    assert result.bytes_client_to_upstream == 18
    assert result.bytes_upstream_to_client == 23
    assert result.first_closed in (CLIENT, UPSTREAM)
    assert result.error is None
    assert client_writer.eof_written and upstream_writer.eof_written
    assert client_writer.closed and upstream_writer.closed


def test_half_close_keeps_other_direction_open():
    client_writer = FakeWriter()
    upstream_writer = FakeWriter()

    async def run():
        upstream_reader = make_reader(b'first', eof=False)
        task = asyncio.ensure_future(relay(
            make_reader(b''), client_writer,
            upstream_reader, upstream_writer
        ))
        await asyncio.sleep(0.05)
        assert upstream_writer.eof_written, "客户端 EOF 后应半关闭目标连接"
        assert not task.done()

        upstream_reader.feed_data(b'-second')
        upstream_reader.feed_eof()
        return await task

    result = asyncio.run(run())

    assert result.first_closed == CLIENT
    assert bytes(client_writer.buffer) == b'first-second'


def test_error_in_one_direction_stops_both():
    client_writer = FakeWriter()
    upstream_writer = FakeWriter(fail_writes=True)

    async def run():
        # 目标方向永远没有数据，只有错误才能让转发结束
        return await relay(
            make_reader(b'data'), client_writer,
            make_reader(b'', eof=False), upstream_writer
        )

    result = asyncio.run(asyncio.wait_for(run(), timeout=5))

    assert isinstance(result.error, ConnectionResetError)
    assert result.first_closed == CLIENT
    assert result.bytes_client_to_upstream == 0
    assert client_writer.closed and upstream_writer.closed


def test_idle_timeout_ends_relay():
    client_writer = FakeWriter()
    upstream_writer = FakeWriter()

    async def run():
        return await relay(
            make_reader(b'', eof=False), client_writer,
            make_reader(b'', eof=False), upstream_writer,
            idle_timeout=0.05
        )

    result = asyncio.run(asyncio.wait_for(run(), timeout=5))

    assert isinstance(result.error, asyncio.TimeoutError)
    assert client_writer.closed and upstream_writer.closed


def test_one_way_transfer_is_not_idle():
    client_writer = FakeWriter()
    upstream_writer = FakeWriter()

    async def run():
        client_reader = make_reader(b'', eof=False)
        upstream_reader = make_reader(b'', eof=False)
        task = asyncio.ensure_future(relay(
            client_reader, client_writer,
            upstream_reader, upstream_writer,
            idle_timeout=0.1
        ))

        # 只有上传方向持续有数据，目标方向始终沉默，总时长远超空闲超时
        for _ in range(10):
            client_reader.feed_data(b'x' * 100)
            await asyncio.sleep(0.03)
        client_reader.feed_eof()
        upstream_reader.feed_eof()
        return await task

    result = asyncio.run(asyncio.wait_for(run(), timeout=5))

    assert result.error is None
    assert result.bytes_client_to_upstream == 1000
    assert bytes(upstream_writer.buffer) == b'x' * 1000


def test_idle_timeout_after_half_close():
    client_writer = FakeWriter()
    upstream_writer = FakeWriter()

    async def run():
        return await relay(
            make_reader(b'request'), client_writer,
            make_reader(b'', eof=False), upstream_writer,
            idle_timeout=0.05
        )

    result = asyncio.run(asyncio.wait_for(run(), timeout=5))

    assert isinstance(result.error, asyncio.TimeoutError)
    assert result.first_closed == CLIENT
    assert bytes(upstream_writer.buffer) == b'request'
    assert client_writer.closed and upstream_writer.closed
