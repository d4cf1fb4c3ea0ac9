"""
测试辅助：内存中的流替身

FakeWriter 记录所有写入的字节，make_reader 创建预先填充数据的
asyncio.StreamReader（必须在事件循环内调用）。
"""

import asyncio

import pytest


class FakeWriter:
    """asyncio.StreamWriter 的内存替身"""

    def __init__(self, peername=('127.0.0.1', 50000), fail_writes: bool = False):
        self.buffer = bytearray()
        self.peername = peername
        self.fail_writes = fail_writes
        self.closed = False
        self.eof_written = False

    def write(self, data: bytes):
        if self.fail_writes:
            raise ConnectionResetError("对端已重置连接")
        self.buffer.extend(data)

    async def drain(self):
        pass

    def get_extra_info(self, name, default=None):
        if name == 'peername':
            return self.peername
        return default

    def can_write_eof(self) -> bool:
        return True

    def write_eof(self):
        self.eof_written = True

    def is_closing(self) -> bool:
        return self.closed

    def close(self):
        self.closed = True

    async def wait_closed(self):
        pass


def make_reader(data: bytes = b'', eof: bool = True) -> asyncio.StreamReader:
    reader = asyncio.StreamReader()
    if data:
        reader.feed_data(data)
    if eof:
        reader.feed_eof()
    return reader


@pytest.fixture
def fake_writer():
    return FakeWriter


@pytest.fixture
def reader_factory():
    return make_reader
