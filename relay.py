"""
转发模块 - 客户端与目标主机之间的全双工字节转发

握手成功后，代理不再解释任何字节，只在两个方向上复制数据：
- client -> upstream
- upstream -> client

某个方向读到 EOF 时，对另一端做半关闭（write_eof），另一个方向继续转发，
直到它也结束；任一方向出现错误，或两个方向同时空闲超时，都会取消其余方向。
两个方向都停止后，关闭两端的写入器并返回转发统计。
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger(__name__)

CLIENT = 'client'
UPSTREAM = 'upstream'


@dataclass
class RelayResult:
    """
    转发结果，仅用于日志记录

    Attributes:
        bytes_client_to_upstream: 客户端发往目标主机的字节数
        bytes_upstream_to_client: 目标主机发往客户端的字节数
        first_closed: 最先停止读取的一端（'client' 或 'upstream'）
        error: 终止转发的异常（正常 EOF 时为 None）
    """
    bytes_client_to_upstream: int = 0
    bytes_upstream_to_client: int = 0
    first_closed: Optional[str] = None
    error: Optional[BaseException] = None


def _shutdown_write(writer: asyncio.StreamWriter):
    """半关闭写入方向；不支持时不做处理"""
    try:
        if not writer.is_closing() and writer.can_write_eof():
            writer.write_eof()
    except (ConnectionResetError, BrokenPipeError, OSError) as e:
        logger.debug(f"半关闭失败: {e}")


async def close_writer(writer: asyncio.StreamWriter):
    """关闭写入器并等待底层连接关闭"""
    try:
        writer.close()
        await writer.wait_closed()
    except (ConnectionResetError, BrokenPipeError, OSError):
        pass  # 连接已断开，忽略错误


async def relay(
    client_reader: asyncio.StreamReader,
    client_writer: asyncio.StreamWriter,
    upstream_reader: asyncio.StreamReader,
    upstream_writer: asyncio.StreamWriter,
    buffer_size: int = 32768,
    idle_timeout: Optional[float] = None
) -> RelayResult:
    """
    在客户端和目标主机之间双向转发数据，直到两个方向都停止

    Args:
        client_reader / client_writer: 客户端流
        upstream_reader / upstream_writer: 目标主机流
        buffer_size: 单次读取的最大字节数
        idle_timeout: 两个方向都没有数据的最长时间（秒），None 表示不限制

    Returns:
        RelayResult: 转发统计
    """
    result = RelayResult()
    loop = asyncio.get_running_loop()
    last_activity = loop.time()

    async def pump(source: str, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        nonlocal last_activity
        while True:
            data = await reader.read(buffer_size)
            last_activity = loop.time()
            if not data:
                break
            writer.write(data)
            await writer.drain()
            last_activity = loop.time()
            if source == CLIENT:
                result.bytes_client_to_upstream += len(data)
            else:
                result.bytes_upstream_to_client += len(data)

        logger.debug(f"{source} 端关闭连接")
        if result.first_closed is None:
            result.first_closed = source
        _shutdown_write(writer)

    async def watch_idle():
        # 两个方向共享最后活动时间，只有双方都空闲才超时
        while True:
            remaining = last_activity + idle_timeout - loop.time()
            if remaining <= 0:
                raise asyncio.TimeoutError(f"双向空闲超过 {idle_timeout} 秒")
            await asyncio.sleep(remaining)

    tasks = {
        asyncio.ensure_future(pump(CLIENT, client_reader, upstream_writer)): CLIENT,
        asyncio.ensure_future(pump(UPSTREAM, upstream_reader, client_writer)): UPSTREAM,
    }
    pumps = set(tasks)
    if idle_timeout is not None:
        tasks[asyncio.ensure_future(watch_idle())] = None

    try:
        pending = set(tasks)
        while pending & pumps:
            done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
            for task in done:
                if task.cancelled() or task.exception() is None:
                    continue
                if result.error is None:
                    result.error = task.exception()
                    if result.first_closed is None:
                        result.first_closed = tasks[task]
                    logger.debug(f"{tasks[task] or '空闲'} 转发错误: {result.error!r}")
                for other in pending:
                    other.cancel()
    finally:
        for task in tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        await close_writer(upstream_writer)
        await close_writer(client_writer)

    return result
