"""Loopback servers and helpers shared by the socket-level tests."""

from __future__ import annotations

import asyncio
import contextlib
from typing import AsyncIterator, Awaitable, Callable, List, Tuple

from aiohttp.test_utils import TestClient, TestServer

from control.api import create_app
from control.registry import ProxyRegistry
from network.proxy import Proxy, format_address, parse_address

Handler = Callable[[asyncio.StreamReader, asyncio.StreamWriter], Awaitable[None]]


class Upstream:
    """A loopback TCP server recording what it received."""

    def __init__(self) -> None:
        self.received: List[bytes] = []
        self.address = ""

    @property
    def data(self) -> bytes:
        return b"".join(self.received)


@contextlib.asynccontextmanager
async def serve(handler: Handler) -> AsyncIterator[str]:
    server = await asyncio.start_server(handler, host="127.0.0.1", port=0)
    host, port = server.sockets[0].getsockname()[:2]
    try:
        yield format_address(host, port)
    finally:
        server.close()


@contextlib.asynccontextmanager
async def echo_upstream() -> AsyncIterator[Upstream]:
    upstream = Upstream()

    async def handle(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        try:
            while True:
                data = await reader.read(65536)
                if not data:
                    break
                upstream.received.append(data)
                writer.write(data)
                await writer.drain()
        except ConnectionError:
            pass
        finally:
            writer.close()

    async with serve(handle) as address:
        upstream.address = address
        yield upstream


@contextlib.asynccontextmanager
async def running_proxy(upstream: str, name: str = "test", **kwargs) -> AsyncIterator[Proxy]:
    proxy = Proxy(name=name, listen="127.0.0.1:0", upstream=upstream, **kwargs)
    await proxy.start()
    try:
        yield proxy
    finally:
        await proxy.destroy()


@contextlib.asynccontextmanager
async def api_client(registry: ProxyRegistry) -> AsyncIterator[TestClient]:
    client = TestClient(TestServer(create_app(registry)))
    await client.start_server()
    try:
        yield client
    finally:
        await client.close()
        await registry.close()


async def connect(address: str) -> Tuple[asyncio.StreamReader, asyncio.StreamWriter]:
    host, port = parse_address(address)
    return await asyncio.open_connection(host, port)


async def read_or_reset(reader: asyncio.StreamReader, size: int = 65536, timeout: float = 2.0) -> bytes:
    """Read once; a reset connection reads as EOF."""
    try:
        return await asyncio.wait_for(reader.read(size), timeout)
    except ConnectionResetError:
        return b""


async def read_all(reader: asyncio.StreamReader, timeout: float = 2.0) -> bytes:
    try:
        return await asyncio.wait_for(reader.read(), timeout)
    except ConnectionResetError:
        return b""


async def round_trip(address: str, payload: bytes) -> bytes:
    reader, writer = await connect(address)
    try:
        writer.write(payload)
        await writer.drain()
        return await asyncio.wait_for(reader.readexactly(len(payload)), 5.0)
    finally:
        writer.close()
