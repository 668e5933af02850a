"""Shared helpers: in-memory streams and scripted fake upstream proxies."""

import asyncio
import socket
from typing import Awaitable, Callable, List, Optional

import pytest

from proxybridge.address import EndpointAddress
from proxybridge.config import PROTOCOL_SOCKS5, ServerConfig

LOCALHOST = "127.0.0.1"


class FakeWriter:
    """Collects everything written; enough of StreamWriter for the codecs."""

    def __init__(self) -> None:
        self.buffer = bytearray()
        self.writes: List[bytes] = []
        self.closed = False

    def write(self, data: bytes) -> None:
        self.writes.append(bytes(data))
        self.buffer += data

    async def drain(self) -> None:
        await asyncio.sleep(0)

    def is_closing(self) -> bool:
        return self.closed

    def close(self) -> None:
        self.closed = True

    async def wait_closed(self) -> None:
        return None


def make_reader(data: bytes = b"", eof: bool = True) -> asyncio.StreamReader:
    reader = asyncio.StreamReader()
    if data:
        reader.feed_data(data)
    if eof:
        reader.feed_eof()
    return reader


def closed_port() -> int:
    """A local port with nothing listening on it."""
    s = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    s.bind((LOCALHOST, 0))
    port = s.getsockname()[1]
    s.close()
    return port


def make_config(proxy_port: int, protocol: str = PROTOCOL_SOCKS5, **overrides) -> ServerConfig:
    values = dict(
        local_addr=EndpointAddress(LOCALHOST, 0),
        proxy_addr=EndpointAddress(LOCALHOST, proxy_port),
        remote_addr=EndpointAddress("example.com", 443),
        protocol=protocol,
    )
    values.update(overrides)
    return ServerConfig(**values)


Script = Callable[[asyncio.StreamReader, asyncio.StreamWriter], Awaitable[None]]


class FakeUpstream:
    """
    Listens on 127.0.0.1:<ephemeral> and runs ``script`` for each connection.
    ``done`` resolves once the first connection's script finishes.
    """

    def __init__(self, script: Script) -> None:
        self.script = script
        self.server: Optional[asyncio.AbstractServer] = None
        self.connections = 0
        self.done: Optional[asyncio.Future] = None

    async def start(self) -> "FakeUpstream":
        self.done = asyncio.get_running_loop().create_future()
        self.server = await asyncio.start_server(self._handle, LOCALHOST, 0)
        return self

    @property
    def port(self) -> int:
        assert self.server is not None
        return self.server.sockets[0].getsockname()[1]

    async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self.connections += 1
        try:
            await self.script(reader, writer)
        except Exception as e:
            if not self.done.done():
                self.done.set_exception(e)
        else:
            if not self.done.done():
                self.done.set_result(True)
        finally:
            writer.close()

    async def close(self) -> None:
        if self.server is not None:
            self.server.close()
            await self.server.wait_closed()


async def wait_until(predicate: Callable[[], bool], timeout: float = 5.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


@pytest.fixture
def plugin_env():
    return {
        "SS_REMOTE_HOST": "example.com",
        "SS_REMOTE_PORT": "443",
        "SS_LOCAL_HOST": "127.0.0.1",
        "SS_LOCAL_PORT": "1080",
    }


async def read_to_eof(reader: asyncio.StreamReader, timeout: float = 5.0) -> bytes:
    """Read until the peer closes. A reset counts as closed (unread data makes Linux send RST)."""
    try:
        return await asyncio.wait_for(reader.read(), timeout)
    except ConnectionResetError:
        return b""
