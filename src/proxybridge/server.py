from __future__ import annotations

import asyncio
import logging
import socket
import threading
from typing import Optional, Set, Type

from . import net
from .config import PROTOCOL_HTTP, PROTOCOL_SOCKS5, AcceptOptions, ServerConfig
from .errors import AcceptError, BridgeError, HandshakeTimeout
from .http_connect import http_connect
from .socks5 import socks5_connect
from .status import Health
from .tunnel import TunnelStats, close_writer, pipe_bidirectional

logger = logging.getLogger("proxybridge.server")

ACCEPT_BACKOFF_SECONDS = 1.0


class ConnectionBridge:
    """
    Bridges one accepted client to the fixed destination through the upstream
    proxy: dial upstream -> handshake -> tunnel copy. Subclasses provide the
    handshake.
    """

    protocol = "tcp"

    def __init__(self, config: ServerConfig, health: Optional[Health] = None) -> None:
        self.config = config
        self.health = health

    async def handshake(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        raise NotImplementedError

    async def _handshake(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        tmo = self.config.handshake_timeout
        if not tmo or tmo <= 0:
            await self.handshake(reader, writer)
            return
        try:
            await asyncio.wait_for(self.handshake(reader, writer), timeout=tmo)
        except asyncio.TimeoutError as e:
            raise HandshakeTimeout(tmo) from e

    def describe(self, client_addr: object) -> str:
        return f"{_fmt_peer(client_addr)} <-> {self.config.remote_addr} via {self.config.proxy_addr}"

    async def handle(
        self,
        client_r: asyncio.StreamReader,
        client_w: asyncio.StreamWriter,
        client_addr: object,
    ) -> TunnelStats:
        cfg = self.config
        # 1. Connect proxy
        up_r, up_w = await net.open_connection(cfg.proxy_addr, cfg.connect_opts, cfg.ipv6_first, cfg.dial_timeout)
        try:
            # 2. Handshake
            await self._handshake(up_r, up_w)
            logger.debug("%s tcp tunnel established, %s", self.protocol, self.describe(client_addr))
            if self.health is not None:
                self.health.on_established()
            # 3. Tunnel
            return await pipe_bidirectional(
                client_r,
                client_w,
                up_r,
                up_w,
                idle_timeout=cfg.tunnel_idle_timeout,
                label=self.describe(client_addr),
            )
        finally:
            await close_writer(up_w)


class Socks5Bridge(ConnectionBridge):
    protocol = PROTOCOL_SOCKS5

    async def handshake(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        await socks5_connect(reader, writer, self.config.remote_addr)


class HttpBridge(ConnectionBridge):
    protocol = PROTOCOL_HTTP

    async def handshake(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        await http_connect(
            reader,
            writer,
            self.config.remote_addr,
            self.config.proxy_addr,
            max_headers=self.config.max_response_headers,
            max_bytes=self.config.max_header_bytes,
        )


def _fmt_peer(addr: object) -> str:
    if isinstance(addr, tuple) and len(addr) >= 2:
        host, port = addr[0], addr[1]
        return f"[{host}]:{port}" if ":" in str(host) else f"{host}:{port}"
    return str(addr)


class AcceptLoop:
    """
    Accepts clients forever and runs one bridge task per client.
    Accept failures are logged and retried after ``backoff`` seconds.
    """

    def __init__(
        self,
        listener: socket.socket,
        bridge: ConnectionBridge,
        accept_opts: Optional[AcceptOptions] = None,
        backoff: float = ACCEPT_BACKOFF_SECONDS,
        health: Optional[Health] = None,
    ) -> None:
        self.listener = listener
        self.bridge = bridge
        self.accept_opts = accept_opts or AcceptOptions()
        self.backoff = float(backoff)
        self.health = health
        self._tasks: Set[asyncio.Task] = set()

    @property
    def active(self) -> int:
        return len(self._tasks)

    async def accept(self):
        loop = asyncio.get_running_loop()
        try:
            return await loop.sock_accept(self.listener)
        except OSError as e:
            raise AcceptError(str(e)) from e

    async def run(self) -> None:
        logger.info("%s service started, listening on %s", self.bridge.protocol, _fmt_peer(self.listener.getsockname()))
        while True:
            try:
                conn, client_addr = await self.accept()
            except AcceptError as e:
                logger.error("failed to accept, error: %s", e)
                if self.health is not None:
                    self.health.on_accept_error()
                await asyncio.sleep(self.backoff)
                continue

            logger.debug("accepted %s tcp client %s", self.bridge.protocol, _fmt_peer(client_addr))
            task = asyncio.create_task(self._handle_client(conn, client_addr))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def _handle_client(self, conn: socket.socket, client_addr: object) -> None:
        if self.health is not None:
            self.health.on_accept()
        stats: Optional[TunnelStats] = None
        error: Optional[BaseException] = None
        writer: Optional[asyncio.StreamWriter] = None
        try:
            conn.setblocking(False)
            net.apply_accept_options(conn, self.accept_opts)
            reader, writer = await asyncio.open_connection(sock=conn)
            stats = await self.bridge.handle(reader, writer, client_addr)
        except (BridgeError, OSError) as e:
            error = e
            stats = getattr(e, "stats", None)
            logger.error(
                "handle %s tcp client failed, %s, error: %s",
                self.bridge.protocol, self.bridge.describe(client_addr), e,
            )
        except Exception as e:
            error = e
            logger.exception(
                "handle %s tcp client crashed, %s", self.bridge.protocol, self.bridge.describe(client_addr)
            )
        finally:
            if writer is not None:
                await close_writer(writer)
            else:
                conn.close()
            if self.health is not None:
                self.health.on_closed(
                    up=stats.a2b if stats else 0,
                    down=stats.b2a if stats else 0,
                    error=error,
                )

    async def stop(self) -> None:
        tasks = list(self._tasks)
        for t in tasks:
            t.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)


class ProxyBridgeServer:
    """A listening socket plus an AcceptLoop bound to one bridge protocol."""

    bridge_class: Type[ConnectionBridge] = ConnectionBridge

    def __init__(
        self,
        config: ServerConfig,
        listener: socket.socket,
        health: Optional[Health] = None,
        backoff: float = ACCEPT_BACKOFF_SECONDS,
    ) -> None:
        self.config = config
        self.listener = listener
        self.health = health
        self.bridge = self.bridge_class(config, health)
        self.accept_loop = AcceptLoop(listener, self.bridge, config.accept_opts, backoff=backoff, health=health)
        self._run_task: Optional[asyncio.Task] = None

    @classmethod
    async def bind(cls, config: ServerConfig, health: Optional[Health] = None, **kw) -> "ProxyBridgeServer":
        """Bind the local listener. Bind errors propagate; they are fatal at startup."""
        if cls is ProxyBridgeServer:
            cls = server_class_for(config.protocol)
        listener = await net.bind_listener(config.local_addr, config.accept_opts, config.ipv6_first)
        return cls(config, listener, health=health, **kw)

    @property
    def local_addr(self):
        return self.listener.getsockname()

    async def run(self) -> None:
        self._run_task = asyncio.current_task()
        try:
            await self.accept_loop.run()
        finally:
            await self.accept_loop.stop()
            self.listener.close()

    async def serve_until(self, stop_evt: threading.Event) -> None:
        task = asyncio.create_task(self.run())
        self._run_task = task
        try:
            while not stop_evt.is_set() and not task.done():
                await asyncio.sleep(0.2)
        finally:
            await self.stop()
        if task.done() and not task.cancelled() and task.exception() is not None:
            raise task.exception()  # type: ignore[misc]

    async def stop(self) -> None:
        t = self._run_task
        if t is not None and not t.done():
            t.cancel()
            await asyncio.gather(t, return_exceptions=True)
        else:
            await self.accept_loop.stop()
            self.listener.close()


class Socks5Server(ProxyBridgeServer):
    bridge_class = Socks5Bridge


class HttpServer(ProxyBridgeServer):
    bridge_class = HttpBridge


def server_class_for(protocol: str) -> Type[ProxyBridgeServer]:
    if protocol == PROTOCOL_SOCKS5:
        return Socks5Server
    if protocol == PROTOCOL_HTTP:
        return HttpServer
    raise ValueError(f"unknown proxy protocol {protocol!r}")


def run_bridge(stop_event: threading.Event, config: ServerConfig, health: Optional[Health] = None) -> None:
    """
    Blocking entry-point: binds and serves until stop_event is set.
    Bind errors propagate to the caller.
    """
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    async def _main():
        server = await ProxyBridgeServer.bind(config, health=health)
        await server.serve_until(stop_event)

    try:
        loop.run_until_complete(_main())
    finally:
        pending = asyncio.all_tasks(loop)
        for t in pending:
            t.cancel()
        if pending:
            loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
        loop.close()
        asyncio.set_event_loop(None)
