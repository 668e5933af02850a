from __future__ import annotations

import asyncio
import ipaddress
import logging
import socket
import sys
from typing import List, Optional, Set, Tuple

from .address import EndpointAddress
from .config import AcceptOptions, ConnectOptions
from .errors import UpstreamConnectError

logger = logging.getLogger("proxybridge.net")

LISTEN_BACKLOG = 1024
FASTOPEN_QUEUE = 1024

# Constants the socket module does not always export (linux/tcp.h, asm/socket.h)
_IS_LINUX = sys.platform.startswith("linux")
TCP_FASTOPEN_CONNECT = getattr(socket, "TCP_FASTOPEN_CONNECT", 30 if _IS_LINUX else None)
SO_MARK = getattr(socket, "SO_MARK", 36 if _IS_LINUX else None)
IPPROTO_MPTCP = getattr(socket, "IPPROTO_MPTCP", 262 if _IS_LINUX else None)

Target = Tuple[int, tuple]

_warned: Set[str] = set()


def _warn_once(key: str, msg: str, *args) -> None:
    if key in _warned:
        return
    _warned.add(key)
    logger.warning(msg, *args)


async def resolve(host: str, port: int, ipv6_first: bool = False) -> List[Target]:
    """
    Resolve host to (family, sockaddr) pairs in connect order.
    IP literals are returned as-is without a lookup.
    """
    try:
        ip = ipaddress.ip_address(host)
    except ValueError:
        ip = None
    if ip is not None:
        if ip.version == 6:
            return [(socket.AF_INET6, (ip.compressed, port, 0, 0))]
        return [(socket.AF_INET, (ip.compressed, port))]

    loop = asyncio.get_running_loop()
    infos = await loop.getaddrinfo(host, port, type=socket.SOCK_STREAM, proto=socket.IPPROTO_TCP)
    seen = set()
    v4: List[Target] = []
    v6: List[Target] = []
    for family, _type, _proto, _canon, sockaddr in infos:
        key = (family, sockaddr)
        if key in seen:
            continue
        seen.add(key)
        if family == socket.AF_INET6:
            v6.append((family, sockaddr))
        elif family == socket.AF_INET:
            v4.append((family, sockaddr))
    return v6 + v4 if ipv6_first else v4 + v6


def _new_socket(family: int, mptcp: bool) -> socket.socket:
    if mptcp:
        if IPPROTO_MPTCP is None:
            _warn_once("mptcp", "net: MPTCP is not available on this platform, using TCP")
        else:
            try:
                return socket.socket(family, socket.SOCK_STREAM, IPPROTO_MPTCP)
            except OSError as e:
                _warn_once("mptcp", "net: MPTCP socket failed (%s), using TCP", e)
    return socket.socket(family, socket.SOCK_STREAM)


def set_keepalive(sock: socket.socket, seconds: Optional[int]) -> None:
    if not seconds:
        return
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_KEEPALIVE, 1)
        if hasattr(socket, "TCP_KEEPIDLE"):
            sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_KEEPIDLE, int(seconds))
        elif hasattr(socket, "TCP_KEEPALIVE"):
            # macOS spelling
            sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_KEEPALIVE, int(seconds))
        if hasattr(socket, "TCP_KEEPINTVL"):
            sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_KEEPINTVL, int(seconds))
    except OSError as e:
        _warn_once("keepalive", "net: failed to enable TCP keepalive: %s", e)


def apply_connect_options(sock: socket.socket, family: int, opts: ConnectOptions) -> None:
    """Apply outbound options before connect(). Bind failures propagate."""
    if opts.fwmark is not None:
        if SO_MARK is None:
            _warn_once("fwmark", "net: SO_MARK is not supported on this platform")
        else:
            try:
                sock.setsockopt(socket.SOL_SOCKET, SO_MARK, int(opts.fwmark))
            except OSError as e:
                _warn_once("fwmark", "net: failed to set SO_MARK=%d: %s", opts.fwmark, e)
    if opts.bind_interface:
        if not hasattr(socket, "SO_BINDTODEVICE"):
            _warn_once("bind_interface", "net: binding to an interface is not supported on this platform")
        else:
            try:
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_BINDTODEVICE, opts.bind_interface.encode() + b"\0")
            except PermissionError as e:
                _warn_once("bind_interface", "net: SO_BINDTODEVICE failed for %s: %s", opts.bind_interface, e)
    if opts.bind_addr:
        ip = ipaddress.ip_address(opts.bind_addr)
        want = socket.AF_INET6 if ip.version == 6 else socket.AF_INET
        if want != family:
            raise OSError(f"outbound bind address {opts.bind_addr} does not match the upstream address family")
        sock.bind((opts.bind_addr, 0))
    set_keepalive(sock, opts.keepalive)
    if opts.fast_open:
        if TCP_FASTOPEN_CONNECT is None:
            _warn_once("fastopen", "net: TCP Fast Open is not supported for outbound sockets on this platform")
        else:
            try:
                sock.setsockopt(socket.IPPROTO_TCP, TCP_FASTOPEN_CONNECT, 1)
            except OSError as e:
                _warn_once("fastopen", "net: failed to enable TCP Fast Open: %s", e)


def apply_accept_options(sock: socket.socket, opts: AcceptOptions) -> None:
    set_keepalive(sock, opts.keepalive)


async def _dial(addr: EndpointAddress, opts: ConnectOptions, ipv6_first: bool) -> Tuple[asyncio.StreamReader, asyncio.StreamWriter]:
    try:
        targets = await resolve(addr.host, addr.port, ipv6_first)
    except OSError as e:
        raise UpstreamConnectError(addr, e) from e
    loop = asyncio.get_running_loop()
    last_err: Optional[BaseException] = None
    for family, sockaddr in targets:
        sock = _new_socket(family, opts.mptcp)
        try:
            sock.setblocking(False)
            apply_connect_options(sock, family, opts)
            await loop.sock_connect(sock, sockaddr)
            return await asyncio.open_connection(sock=sock)
        except OSError as e:
            sock.close()
            last_err = e
            logger.debug("net: connect %s (%s) failed: %s", addr, sockaddr[0], e)
        except BaseException:
            sock.close()
            raise
    if last_err is None:
        last_err = OSError(f"no addresses for {addr.host}")
    raise UpstreamConnectError(addr, last_err) from last_err


async def open_connection(
    addr: EndpointAddress,
    opts: ConnectOptions,
    ipv6_first: bool = False,
    timeout: float = 0.0,
) -> Tuple[asyncio.StreamReader, asyncio.StreamWriter]:
    """Dial addr with outbound options. Any failure is an UpstreamConnectError."""
    if timeout and timeout > 0:
        try:
            return await asyncio.wait_for(_dial(addr, opts, ipv6_first), timeout=timeout)
        except asyncio.TimeoutError as e:
            raise UpstreamConnectError(addr, OSError(f"timed out after {timeout:.1f}s")) from e
    return await _dial(addr, opts, ipv6_first)


async def bind_listener(addr: EndpointAddress, opts: AcceptOptions, ipv6_first: bool = False) -> socket.socket:
    """Bind a non-blocking listening socket on the first local address that works."""
    targets = await resolve(addr.host, addr.port, ipv6_first)
    last_err: Optional[OSError] = None
    for family, sockaddr in targets:
        sock = _new_socket(family, opts.mptcp)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind(sockaddr)
            if opts.fast_open:
                if hasattr(socket, "TCP_FASTOPEN"):
                    try:
                        sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_FASTOPEN, FASTOPEN_QUEUE)
                    except OSError as e:
                        _warn_once("fastopen-listen", "net: failed to enable TCP Fast Open on listener: %s", e)
                else:
                    _warn_once("fastopen-listen", "net: TCP Fast Open is not supported for listeners on this platform")
            sock.listen(LISTEN_BACKLOG)
            sock.setblocking(False)
            return sock
        except OSError as e:
            sock.close()
            last_err = e
            logger.debug("net: bind %s (%s) failed: %s", addr, sockaddr[0], e)
    raise last_err or OSError(f"no addresses to bind for {addr.host}")
