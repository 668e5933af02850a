from __future__ import annotations

import asyncio
import ipaddress
import struct
from dataclasses import dataclass
from typing import Iterable, Tuple

from .address import EndpointAddress
from .errors import MalformedResponse, UnsupportedAuthMethod, UpstreamRefused

SOCKS5_VERSION = 0x05

SOCKS5_AUTH_METHOD_NONE = 0x00
SOCKS5_AUTH_METHOD_GSSAPI = 0x01
SOCKS5_AUTH_METHOD_PASSWORD = 0x02
SOCKS5_AUTH_METHOD_NOT_ACCEPTABLE = 0xFF

SOCKS5_CMD_TCP_CONNECT = 0x01

SOCKS5_ADDR_TYPE_IPV4 = 0x01
SOCKS5_ADDR_TYPE_DOMAIN_NAME = 0x03
SOCKS5_ADDR_TYPE_IPV6 = 0x04

SOCKS5_REPLY_SUCCEEDED = 0x00

REPLY_NAMES = {
    0x00: "succeeded",
    0x01: "general failure",
    0x02: "connection not allowed by ruleset",
    0x03: "network unreachable",
    0x04: "host unreachable",
    0x05: "connection refused",
    0x06: "TTL expired",
    0x07: "command not supported",
    0x08: "address type not supported",
}


def reply_name(code: int) -> str:
    return REPLY_NAMES.get(code, f"unknown reply {code:#04x}")

AUTH_METHOD_NAMES = {
    SOCKS5_AUTH_METHOD_NONE: "no authentication",
    SOCKS5_AUTH_METHOD_GSSAPI: "GSSAPI",
    SOCKS5_AUTH_METHOD_PASSWORD: "username/password",
    SOCKS5_AUTH_METHOD_NOT_ACCEPTABLE: "no acceptable methods",
}


def auth_method_name(method: int) -> str:
    return AUTH_METHOD_NAMES.get(method, f"unknown method {method:#04x}")


@dataclass(frozen=True)
class ConnectResponse:
    reply: int
    bound_host: str
    bound_port: int


def encode_handshake_request(methods: Iterable[int]) -> bytes:
    m = bytes(methods)
    if not 0 < len(m) < 256:
        raise ValueError("socks5 handshake needs 1..255 methods")
    return bytes([SOCKS5_VERSION, len(m)]) + m


def encode_address(addr: EndpointAddress) -> bytes:
    """ATYP + address payload + big-endian port."""
    ip = addr.ip
    if ip is not None and ip.version == 4:
        body = bytes([SOCKS5_ADDR_TYPE_IPV4]) + ip.packed
    elif ip is not None:
        body = bytes([SOCKS5_ADDR_TYPE_IPV6]) + ip.packed
    else:
        host_b = addr.ascii_host.encode("ascii")
        if len(host_b) > 255:
            raise ValueError("socks5 hostname too long")
        body = bytes([SOCKS5_ADDR_TYPE_DOMAIN_NAME, len(host_b)]) + host_b
    return body + struct.pack("!H", addr.port)


def encode_connect_request(addr: EndpointAddress) -> bytes:
    # VER, CMD=CONNECT, RSV
    return bytes([SOCKS5_VERSION, SOCKS5_CMD_TCP_CONNECT, 0x00]) + encode_address(addr)


async def _read_exactly(reader: asyncio.StreamReader, n: int, what: str) -> bytes:
    try:
        return await reader.readexactly(n)
    except asyncio.IncompleteReadError as e:
        raise MalformedResponse(f"socks5 {what} truncated ({len(e.partial)}/{n} bytes)") from e


def _check_version(ver: int, what: str) -> None:
    if ver != SOCKS5_VERSION:
        raise MalformedResponse(f"socks5 {what} has version {ver:#04x}")


async def read_handshake_response(reader: asyncio.StreamReader) -> int:
    """Return the chosen authentication method."""
    data = await _read_exactly(reader, 2, "handshake response")
    _check_version(data[0], "handshake response")
    return data[1]


async def read_address(reader: asyncio.StreamReader, atyp: int) -> Tuple[str, int]:
    if atyp == SOCKS5_ADDR_TYPE_IPV4:
        raw = await _read_exactly(reader, 4 + 2, "bound address")
        host = str(ipaddress.IPv4Address(raw[:4]))
    elif atyp == SOCKS5_ADDR_TYPE_IPV6:
        raw = await _read_exactly(reader, 16 + 2, "bound address")
        host = str(ipaddress.IPv6Address(raw[:16]))
    elif atyp == SOCKS5_ADDR_TYPE_DOMAIN_NAME:
        ln = (await _read_exactly(reader, 1, "bound address"))[0]
        raw = await _read_exactly(reader, ln + 2, "bound address")
        host = raw[:ln].decode("latin1")
    else:
        raise MalformedResponse(f"socks5 unknown address type {atyp:#04x}")
    (port,) = struct.unpack("!H", raw[-2:])
    return host, port


async def read_connect_response(reader: asyncio.StreamReader) -> ConnectResponse:
    """Read VER, REP, RSV, ATYP and the complete bound address."""
    hdr = await _read_exactly(reader, 4, "connect response")
    _check_version(hdr[0], "connect response")
    host, port = await read_address(reader, hdr[3])
    return ConnectResponse(reply=hdr[1], bound_host=host, bound_port=port)


async def socks5_connect(
    reader: asyncio.StreamReader,
    writer: asyncio.StreamWriter,
    dest: EndpointAddress,
) -> ConnectResponse:
    """
    Ask the upstream SOCKS5 proxy to connect to dest.

    Offers only "no authentication". Raises UnsupportedAuthMethod before any
    connect request is sent if the proxy picks anything else, and
    UpstreamRefused when the reply code is not "succeeded".
    """
    writer.write(encode_handshake_request([SOCKS5_AUTH_METHOD_NONE]))
    await writer.drain()
    method = await read_handshake_response(reader)
    if method != SOCKS5_AUTH_METHOD_NONE:
        raise UnsupportedAuthMethod(method, auth_method_name(method))

    writer.write(encode_connect_request(dest))
    await writer.drain()
    resp = await read_connect_response(reader)
    if resp.reply != SOCKS5_REPLY_SUCCEEDED:
        raise UpstreamRefused(resp.reply, reply_name(resp.reply))
    return resp
