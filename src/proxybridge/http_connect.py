from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from .address import EndpointAddress
from .errors import MalformedResponse, UpstreamRefused

MAX_HEADERS = 64
MAX_HEADER_BYTES = 64 * 1024

HEADER_TERMINATOR = b"\r\n\r\n"

_STATUS_RE = re.compile(r"^HTTP/1\.([01]) ([0-9]{3})(?: (.*))?$")
_TOKEN_RE = re.compile(r"^[!#$%&'*+\-.^_`|~0-9A-Za-z]+$")


@dataclass(frozen=True)
class HttpResponse:
    version: str
    status: int
    reason: str
    headers: List[Tuple[str, str]] = field(default_factory=list)

    def header(self, name: str) -> Optional[str]:
        n = name.lower()
        for k, v in self.headers:
            if k.lower() == n:
                return v
        return None


def build_connect_request(dest: EndpointAddress, proxy: EndpointAddress) -> bytes:
    # Host names the upstream proxy itself, not the destination
    return f"CONNECT {dest.wire_text()} HTTP/1.1\r\nHost: {proxy.wire_text()}\r\n\r\n".encode("ascii")


async def read_response_head(reader: asyncio.StreamReader, max_bytes: int = MAX_HEADER_BYTES) -> bytes:
    """
    Read line by line until the buffer ends with CRLFCRLF.

    Never reads past the terminator, so whatever the proxy sends after the
    header block stays in the reader for the tunnel.
    """
    buf = bytearray()
    while not buf.endswith(HEADER_TERMINATOR):
        try:
            line = await reader.readuntil(b"\n")
        except asyncio.IncompleteReadError as e:
            raise MalformedResponse(
                f"http response truncated after {len(buf) + len(e.partial)} bytes"
            ) from e
        except asyncio.LimitOverrunError as e:
            raise MalformedResponse("http response line exceeds the stream limit") from e
        buf += line
        if max_bytes and len(buf) > max_bytes:
            raise MalformedResponse(f"http response header block exceeds {max_bytes} bytes")
    return bytes(buf)


def parse_response(head: bytes, max_headers: int = MAX_HEADERS) -> HttpResponse:
    """Parse a complete status line + header block (terminator included)."""
    if not head.endswith(HEADER_TERMINATOR):
        raise MalformedResponse("http response is partial")
    lines = [ln[:-1] if ln.endswith("\r") else ln for ln in head[: -len(HEADER_TERMINATOR)].decode("latin1").split("\n")]
    # Tolerate empty lines before the status line
    while lines and not lines[0]:
        lines.pop(0)
    if not lines:
        raise MalformedResponse("http response has no status line")

    m = _STATUS_RE.match(lines[0])
    if not m:
        raise MalformedResponse(f"malformed http status line {lines[0][:128]!r}")
    version = f"HTTP/1.{m.group(1)}"
    status = int(m.group(2))
    reason = m.group(3) or ""

    headers: List[Tuple[str, str]] = []
    for ln in lines[1:]:
        if not ln:
            # a blank line before the terminator means the framing is off
            raise MalformedResponse("http response is partial")
        if len(headers) >= max_headers:
            raise MalformedResponse(f"http response has more than {max_headers} headers")
        name, sep, value = ln.partition(":")
        if not sep or not _TOKEN_RE.match(name):
            raise MalformedResponse(f"malformed http header line {ln[:128]!r}")
        headers.append((name, value.strip(" \t")))
    return HttpResponse(version=version, status=status, reason=reason, headers=headers)


async def http_connect(
    reader: asyncio.StreamReader,
    writer: asyncio.StreamWriter,
    dest: EndpointAddress,
    proxy: EndpointAddress,
    max_headers: int = MAX_HEADERS,
    max_bytes: int = MAX_HEADER_BYTES,
) -> HttpResponse:
    """Send CONNECT for dest and wait for a 200. Other statuses raise UpstreamRefused."""
    writer.write(build_connect_request(dest, proxy))
    await writer.drain()
    head = await read_response_head(reader, max_bytes=max_bytes)
    resp = parse_response(head, max_headers=max_headers)
    if resp.status != 200:
        raise UpstreamRefused(resp.status, resp.reason)
    return resp
