from __future__ import annotations

import ipaddress
from dataclasses import dataclass
from typing import Optional, Union

__all__ = ["EndpointAddress"]

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]


@dataclass(frozen=True)
class EndpointAddress:
    """
    Either a resolved (IP, port) pair or a (hostname, port) pair.

    Used for the upstream proxy and for the final destination. ``str()`` gives
    the ``host:port`` text used on the wire (``[v6]:port`` for IPv6).
    """

    host: str
    port: int

    def __post_init__(self) -> None:
        if not self.host:
            raise ValueError("empty host")
        if not isinstance(self.port, int) or not (0 <= self.port < 65536):
            raise ValueError(f"invalid port {self.port!r}")
        if self.ip is None:
            # raises for empty or over-long labels and unencodable names
            try:
                encoded = self.host.encode("idna")
            except UnicodeError as e:
                raise ValueError(f"invalid hostname {self.host!r}: {e}") from None
            if len(encoded) > 255:
                raise ValueError("hostname longer than 255 bytes")

    @property
    def ascii_host(self) -> str:
        """Host as sent on the wire: IDNA A-labels for names, compressed form for IPs."""
        ip = self.ip
        if ip is not None:
            return ip.compressed
        return self.host.encode("idna").decode("ascii")

    @property
    def ip(self) -> Optional[IPAddress]:
        try:
            return ipaddress.ip_address(self.host)
        except ValueError:
            return None

    @property
    def is_ip(self) -> bool:
        return self.ip is not None

    def __str__(self) -> str:
        ip = self.ip
        if ip is not None and ip.version == 6:
            return f"[{ip.compressed}]:{self.port}"
        return f"{self.host}:{self.port}"

    @classmethod
    def from_host_port(cls, host: str, port: Union[int, str]) -> "EndpointAddress":
        h = (host or "").strip()
        if h.startswith("[") and h.endswith("]"):
            h = h[1:-1]
        try:
            p = int(str(port).strip())
        except ValueError:
            raise ValueError(f"invalid port {port!r}") from None
        return cls(h, p)

    @classmethod
    def parse(cls, text: str, default_port: Optional[int] = None) -> "EndpointAddress":
        """Parse ``ip:port``, ``host:port`` or ``[v6]:port``."""
        s = (text or "").strip()
        if not s:
            raise ValueError("empty address")
        if s.startswith("["):
            end = s.find("]")
            if end < 0:
                raise ValueError(f"unterminated IPv6 literal in {text!r}")
            host, rest = s[1:end], s[end + 1:]
            if rest and not rest.startswith(":"):
                raise ValueError(f"invalid address {text!r}")
            port_s = rest[1:] if rest else ""
        elif s.count(":") == 1:
            host, port_s = s.split(":", 1)
        elif s.count(":") > 1:
            # bare IPv6 literal, no port
            host, port_s = s, ""
        else:
            host, port_s = s, ""
        if not port_s:
            if default_port is None:
                raise ValueError(f"missing port in {text!r}")
            return cls(host, int(default_port))
        return cls.from_host_port(host, port_s)

    def wire_text(self) -> str:
        """``host:port`` using the ASCII host, for request lines and headers."""
        ip = self.ip
        if ip is not None and ip.version == 6:
            return f"[{ip.compressed}]:{self.port}"
        return f"{self.ascii_host}:{self.port}"
