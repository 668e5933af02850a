from __future__ import annotations

import ipaddress
import logging
import os
from dataclasses import dataclass
from typing import Mapping, Optional
from urllib.parse import parse_qsl

from .address import EndpointAddress
from .errors import ConfigError

logger = logging.getLogger("proxybridge.config")

PROTOCOL_SOCKS5 = "socks5"
PROTOCOL_HTTP = "http"
PROTOCOLS = (PROTOCOL_SOCKS5, PROTOCOL_HTTP)

DEFAULT_PROXY_ADDR = EndpointAddress("127.0.0.1", 1080)

_TRUE = ("1", "true", "yes", "on")
_FALSE = ("0", "false", "no", "off")


@dataclass(frozen=True)
class ConnectOptions:
    # Outbound (upstream proxy) socket tuning
    keepalive: Optional[int] = None
    fast_open: bool = False
    mptcp: bool = False
    fwmark: Optional[int] = None
    bind_interface: Optional[str] = None
    bind_addr: Optional[str] = None


@dataclass(frozen=True)
class AcceptOptions:
    # Listener and accepted client socket tuning
    keepalive: Optional[int] = None
    fast_open: bool = False
    mptcp: bool = False


@dataclass(frozen=True)
class PluginOptions:
    """Values carried in the URL-encoded ``SS_PLUGIN_OPTIONS`` string."""

    proxy_protocol: str = PROTOCOL_SOCKS5
    proxy_addr: EndpointAddress = DEFAULT_PROXY_ADDR
    tcp_keep_alive: Optional[int] = None
    tcp_fast_open: Optional[bool] = None
    mptcp: Optional[bool] = None
    ipv6_first: Optional[bool] = None
    outbound_fwmark: Optional[int] = None
    outbound_bind_interface: Optional[str] = None
    outbound_bind_addr: Optional[str] = None

    @classmethod
    def from_query(cls, text: str) -> "PluginOptions":
        values: dict = {}
        for key, raw in parse_qsl(text or "", keep_blank_values=True):
            v = raw.strip()
            if key == "proxy_protocol":
                proto = v.lower()
                if proto not in PROTOCOLS:
                    raise ConfigError(f"proxy_protocol must be one of {', '.join(PROTOCOLS)}, got {raw!r}")
                values[key] = proto
            elif key == "proxy_addr":
                try:
                    values[key] = EndpointAddress.parse(v)
                except ValueError as e:
                    raise ConfigError(f"invalid proxy_addr {raw!r}: {e}") from e
            elif key in ("tcp_keep_alive", "outbound_fwmark"):
                values[key] = _parse_uint(key, v)
            elif key in ("tcp_fast_open", "mptcp", "ipv6_first"):
                values[key] = _parse_bool(key, v)
            elif key == "outbound_bind_interface":
                if not v:
                    raise ConfigError("outbound_bind_interface must not be empty")
                values[key] = v
            elif key == "outbound_bind_addr":
                try:
                    values[key] = str(ipaddress.ip_address(v))
                except ValueError as e:
                    raise ConfigError(f"invalid outbound_bind_addr {raw!r}") from e
            else:
                logger.debug("config: ignoring unknown plugin option %s=%r", key, raw)
        return cls(**values)

    def as_connect_options(self) -> ConnectOptions:
        return ConnectOptions(
            keepalive=self.tcp_keep_alive,
            fast_open=bool(self.tcp_fast_open),
            mptcp=bool(self.mptcp),
            fwmark=self.outbound_fwmark,
            bind_interface=self.outbound_bind_interface,
            bind_addr=self.outbound_bind_addr,
        )

    def as_accept_options(self) -> AcceptOptions:
        return AcceptOptions(
            keepalive=self.tcp_keep_alive,
            fast_open=bool(self.tcp_fast_open),
            mptcp=bool(self.mptcp),
        )


@dataclass(frozen=True)
class ServerConfig:
    # Addresses
    local_addr: EndpointAddress
    proxy_addr: EndpointAddress
    remote_addr: EndpointAddress
    protocol: str = PROTOCOL_SOCKS5
    # Socket options
    accept_opts: AcceptOptions = AcceptOptions()
    connect_opts: ConnectOptions = ConnectOptions()
    ipv6_first: bool = False
    # Timeouts in seconds; 0 = unbounded
    dial_timeout: float = 0.0
    handshake_timeout: float = 0.0
    tunnel_idle_timeout: float = 0.0
    # HTTP CONNECT response limits
    max_response_headers: int = 64
    max_header_bytes: int = 64 * 1024
    # status ticker; 0 = off
    status_interval: float = 0.0


def _parse_bool(key: str, v: str) -> bool:
    s = v.strip().lower()
    if s in _TRUE:
        return True
    if s in _FALSE:
        return False
    raise ConfigError(f"{key} must be a boolean, got {v!r}")


def _parse_uint(key: str, v: str) -> int:
    try:
        n = int(v)
    except ValueError:
        raise ConfigError(f"{key} must be an integer, got {v!r}") from None
    if n < 0:
        raise ConfigError(f"{key} must not be negative, got {n}")
    return n


def _require(env: Mapping[str, str], key: str) -> str:
    v = env.get(key)
    if v is None or not v.strip():
        raise ConfigError(f"require {key}")
    return v.strip()


def _endpoint_env(env: Mapping[str, str], host_key: str, port_key: str) -> EndpointAddress:
    host = _require(env, host_key)
    port = _require(env, port_key)
    try:
        return EndpointAddress.from_host_port(host, port)
    except ValueError as e:
        raise ConfigError(f"{host_key}/{port_key}: {e}") from e


def _float_env(env: Mapping[str, str], key: str, default: str) -> float:
    raw = env.get(key, default)
    try:
        val = float(raw)
    except ValueError:
        raise ConfigError(f"{key} must be a number, got {raw!r}") from None
    return max(0.0, val)


def load_config_from_env(env: Optional[Mapping[str, str]] = None) -> ServerConfig:
    env = os.environ if env is None else env

    remote_addr = _endpoint_env(env, "SS_REMOTE_HOST", "SS_REMOTE_PORT")
    local_addr = _endpoint_env(env, "SS_LOCAL_HOST", "SS_LOCAL_PORT")

    if remote_addr.port == 0:
        raise ConfigError("SS_REMOTE_PORT must not be 0")

    opts = PluginOptions.from_query(env.get("SS_PLUGIN_OPTIONS", ""))
    if opts.proxy_addr.port == 0:
        raise ConfigError("proxy_addr port must not be 0")

    # Bridge-level tuning (not part of the plugin contract)
    dial_timeout = _float_env(env, "PROXYBRIDGE_DIAL_TIMEOUT", "0")
    handshake_timeout = _float_env(env, "PROXYBRIDGE_HANDSHAKE_TIMEOUT", "0")
    tunnel_idle_timeout = _float_env(env, "PROXYBRIDGE_TUNNEL_IDLE_TIMEOUT", "0")
    status_interval = _float_env(env, "PROXYBRIDGE_STATUS_INTERVAL_SECONDS", "0")
    max_response_headers = _parse_uint("PROXYBRIDGE_MAX_RESPONSE_HEADERS", env.get("PROXYBRIDGE_MAX_RESPONSE_HEADERS", "64"))
    max_header_bytes = _parse_uint("PROXYBRIDGE_MAX_HEADER_BYTES", env.get("PROXYBRIDGE_MAX_HEADER_BYTES", str(64 * 1024)))

    return ServerConfig(
        local_addr=local_addr,
        proxy_addr=opts.proxy_addr,
        remote_addr=remote_addr,
        protocol=opts.proxy_protocol,
        accept_opts=opts.as_accept_options(),
        connect_opts=opts.as_connect_options(),
        ipv6_first=bool(opts.ipv6_first),
        dial_timeout=dial_timeout,
        handshake_timeout=handshake_timeout,
        tunnel_idle_timeout=tunnel_idle_timeout,
        max_response_headers=max_response_headers,
        max_header_bytes=max_header_bytes,
        status_interval=status_interval,
    )
