from .address import EndpointAddress
from .config import AcceptOptions, ConnectOptions, PluginOptions, ServerConfig, load_config_from_env
from .errors import (
    AcceptError,
    BridgeError,
    ConfigError,
    HandshakeTimeout,
    MalformedResponse,
    TunnelIOError,
    UnsupportedAuthMethod,
    UpstreamConnectError,
    UpstreamRefused,
)
from .server import AcceptLoop, HttpServer, ProxyBridgeServer, Socks5Server, run_bridge

__version__ = "0.1.0"

__all__ = [
    "AcceptError",
    "AcceptLoop",
    "AcceptOptions",
    "BridgeError",
    "ConfigError",
    "ConnectOptions",
    "EndpointAddress",
    "HandshakeTimeout",
    "HttpServer",
    "MalformedResponse",
    "PluginOptions",
    "ProxyBridgeServer",
    "ServerConfig",
    "Socks5Server",
    "TunnelIOError",
    "UnsupportedAuthMethod",
    "UpstreamConnectError",
    "UpstreamRefused",
    "load_config_from_env",
    "run_bridge",
]
