from __future__ import annotations

from typing import Optional

__all__ = [
    "BridgeError",
    "ConfigError",
    "AcceptError",
    "UpstreamConnectError",
    "UnsupportedAuthMethod",
    "UpstreamRefused",
    "MalformedResponse",
    "HandshakeTimeout",
    "TunnelIOError",
]


class BridgeError(Exception):
    """Base class for everything that ends one bridged connection."""


class ConfigError(ValueError):
    """Invalid or missing plugin configuration (fatal at startup)."""


class AcceptError(BridgeError):
    """Accepting a client failed; the accept loop backs off and retries."""


class UpstreamConnectError(BridgeError):
    def __init__(self, address: object, cause: Optional[BaseException] = None) -> None:
        self.address = address
        self.cause = cause
        msg = f"connect to upstream {address} failed"
        if cause is not None:
            msg = f"{msg}: {cause}"
        super().__init__(msg)


class UnsupportedAuthMethod(BridgeError):
    # Only "no authentication" (0x00) is implemented
    def __init__(self, method: int, name: str = "") -> None:
        self.method = int(method)
        self.name = name
        label = f"{self.method:#04x} ({name})" if name else f"{self.method:#04x}"
        super().__init__(f"socks5 only NONE method is supported, but chosen method is {label}")


class UpstreamRefused(BridgeError):
    """Handshake completed but the upstream reported failure.

    ``code`` is the SOCKS5 reply code or the HTTP status code.
    """

    def __init__(self, code: int, detail: str = "") -> None:
        self.code = int(code)
        self.detail = detail
        msg = f"upstream refused with {self.code}"
        if detail:
            msg = f"{msg} ({detail})"
        super().__init__(msg)


class MalformedResponse(BridgeError):
    """Handshake bytes were truncated or could not be parsed."""


class HandshakeTimeout(BridgeError):
    def __init__(self, seconds: float) -> None:
        self.seconds = float(seconds)
        super().__init__(f"handshake did not complete within {self.seconds:.1f}s")


class TunnelIOError(BridgeError):
    """A read or write failed while relaying an established tunnel."""
