from __future__ import annotations

import argparse
import logging
import os
import signal
import threading

from .config import load_config_from_env
from .errors import ConfigError
from .server import run_bridge
from .status import Health, status_ticker

logger = logging.getLogger("proxybridge.main")


def _setup_logging() -> None:
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(
            level=os.environ.get("PROXYBRIDGE_LOG_LEVEL", "INFO").upper(),
            format="%(asctime)s [%(levelname)s] %(processName)s(%(process)d)/%(threadName)s: %(message)s",
        )


def _parse_cli_args(argv: list[str] | None = None) -> argparse.Namespace:
    """
    CLI to override environment variables. Precedence: CLI > env > defaults.
    When launched as a shadowsocks plugin everything arrives through SS_* env vars.
    """
    ap = argparse.ArgumentParser(
        prog="proxybridge",
        description="Shadowsocks plugin: bridge local connections to a fixed destination through a SOCKS5 or HTTP CONNECT proxy.",
    )
    # Only set values when flags are provided (no default), so env/defaults remain if omitted.
    ap.add_argument("--remote-host", dest="remote_host", help="Override SS_REMOTE_HOST (final destination host)")
    ap.add_argument("--remote-port", dest="remote_port", type=int, help="Override SS_REMOTE_PORT")
    ap.add_argument("--local-host", dest="local_host", help="Override SS_LOCAL_HOST (listen host)")
    ap.add_argument("--local-port", dest="local_port", type=int, help="Override SS_LOCAL_PORT")
    ap.add_argument("--plugin-opts", dest="plugin_opts", help="Override SS_PLUGIN_OPTIONS, e.g. 'proxy_protocol=http&proxy_addr=127.0.0.1:8080'")
    ap.add_argument("--log-level", dest="log_level", help="Override PROXYBRIDGE_LOG_LEVEL (e.g., WARNING, INFO, DEBUG)")
    ap.add_argument("--status-interval", dest="status_interval", type=float, help="Override PROXYBRIDGE_STATUS_INTERVAL_SECONDS (0 = off)")
    ap.add_argument("--dial-timeout", dest="dial_timeout", type=float, help="Override PROXYBRIDGE_DIAL_TIMEOUT (seconds, 0 = none)")
    ap.add_argument("--handshake-timeout", dest="handshake_timeout", type=float, help="Override PROXYBRIDGE_HANDSHAKE_TIMEOUT (seconds, 0 = none)")
    ap.add_argument("--idle-timeout", dest="idle_timeout", type=float, help="Override PROXYBRIDGE_TUNNEL_IDLE_TIMEOUT (seconds, 0 = none)")
    return ap.parse_args(argv)


CLI_TO_ENV = {
    "remote_host": "SS_REMOTE_HOST",
    "remote_port": "SS_REMOTE_PORT",
    "local_host": "SS_LOCAL_HOST",
    "local_port": "SS_LOCAL_PORT",
    "plugin_opts": "SS_PLUGIN_OPTIONS",
    "log_level": "PROXYBRIDGE_LOG_LEVEL",
    "status_interval": "PROXYBRIDGE_STATUS_INTERVAL_SECONDS",
    "dial_timeout": "PROXYBRIDGE_DIAL_TIMEOUT",
    "handshake_timeout": "PROXYBRIDGE_HANDSHAKE_TIMEOUT",
    "idle_timeout": "PROXYBRIDGE_TUNNEL_IDLE_TIMEOUT",
}


def main(argv: list[str] | None = None) -> int:
    args = _parse_cli_args(argv)
    for attr, env_key in CLI_TO_ENV.items():
        if getattr(args, attr, None) is not None:
            os.environ[env_key] = str(getattr(args, attr))

    _setup_logging()

    try:
        cfg = load_config_from_env()
    except ConfigError as e:
        logger.error("config: %s", e)
        return 1

    logger.info(
        "config: protocol=%s local=%s proxy=%s remote=%s ipv6_first=%s dial_timeout=%.1fs handshake_timeout=%.1fs idle_timeout=%.1fs",
        cfg.protocol,
        cfg.local_addr,
        cfg.proxy_addr,
        cfg.remote_addr,
        cfg.ipv6_first,
        cfg.dial_timeout,
        cfg.handshake_timeout,
        cfg.tunnel_idle_timeout,
    )

    stop = threading.Event()

    def handle_signal(signum, _frame):
        logger.info("signal %s received, shutting down", signum)
        stop.set()

    for sig in ("SIGINT", "SIGTERM"):
        if hasattr(signal, sig):
            signal.signal(getattr(signal, sig), handle_signal)

    health = Health()
    if cfg.status_interval > 0:
        ticker_t = threading.Thread(
            target=status_ticker, name="status-ticker", args=(health, stop, cfg.status_interval), daemon=True
        )
        ticker_t.start()

    try:
        run_bridge(stop, cfg, health=health)
    except OSError as e:
        logger.error("failed to listen on %s: %s", cfg.local_addr, e)
        return 1
    finally:
        stop.set()

    logger.info("stopped")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
