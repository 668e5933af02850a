from __future__ import annotations

import logging
import threading
import time
from collections import Counter
from dataclasses import dataclass, field

from colorama import Fore, Style, init as colorama_init

colorama_init(autoreset=True)
logger = logging.getLogger("proxybridge.status")

__all__ = [
    "Health",
    "humanize_bytes",
    "humanize_duration",
    "status_line",
    "status_ticker",
]


def humanize_bytes(n: int) -> str:
    try:
        n = int(n)
    except (TypeError, ValueError):
        return "0B"
    units = ["B", "KB", "MB", "GB", "TB"]
    f = float(n)
    u = 0
    while f >= 1024.0 and u < len(units) - 1:
        f /= 1024.0
        u += 1
    if u == 0:
        return f"{int(f)}{units[u]}"
    return f"{f:.1f}{units[u]}"


def humanize_duration(seconds: float) -> str:
    try:
        s = float(seconds)
    except (TypeError, ValueError):
        s = 0.0
    s = max(0.0, s)
    m, s = divmod(int(round(s)), 60)
    h, m = divmod(m, 60)
    if h:
        return f"{h}h{m}m{s}s"
    if m:
        return f"{m}m{s}s"
    return f"{s}s"


@dataclass
class Health:
    """Counters shared between the event loop (writer) and the ticker thread (reader)."""

    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)
    started_at: float = field(default_factory=time.time)
    accepted: int = 0
    active: int = 0
    established: int = 0
    accept_errors: int = 0
    bytes_up: int = 0
    bytes_down: int = 0
    failures: Counter = field(default_factory=Counter)

    def on_accept(self) -> None:
        with self.lock:
            self.accepted += 1
            self.active += 1

    def on_accept_error(self) -> None:
        with self.lock:
            self.accept_errors += 1

    def on_established(self) -> None:
        with self.lock:
            self.established += 1

    def on_closed(self, up: int = 0, down: int = 0, error: BaseException | None = None) -> None:
        with self.lock:
            self.active = max(0, self.active - 1)
            self.bytes_up += max(0, up)
            self.bytes_down += max(0, down)
            if error is not None:
                self.failures[type(error).__name__] += 1

    @property
    def failed(self) -> int:
        with self.lock:
            return sum(self.failures.values())


def status_line(health: Health) -> str:
    with health.lock:
        uptime = humanize_duration(time.time() - health.started_at)
        accepted = health.accepted
        active = health.active
        established = health.established
        accept_errors = health.accept_errors
        up = humanize_bytes(health.bytes_up)
        down = humanize_bytes(health.bytes_down)
        failures = dict(health.failures)

    failed = sum(failures.values())
    fail_str = ",".join(f"{k}={v}" for k, v in sorted(failures.items())) or "-"
    fail_color = Fore.RED if failed else Fore.GREEN
    return (
        f"{Fore.CYAN}up{Style.RESET_ALL}={uptime} "
        f"| {Fore.YELLOW}conn{Style.RESET_ALL}=active={active} accepted={accepted} tunnels={established} "
        f"| {Fore.MAGENTA}bytes{Style.RESET_ALL}=up={up} down={down} "
        f"| {fail_color}failed{Style.RESET_ALL}={failed} ({fail_str}) accept_errors={accept_errors}"
    )


def status_ticker(health: Health, stop_evt: threading.Event, interval_s: float) -> None:
    if interval_s <= 0:
        return
    while not stop_evt.wait(interval_s):
        logger.info(status_line(health))
