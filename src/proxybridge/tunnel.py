from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import List, Tuple

from .errors import TunnelIOError

logger = logging.getLogger("proxybridge.tunnel")

BUFSIZE = 65536

END_EOF = "eof"
END_TIMEOUT = "timeout"
END_ERROR = "error"
END_CANCELLED = "cancelled"


@dataclass(frozen=True)
class TunnelStats:
    a2b: int
    b2a: int
    end_a: str
    end_b: str


async def close_writer(w: asyncio.StreamWriter, timeout: float = 1.0) -> None:
    try:
        if not w.is_closing():
            w.close()
        await asyncio.wait_for(w.wait_closed(), timeout=timeout)
    except (OSError, asyncio.TimeoutError):
        pass


async def pipe_bidirectional(
    a_r: asyncio.StreamReader,
    a_w: asyncio.StreamWriter,
    b_r: asyncio.StreamReader,
    b_w: asyncio.StreamWriter,
    bufsize: int = BUFSIZE,
    idle_timeout: float = 0.0,
    label: str = "",
) -> TunnelStats:
    """
    Relay data in both directions until both have finished.

    A clean EOF on one side shuts down the write half of the other side and
    the opposite direction keeps flowing. An error or idle timeout in either
    direction cancels the other one. Both writers are closed once both
    directions are done. Raises TunnelIOError if either direction failed; the
    byte counts are attached as ``stats`` on the exception.
    """
    use_timeout = idle_timeout is not None and idle_timeout > 0
    errors: List[BaseException] = []

    async def pump(name: str, src: asyncio.StreamReader, dst: asyncio.StreamWriter) -> Tuple[str, int, str]:
        total = 0
        reason = END_EOF
        try:
            while True:
                if use_timeout:
                    chunk = await asyncio.wait_for(src.read(bufsize), timeout=idle_timeout)
                else:
                    chunk = await src.read(bufsize)
                if not chunk:
                    break
                total += len(chunk)
                dst.write(chunk)
                await dst.drain()
        except asyncio.TimeoutError:
            reason = END_TIMEOUT
        except asyncio.CancelledError:
            reason = END_CANCELLED
        except (OSError, RuntimeError) as e:
            # RuntimeError: write on a transport that is already closing
            reason = END_ERROR
            errors.append(e)
            logger.debug("tunnel: %s %s failed: %s", label or "-", name, e)
        if reason == END_EOF:
            _shutdown_write(dst, name, label)
        return name, total, reason

    t1 = asyncio.create_task(pump("a->b", a_r, b_w))
    t2 = asyncio.create_task(pump("b->a", b_r, a_w))
    results = {}
    try:
        pending = {t1, t2}
        while pending:
            done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
            if any(t.result()[2] != END_EOF for t in done):
                for t in pending:
                    t.cancel()
        for name, total, reason in await asyncio.gather(t1, t2):
            results[name] = (total, reason)
    except asyncio.CancelledError:
        t1.cancel()
        t2.cancel()
        await asyncio.gather(t1, t2, return_exceptions=True)
        raise
    finally:
        await asyncio.gather(close_writer(a_w), close_writer(b_w))

    a2b, end_a = results.get("a->b", (0, END_CANCELLED))
    b2a, end_b = results.get("b->a", (0, END_CANCELLED))
    stats = TunnelStats(a2b=a2b, b2a=b2a, end_a=end_a, end_b=end_b)
    if errors:
        err = TunnelIOError(f"tunnel {label or '-'} failed: {errors[0]}")
        err.stats = stats  # type: ignore[attr-defined]
        raise err from errors[0]
    return stats


def _shutdown_write(w: asyncio.StreamWriter, name: str, label: str) -> None:
    # half-close: the peer sees EOF, the reverse direction stays open
    if w.is_closing() or not w.can_write_eof():
        return
    try:
        w.write_eof()
    except (OSError, RuntimeError) as e:
        logger.debug("tunnel: %s %s shutdown failed: %s", label or "-", name, e)
