from __future__ import annotations

import asyncio
import enum
import logging
import time
from typing import Optional, Tuple

from .status import humanize_bytes, humanize_duration
from .target import ResolvedTarget, split_host_port

logger = logging.getLogger("secure_proxy.tunnel")

CONNECT_ESTABLISHED = b"HTTP/1.1 200 Connection Established\r\n\r\n"
PUMP_BUFSIZE = 65536


class TunnelState(str, enum.Enum):
    REQUESTED = "requested"
    UPGRADED = "upgraded"
    CONNECTED = "connected"
    RELAYING = "relaying"
    CLOSED = "closed"
    ERRORED = "errored"


async def _close_writer(w: Optional[asyncio.StreamWriter]) -> None:
    if w is None:
        return
    try:
        if not w.is_closing():
            w.close()
        await asyncio.wait_for(w.wait_closed(), timeout=1.0)
    except (OSError, asyncio.TimeoutError):
        pass


def _half_close(w: asyncio.StreamWriter) -> None:
    try:
        if not w.is_closing() and w.can_write_eof():
            w.write_eof()
    except (OSError, RuntimeError):
        pass


async def pump(src: asyncio.StreamReader, dst: asyncio.StreamWriter, bufsize: int = PUMP_BUFSIZE) -> Tuple[int, str]:
    """
    Copy src to dst until EOF or an I/O error, then half-close dst.
    Returns (bytes copied, end reason).
    """
    total = 0
    reason = "eof"
    try:
        while True:
            chunk = await src.read(bufsize)
            if not chunk:
                break
            dst.write(chunk)
            await dst.drain()
            total += len(chunk)
    except (OSError, RuntimeError) as e:
        reason = f"error:{type(e).__name__}"
    _half_close(dst)
    return total, reason


async def relay_bidirectional(
    a_r: asyncio.StreamReader,
    a_w: asyncio.StreamWriter,
    b_r: asyncio.StreamReader,
    b_w: asyncio.StreamWriter,
    bufsize: int = PUMP_BUFSIZE,
) -> Tuple[int, int, str, str]:
    """
    Relay both directions until each has finished on its own.
    One side finishing does not stop the other (half-close is honored).
    Returns (a->b bytes, b->a bytes, a->b end reason, b->a end reason).
    """
    t1 = asyncio.create_task(pump(a_r, b_w, bufsize))
    t2 = asyncio.create_task(pump(b_r, a_w, bufsize))
    try:
        (a2b, end_a), (b2a, end_b) = await asyncio.gather(t1, t2)
    except asyncio.CancelledError:
        t1.cancel()
        t2.cancel()
        await asyncio.gather(t1, t2, return_exceptions=True)
        raise
    return a2b, b2a, end_a, end_b


class TunnelSession:
    """
    Lifetime of one CONNECT tunnel:
    REQUESTED -> UPGRADED -> CONNECTED -> RELAYING -> CLOSED, or ERRORED.

    The 200 is flushed to the client before the outbound dial starts; errors
    after that point cannot be reported to the client and are only logged.
    """

    def __init__(
        self,
        client_r: asyncio.StreamReader,
        client_w: asyncio.StreamWriter,
        resolved: ResolvedTarget,
        connect_timeout: float = 0.0,
        cid: str = "-",
    ) -> None:
        self.client_r = client_r
        self.client_w = client_w
        self.resolved = resolved
        self.connect_timeout = float(connect_timeout)
        self.cid = cid
        self.state = TunnelState.REQUESTED
        self.bytes_up = 0
        self.bytes_down = 0
        self._target_w: Optional[asyncio.StreamWriter] = None

    def _fail(self, phase: str, err: object) -> None:
        self.state = TunnelState.ERRORED
        logger.error("tunnel[%s]: %s failed target=%s err=%s", self.cid, phase, self.resolved.dial_string, err)

    async def _upgrade(self) -> bool:
        try:
            self.client_w.write(CONNECT_ESTABLISHED)
            await self.client_w.drain()
        except (OSError, RuntimeError) as e:
            self._fail("upgrade", e)
            return False
        self.state = TunnelState.UPGRADED
        logger.info("tunnel[%s]: upgraded target=%s", self.cid, self.resolved.dial_string)
        return True

    async def _dial(self) -> Optional[asyncio.StreamReader]:
        host, port = split_host_port(self.resolved.dial_string)
        if not host or port is None:
            self._fail("dial", "unusable target")
            return None
        try:
            coro = asyncio.open_connection(host=host, port=port)
            if self.connect_timeout > 0:
                r, w = await asyncio.wait_for(coro, timeout=self.connect_timeout)
            else:
                r, w = await coro
        except asyncio.TimeoutError:
            self._fail("dial", f"timeout after {self.connect_timeout:.1f}s")
            return None
        except (OSError, UnicodeError, ValueError) as e:
            self._fail("dial", e)
            return None
        self._target_w = w
        self.state = TunnelState.CONNECTED
        logger.info("tunnel[%s]: connected target=%s", self.cid, self.resolved.dial_string)
        return r

    async def run(self) -> TunnelState:
        t0 = time.monotonic()
        try:
            if not await self._upgrade():
                return self.state
            target_r = await self._dial()
            if target_r is None or self._target_w is None:
                return self.state
            self.state = TunnelState.RELAYING
            self.bytes_up, self.bytes_down, end_up, end_down = await relay_bidirectional(
                self.client_r, self.client_w, target_r, self._target_w
            )
            self.state = TunnelState.CLOSED
            logger.info(
                "tunnel[%s]: closed target=%s client->target=%s target->client=%s end=%s|%s dur=%s",
                self.cid,
                self.resolved.dial_string,
                humanize_bytes(self.bytes_up),
                humanize_bytes(self.bytes_down),
                end_up,
                end_down,
                humanize_duration(time.monotonic() - t0),
            )
            logger.debug("tunnel[%s]: exact bytes up=%d down=%d", self.cid, self.bytes_up, self.bytes_down)
            return self.state
        finally:
            await _close_writer(self._target_w)
            await _close_writer(self.client_w)
