import asyncio
import logging
import time
from typing import Awaitable, Callable, List

from .errors import TransportClosed
from .registry import Connection, ConnectionRegistry

logger = logging.getLogger(__name__)

PING_INTERVAL = 5.0
PING_TIMEOUT = 2 * PING_INTERVAL

# Close code for connections dropped by the monitor
CLOSE_PING_TIMEOUT = 1011


class LivenessMonitor:
    """Pings every connection on a fixed cadence and reaps silent ones.

    A connection counts as alive while it keeps answering transport pings or
    sending frames of its own. Reaped connections go through ``on_stale``,
    which is the same cleanup a normal close runs.
    """

    def __init__(
        self,
        registry: ConnectionRegistry,
        on_stale: Callable[[str], Awaitable],
        interval: float = PING_INTERVAL,
        timeout: float = PING_TIMEOUT,
    ):
        self.registry = registry
        self.on_stale = on_stale
        self.interval = interval
        self.timeout = timeout

    async def tick(self) -> List[str]:
        now = time.monotonic()
        stale: List[Connection] = []
        live: List[Connection] = []
        for conn in self.registry.connections():
            (stale if conn.idle_for(now) > self.timeout else live).append(conn)

        for conn in stale:
            logger.warning(
                "Connection timed out: %s (no pong for %.1fs)", conn.label, conn.idle_for(now)
            )
            await self.on_stale(conn.handle)
        if stale:
            await asyncio.gather(
                *(conn.close(code=CLOSE_PING_TIMEOUT, reason="ping timeout") for conn in stale)
            )

        await asyncio.gather(*(self._ping(conn) for conn in live))
        return [conn.handle for conn in stale]

    async def _ping(self, conn: Connection):
        try:
            await conn.ping()
        except TransportClosed as e:
            logger.debug("Ping skipped: %s", e)

    async def run(self):
        try:
            while True:
                await asyncio.sleep(self.interval)
                try:
                    await self.tick()
                except Exception:
                    logger.exception("Liveness sweep failed")
        except asyncio.CancelledError:
            pass
