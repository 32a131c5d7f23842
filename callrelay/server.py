import asyncio
import contextlib
import logging
from typing import Any, Optional

import websockets
from websockets.exceptions import ConnectionClosed

from .config import Settings
from .liveness import LivenessMonitor
from .presence import PresenceBroadcaster
from .registry import Connection, ConnectionRegistry, VisitorCounter
from .router import MessageRouter
from .sessions import CallSessionTracker
from .stats import StatsReporter

logger = logging.getLogger(__name__)


def _format_remote(address: Any) -> Optional[str]:
    if isinstance(address, (tuple, list)) and len(address) >= 2:
        return f"{address[0]}:{address[1]}"
    return str(address) if address else None


class SignalingServer:
    """Owns the shared state and wires every component to it explicitly."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.visitors = VisitorCounter()
        self.registry = ConnectionRegistry(
            self.visitors,
            settings.max_username_length,
            send_timeout=settings.send_timeout,
        )
        self.sessions = CallSessionTracker(strict=settings.strict_sessions)
        self.presence = PresenceBroadcaster(self.registry)
        self.router = MessageRouter(self.registry, self.sessions, self.presence)
        self.liveness = LivenessMonitor(
            self.registry,
            self.router.disconnect,
            interval=settings.ping_interval,
            timeout=settings.ping_timeout,
        )
        self.stats = StatsReporter(self.registry, self.visitors)

    async def handler(self, ws, path: Optional[str] = None):
        async with self.router.lock:
            conn = self.registry.register(ws, remote=_format_remote(getattr(ws, "remote_address", None)))
        try:
            await self.receive_loop(conn)
        finally:
            await self.router.disconnect(conn.handle)

    async def receive_loop(self, conn: Connection):
        try:
            async for raw in conn.ws:
                conn.touch()
                try:
                    await self.router.route(conn, raw)
                except Exception:
                    logger.exception("Error handling frame from %s", conn.label)
        except ConnectionClosed as e:
            logger.info("Connection closed: %s (%s)", conn.label, e)

    def status(self) -> dict:
        return {
            **self.stats.snapshot(),
            "users": self.registry.users(),
            "calls": [
                f"{s.caller}->{s.callee}:{s.state.value}" for s in self.sessions.sessions()
            ],
        }

    async def status_printer(self):
        try:
            while True:
                await asyncio.sleep(self.settings.status_interval)
                st = self.status()
                logger.info(
                    "Online %d (visitors %d): %s; calls: %s",
                    st["activeCount"],
                    st["visitorCount"],
                    st["users"],
                    st["calls"],
                )
        except asyncio.CancelledError:
            pass

    @contextlib.asynccontextmanager
    async def running(self):
        """Listen for WebSocket clients and run the background tasks.

        Yields the ``websockets`` server object; leaving the block stops the
        liveness and status tasks and closes the listener.
        """
        async with websockets.serve(
            self.handler,
            self.settings.host,
            self.settings.port,
            # keepalive is done by the liveness monitor
            ping_interval=None,
            max_size=self.settings.max_message_size,
        ) as ws_server:
            tasks = [asyncio.create_task(self.liveness.run())]
            if self.settings.status_interval > 0:
                tasks.append(asyncio.create_task(self.status_printer()))
            logger.info(
                "Signaling relay listening on ws://%s:%s (strict=%s)",
                self.settings.host,
                self.settings.port,
                self.settings.strict_sessions,
            )
            try:
                yield ws_server
            finally:
                for task in tasks:
                    task.cancel()
                await asyncio.gather(*tasks, return_exceptions=True)

    async def serve_forever(self, stop: asyncio.Event):
        async with self.running():
            await stop.wait()
