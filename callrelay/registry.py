import asyncio
import logging
import time
import uuid
from typing import Any, Dict, List, Optional

from websockets.exceptions import ConnectionClosed

from .errors import (
    AlreadyJoined,
    DuplicateUsername,
    InvalidUsername,
    TransportClosed,
    UserNotFound,
)
from .protocol import encode

logger = logging.getLogger(__name__)

DEFAULT_MAX_USERNAME = 32
SEND_TIMEOUT = 10.0
OUTBOX_SIZE = 256

# Close code for connections dropped because they stopped reading
CLOSE_SEND_FAILED = 1011


class Connection:
    """One transport session, joined or not.

    Outbound frames go through a bounded outbox drained by a per-connection
    writer task, so ``send`` never waits on the peer's socket. A peer that
    stops reading hits ``send_timeout`` or fills the outbox and is closed.
    """

    def __init__(
        self,
        handle: str,
        ws: Any,
        remote: Optional[str] = None,
        send_timeout: float = SEND_TIMEOUT,
        outbox_size: int = OUTBOX_SIZE,
    ):
        self.handle = handle
        self.ws = ws
        self.remote = remote
        self.send_timeout = send_timeout
        self.username: Optional[str] = None
        self.last_pong = time.monotonic()
        self.alive = True
        self._outbox: asyncio.Queue = asyncio.Queue(maxsize=outbox_size)
        self._writer: Optional[asyncio.Task] = None
        self._closer: Optional[asyncio.Task] = None

    def __repr__(self) -> str:
        return f"<Connection {self.label}>"

    @property
    def label(self) -> str:
        return self.username or self.remote or self.handle[:8]

    @property
    def joined(self) -> bool:
        return self.username is not None

    def touch(self):
        self.last_pong = time.monotonic()

    def idle_for(self, now: Optional[float] = None) -> float:
        return (now if now is not None else time.monotonic()) - self.last_pong

    async def send(self, envelope: Dict[str, Any]):
        """Queue one envelope for delivery; raises TransportClosed if dead."""
        if not self.alive:
            raise TransportClosed(f"{self.label} is closing")
        try:
            self._outbox.put_nowait(encode(envelope))
        except asyncio.QueueFull:
            if self._writer is not None:
                self._writer.cancel()
            self._abort(f"outbox full ({self._outbox.maxsize} frames)")
            raise TransportClosed(f"{self.label} is not reading")
        if self._writer is None:
            self._writer = asyncio.create_task(self._write_loop())

    async def flush(self):
        """Wait until everything queued so far was written or discarded."""
        if self._writer is not None and not self._writer.done():
            await self._outbox.join()

    async def _write_loop(self):
        try:
            while True:
                data = await self._outbox.get()
                try:
                    await asyncio.wait_for(self.ws.send(data), self.send_timeout)
                finally:
                    self._outbox.task_done()
        except ConnectionClosed as e:
            self._abort(str(e))
        except asyncio.TimeoutError:
            self._abort(f"send blocked for {self.send_timeout:.1f}s")
        except asyncio.CancelledError:
            self._discard_pending()
            raise

    def _discard_pending(self):
        while not self._outbox.empty():
            self._outbox.get_nowait()
            self._outbox.task_done()

    def _abort(self, why: str):
        if not self.alive:
            self._discard_pending()
            return
        logger.warning("Dropping %s: %s", self.label, why)
        self.alive = False
        self._discard_pending()
        self._closer = asyncio.create_task(
            self._close_transport(CLOSE_SEND_FAILED, "send failed")
        )

    def detach(self):
        """Stop delivering; pending frames are dropped."""
        self.alive = False
        if self._writer is not None and not self._writer.done():
            self._writer.cancel()

    async def ping(self):
        """Send a transport ping; the pong refreshes ``last_pong``."""
        try:
            waiter = await asyncio.wait_for(self.ws.ping(), self.send_timeout)
        except ConnectionClosed as e:
            raise TransportClosed(f"{self.label}: {e}") from e
        except asyncio.TimeoutError:
            raise TransportClosed(f"{self.label}: ping blocked")
        waiter.add_done_callback(self._on_pong)

    def _on_pong(self, fut: asyncio.Future):
        if fut.cancelled() or fut.exception() is not None:
            return
        self.touch()

    async def close(self, code: int = 1000, reason: str = ""):
        self.detach()
        await self._close_transport(code, reason)

    async def _close_transport(self, code: int, reason: str):
        try:
            await asyncio.wait_for(self.ws.close(code=code, reason=reason), self.send_timeout)
        except (ConnectionClosed, asyncio.TimeoutError):
            pass


class VisitorCounter:
    """Distinct usernames that have ever joined since process start."""

    def __init__(self):
        self._seen: set[str] = set()

    def record(self, username: str) -> bool:
        if username in self._seen:
            return False
        self._seen.add(username)
        return True

    @property
    def count(self) -> int:
        return len(self._seen)


class ConnectionRegistry:
    """Live connections and the username directory.

    Plain synchronous bookkeeping; callers serialize access with the router's
    lock. Teardown starts by detaching the connection so ``lookup`` never
    hands out a connection that is being unregistered.
    """

    def __init__(
        self,
        visitors: VisitorCounter,
        max_username_length: int = DEFAULT_MAX_USERNAME,
        send_timeout: float = SEND_TIMEOUT,
    ):
        self.visitors = visitors
        self.max_username_length = max_username_length
        self.send_timeout = send_timeout
        self._connections: Dict[str, Connection] = {}
        # username -> handle, in join order
        self._directory: Dict[str, str] = {}

    def register(self, ws: Any, remote: Optional[str] = None) -> Connection:
        conn = Connection(uuid.uuid4().hex, ws, remote=remote, send_timeout=self.send_timeout)
        self._connections[conn.handle] = conn
        logger.info("Connection %s opened from %s", conn.handle[:8], remote or "unknown")
        return conn

    def validate_username(self, username: Any) -> str:
        if not isinstance(username, str) or not username.strip():
            raise InvalidUsername("Username required")
        if username != username.strip():
            raise InvalidUsername("Username must not start or end with whitespace")
        if len(username) > self.max_username_length:
            raise InvalidUsername(
                f"Username longer than {self.max_username_length} characters"
            )
        if not username.isprintable():
            raise InvalidUsername("Username contains control characters")
        return username

    def join(self, handle: str, username: Any) -> List[str]:
        conn = self._connections.get(handle)
        if conn is None or not conn.alive:
            raise TransportClosed("connection is gone")
        if conn.username is not None:
            raise AlreadyJoined(f"Already joined as {conn.username}")
        username = self.validate_username(username)
        if username in self._directory:
            raise DuplicateUsername(f"Username {username} already taken")
        conn.username = username
        self._directory[username] = handle
        if self.visitors.record(username):
            logger.info("New visitor %s (total %d)", username, self.visitors.count)
        logger.info("User %s joined; online=%d", username, len(self._directory))
        return self.users()

    def lookup(self, username: Any) -> Connection:
        handle = self._directory.get(username) if isinstance(username, str) else None
        conn = self._connections.get(handle) if handle else None
        if conn is None or not conn.alive:
            raise UserNotFound(f"{username} not online")
        return conn

    def unregister(self, handle: str) -> Optional[Connection]:
        conn = self._connections.pop(handle, None)
        if conn is None:
            return None
        conn.detach()
        if conn.username is not None and self._directory.get(conn.username) == handle:
            del self._directory[conn.username]
            logger.info("User %s left; online=%d", conn.username, len(self._directory))
        else:
            logger.info("Connection %s closed before joining", conn.label)
        return conn

    def get(self, handle: str) -> Optional[Connection]:
        return self._connections.get(handle)

    def users(self) -> List[str]:
        return list(self._directory)

    def joined(self) -> List[Connection]:
        return [self._connections[h] for h in self._directory.values()]

    def connections(self) -> List[Connection]:
        return list(self._connections.values())

    def online_count(self) -> int:
        return len(self._directory)

    def __contains__(self, username: object) -> bool:
        return username in self._directory

    def __len__(self) -> int:
        return len(self._connections)
