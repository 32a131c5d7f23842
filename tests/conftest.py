import asyncio
import json

import pytest
from websockets.exceptions import ConnectionClosed

from callrelay.config import Settings
from callrelay.server import SignalingServer


class FakeSocket:
    """Stands in for a websockets connection: records what the server sends."""

    def __init__(self, remote=("127.0.0.1", 50000)):
        self.remote_address = remote
        self.sent = []
        self.closed = False
        self.close_code = None
        self.pings = 0
        self.answer_pings = True

    async def send(self, data):
        if self.closed:
            raise ConnectionClosed(None, None)
        self.sent.append(json.loads(data))

    async def ping(self):
        if self.closed:
            raise ConnectionClosed(None, None)
        self.pings += 1
        waiter = asyncio.get_running_loop().create_future()
        if self.answer_pings:
            waiter.set_result(0.0)
        return waiter

    async def close(self, code=1000, reason=""):
        self.closed = True
        self.close_code = code

    def of_type(self, msg_type):
        return [m for m in self.sent if m.get("type") == msg_type]

    def last(self, msg_type=None):
        msgs = self.of_type(msg_type) if msg_type else self.sent
        return msgs[-1] if msgs else None


class StalledSocket(FakeSocket):
    """A client that stopped reading: every send blocks until released."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.released = asyncio.Event()

    async def send(self, data):
        await self.released.wait()
        await super().send(data)


def make_server(**overrides):
    settings = Settings(http_bind=None, status_interval=0, **overrides)
    return SignalingServer(settings)


@pytest.fixture
def server():
    return make_server()


@pytest.fixture
def permissive_server():
    return make_server(strict_sessions=False)


async def settle(server):
    """Wait until every queued outbound frame has reached its socket."""
    await asyncio.gather(*(conn.flush() for conn in server.registry.connections()))


async def send(server, conn, **msg):
    await server.router.route(conn, json.dumps(msg))
    await settle(server)


async def connect(server, username=None):
    conn = server.registry.register(FakeSocket())
    if username is not None:
        await send(server, conn, type="join", username=username)
    return conn


async def start_call(server, caller, callee):
    """Run call_request/offer/answer between two joined connections."""
    await send(server, caller, type="call_request", to=callee.username)
    await send(server, caller, type="offer", to=callee.username, sdp={"type": "offer", "sdp": "v=0"})
    await send(server, callee, type="answer", to=caller.username, sdp={"type": "answer", "sdp": "v=0"})
