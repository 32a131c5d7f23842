import asyncio
import json
import time

from callrelay.liveness import CLOSE_PING_TIMEOUT

from conftest import FakeSocket, StalledSocket, connect, settle, start_call


async def test_tick_pings_live_connections_and_refreshes_pong(server):
    alice = await connect(server, "alice")
    alice.last_pong = time.monotonic() - 3
    assert await server.liveness.tick() == []
    await asyncio.sleep(0)
    assert alice.ws.pings == 1
    assert alice.idle_for() < 1


async def test_unanswered_ping_does_not_refresh(server):
    alice = await connect(server, "alice")
    alice.ws.answer_pings = False
    alice.last_pong = time.monotonic() - 3
    await server.liveness.tick()
    await asyncio.sleep(0)
    assert alice.idle_for() >= 3


async def test_stale_connection_is_reaped_like_a_disconnect(server):
    alice = await connect(server, "alice")
    bob = await connect(server, "bob")
    await start_call(server, alice, bob)
    alice.last_pong = time.monotonic() - (server.liveness.timeout + 1)

    reaped = await server.liveness.tick()
    await settle(server)

    assert reaped == [alice.handle]
    assert alice.ws.closed
    assert alice.ws.close_code == CLOSE_PING_TIMEOUT
    assert bob.ws.last("end") == {"type": "end", "from": "alice", "to": "bob"}
    assert bob.ws.last("user_list")["users"] == ["bob"]
    assert server.sessions.partner_of("bob") is None
    assert server.stats.snapshot()["activeCount"] == 1
    # the receive loop's own cleanup afterwards is a no-op
    assert await server.router.disconnect(alice.handle) is None


async def test_unjoined_stale_connection_is_reaped(server):
    stranger = await connect(server)
    stranger.last_pong = time.monotonic() - 60
    assert await server.liveness.tick() == [stranger.handle]
    assert server.registry.get(stranger.handle) is None


async def test_run_stops_on_cancel(server):
    server.liveness.interval = 0.01
    alice = await connect(server, "alice")
    task = asyncio.create_task(server.liveness.run())
    await asyncio.sleep(0.05)
    task.cancel()
    await task
    assert alice.ws.pings >= 1


async def test_stalled_reader_is_reaped_without_blocking_tick(server):
    stalled = server.registry.register(StalledSocket())
    await server.router.route(stalled, json.dumps({"type": "join", "username": "slow"}))
    bob = server.registry.register(FakeSocket())
    await server.router.route(bob, json.dumps({"type": "join", "username": "bob"}))
    await asyncio.wait_for(bob.flush(), 1)
    stalled.last_pong = time.monotonic() - (server.liveness.timeout + 1)

    reaped = await asyncio.wait_for(server.liveness.tick(), 1)

    assert reaped == [stalled.handle]
    assert stalled.ws.close_code == CLOSE_PING_TIMEOUT
    await asyncio.wait_for(bob.flush(), 1)
    assert bob.ws.last("user_list")["users"] == ["bob"]
    assert bob.ws.pings == 1
