import asyncio

import pytest

from minerboard.endpoints import EndpointPool
from minerboard.errors import AllEndpointsUnreachable
from minerboard.health import HealthMonitor
from minerboard.state import ConnectionContext

from fakes import FakeRpc


def _pool(clients, ctx=None, **kwargs):
    ctx = ctx or ConnectionContext()
    by_url = {c.url: c for c in clients}
    pool = EndpointPool(list(by_url), ctx, client_factory=lambda url: by_url[url], **kwargs)
    return pool, ctx


class SlowRpc(FakeRpc):
    async def block_number(self, *, timeout=None):
        await asyncio.sleep(1)
        return self.head


@pytest.mark.asyncio
async def test_connect_fails_over_in_order():
    a = FakeRpc("https://a", down=True)
    b = FakeRpc("https://b")
    pool, ctx = _pool([a, b])

    client = await pool.connect()
    assert client is b
    assert ctx.state.endpoint_index == 1
    assert pool.current_url == "https://b"

    # the next connect starts from the last good endpoint
    await pool.connect()
    assert a.calls["eth_blockNumber"] == 1


@pytest.mark.asyncio
async def test_connect_times_out_slow_endpoint():
    slow = SlowRpc("https://slow")
    fast = FakeRpc("https://fast")
    pool, _ = _pool([slow, fast], connect_timeout=0.05)
    assert await pool.connect() is fast


@pytest.mark.asyncio
async def test_all_endpoints_down_marks_lost():
    pool, ctx = _pool([FakeRpc("https://a", down=True), FakeRpc("https://b", down=True)])
    for _ in range(5):
        ctx.record_probe(True)

    with pytest.raises(AllEndpointsUnreachable):
        await pool.connect()
    assert ctx.lost
    assert not ctx.connected
    assert ctx.state.health == 0
    assert pool.current is None


@pytest.mark.asyncio
async def test_acquire_reuses_current_client():
    a = FakeRpc("https://a")
    pool, _ = _pool([a])
    first = await pool.acquire()
    second = await pool.acquire()
    assert first is second is a
    assert a.calls["eth_blockNumber"] == 1


def test_empty_pool_rejected():
    with pytest.raises(ValueError):
        EndpointPool(["  "], ConnectionContext())


@pytest.mark.asyncio
async def test_monitor_builds_health_then_fails_over():
    a = FakeRpc("https://a")
    b = FakeRpc("https://b")
    pool, ctx = _pool([a, b])
    monitor = HealthMonitor(pool, ctx, interval=0.01)

    assert await monitor.probe_once()  # initial connect
    for _ in range(4):
        assert await monitor.probe_once()
    assert ctx.connected and ctx.state.health == 5

    a.down = True
    assert not await monitor.probe_once()
    assert not await monitor.probe_once()
    # still above the threshold: no failover yet
    assert pool.current is a
    assert ctx.connected

    assert not await monitor.probe_once()
    assert pool.current is b
    assert ctx.state.endpoint_index == 1
    assert a.calls["eth_blockNumber"] == 9


@pytest.mark.asyncio
async def test_monitor_task_start_stop():
    pool, ctx = _pool([FakeRpc("https://a")])
    monitor = HealthMonitor(pool, ctx, interval=0.01)
    monitor.start()
    assert monitor.running
    await asyncio.sleep(0.2)
    await monitor.stop()
    assert not monitor.running
    assert ctx.state.health >= 3
    assert ctx.connected
