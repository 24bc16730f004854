import asyncio

import pytest

from forwardoptimal.errors import PoolError
from forwardoptimal.lb.pool import ConnectionPool, PoolRegistry


class Clock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


@pytest.mark.asyncio
async def test_put_then_get_reuses_same_connection(upstream):
    clock = Clock()
    pool = ConnectionPool(upstream.address, idle_timeout=1.0, clock=clock)
    conn = await pool.get()
    pool.put(conn)
    assert len(pool) == 1

    clock.now += 0.5
    assert await pool.get() is conn
    await asyncio.sleep(0.05)
    assert upstream.accepted == 1
    conn.close()


@pytest.mark.asyncio
async def test_expired_connection_is_not_reused(upstream):
    clock = Clock()
    pool = ConnectionPool(upstream.address, idle_timeout=1.0, clock=clock)
    conn = await pool.get()
    pool.put(conn)

    clock.now += 1.5
    fresh = await pool.get()
    assert fresh is not conn
    assert conn.writer.is_closing()
    await asyncio.sleep(0.05)
    assert upstream.accepted == 2
    fresh.close()


@pytest.mark.asyncio
async def test_connection_closed_by_peer_is_discarded(upstream):
    pool = ConnectionPool(upstream.address)
    conn = await pool.get()
    pool.put(conn)

    await upstream.stop()
    await asyncio.sleep(0.1)
    assert not conn.usable()


@pytest.mark.asyncio
async def test_closed_connection_is_not_pooled(upstream):
    pool = ConnectionPool(upstream.address)
    conn = await pool.get()
    conn.close()
    pool.put(conn)
    assert len(pool) == 0


@pytest.mark.asyncio
async def test_idle_set_is_bounded(upstream):
    pool = ConnectionPool(upstream.address, max_idle=1)
    first, second = await pool.dial(), await pool.dial()
    pool.put(first)
    pool.put(second)
    assert len(pool) == 1
    assert second.writer.is_closing()
    pool.close()
    assert len(pool) == 0
    assert first.writer.is_closing()


@pytest.mark.asyncio
async def test_dial_failure_raises_pool_error(closed_port):
    pool = ConnectionPool(f"127.0.0.1:{closed_port}", dial_timeout=1.0)
    with pytest.raises(PoolError) as info:
        await pool.get()
    assert info.value.target == f"127.0.0.1:{closed_port}"


def test_registry_precomputes_and_caches_pools():
    registry = PoolRegistry(["127.0.0.1:1", "127.0.0.1:2"], idle_timeout=2.0)
    first = registry.get("127.0.0.1:1")
    assert registry.get("127.0.0.1:1") is first
    assert first.idle_timeout == 2.0
    assert registry.get("127.0.0.1:2") is not first

    lazy = registry.get("127.0.0.1:3")
    assert registry.get("127.0.0.1:3") is lazy
    assert lazy.idle_timeout == 2.0
