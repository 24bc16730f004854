import json
import logging
from datetime import datetime

import pytest
import redis

from forwardoptimal.lb.health import NodeHealth
from forwardoptimal.lb.proxy_protocol import ProxyProtocol
from forwardoptimal.lb.telemetry import EVENTS_STREAM, SNAPSHOT_KEY, Telemetry


def sample_snapshot():
    now = datetime(2025, 8, 26, 12, 0, 0)
    return [
        NodeHealth("a:1", True, now, 0.25),
        NodeHealth("b:1", False, now, error="refused"),
    ]


@pytest.mark.asyncio
async def test_round_snapshot_is_written(fake_redis):
    telemetry = Telemetry(fake_redis)
    await telemetry.publish_round("a:1", sample_snapshot(), ProxyProtocol.V2)

    snap = fake_redis.hashes[SNAPSHOT_KEY]
    assert snap["selected"] == "a:1"
    assert snap["proxy_protocol"] == "v2"
    assert json.loads(snap["backends"]) == [
        {"name": "a:1", "healthy": True, "latency_ms": 250.0, "last_check": "2025-08-26T12:00:00"},
        {"name": "b:1", "healthy": False, "latency_ms": None, "last_check": "2025-08-26T12:00:00"},
    ]
    assert EVENTS_STREAM not in fake_redis.streams


@pytest.mark.asyncio
async def test_selection_change_emits_event(fake_redis):
    telemetry = Telemetry(fake_redis)
    await telemetry.publish_round(None, sample_snapshot(), ProxyProtocol.NONE, changed=True)

    assert fake_redis.hashes[SNAPSHOT_KEY]["selected"] == ""
    (entry,) = fake_redis.streams[EVENTS_STREAM]
    assert entry["type"] == "select"
    assert entry["backend"] == ""


@pytest.mark.asyncio
async def test_event_drops_empty_fields(fake_redis):
    await Telemetry(fake_redis).event("reject", cid="1-abc", backend=None)
    (entry,) = fake_redis.streams[EVENTS_STREAM]
    assert entry["cid"] == "1-abc"
    assert "backend" not in entry


@pytest.mark.asyncio
async def test_redis_errors_are_logged_not_raised(fake_redis, caplog):
    fake_redis.error = redis.ConnectionError("connection refused")
    telemetry = Telemetry(fake_redis)
    with caplog.at_level(logging.WARNING, logger="forwardoptimal.lb.telemetry"):
        await telemetry.publish_round("a:1", sample_snapshot(), ProxyProtocol.NONE, changed=True)
        await telemetry.event("accept", cid="x")
    assert "telemetry write failed" in caplog.text


@pytest.mark.asyncio
async def test_emit_queues_writes_in_order(fake_redis):
    telemetry = Telemetry(fake_redis)
    telemetry.emit("accept", cid="1")
    telemetry.emit_round("a:1", sample_snapshot(), ProxyProtocol.NONE, changed=True)
    telemetry.emit("end", cid="1", bytes_up=2)
    assert EVENTS_STREAM not in fake_redis.streams

    await telemetry.flush()
    assert [e["type"] for e in fake_redis.streams[EVENTS_STREAM]] == ["accept", "select", "end"]
    assert fake_redis.hashes[SNAPSHOT_KEY]["selected"] == "a:1"
    await telemetry.aclose()


@pytest.mark.asyncio
async def test_full_queue_drops_writes(fake_redis):
    telemetry = Telemetry(fake_redis, queue_size=2)
    for i in range(5):
        telemetry.emit("accept", cid=str(i))
    await telemetry.flush()
    assert [e["cid"] for e in fake_redis.streams[EVENTS_STREAM]] == ["0", "1"]
    await telemetry.aclose()


@pytest.mark.asyncio
async def test_aclose_stops_writer_and_closes_client(fake_redis):
    telemetry = Telemetry(fake_redis)
    telemetry.emit("accept", cid="1")
    await telemetry.aclose()
    telemetry.emit("accept", cid="2")

    assert [e["cid"] for e in fake_redis.streams[EVENTS_STREAM]] == ["1"]
    assert fake_redis.closed


def test_connect_sets_socket_timeouts():
    telemetry = Telemetry.connect("127.0.0.1", 6379, 0, timeout=1.5)
    kwargs = telemetry.client.connection_pool.connection_kwargs
    assert kwargs["socket_timeout"] == 1.5
    assert kwargs["socket_connect_timeout"] == 1.5
    telemetry.client.close()
