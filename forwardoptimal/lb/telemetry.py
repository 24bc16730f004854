import asyncio
import contextlib
import json
import logging
import time

import redis

log = logging.getLogger(__name__)

EVENTS_STREAM = "lb:events"   # Redis Stream for events
SNAPSHOT_KEY  = "lb:snapshot" # Redis Hash for the latest round
EVENTS_MAXLEN = 2000
REDIS_TIMEOUT = 2.0           # seconds, connect and per-command
QUEUE_SIZE    = 10000         # pending writes before new ones are dropped


class Telemetry:
    """Pushes round snapshots and relay events to Redis for the dashboard.

    Probing and relaying only ever call ``emit``/``emit_round``, which queue
    the write and return. A single background task drains the queue in order,
    running the synchronous redis client in a worker thread, so a slow or dead
    Redis never holds up a session or a health round.
    """

    def __init__(self, client, queue_size=QUEUE_SIZE):
        self.client = client
        self._queue = asyncio.Queue(maxsize=queue_size)
        self._worker = None
        self._closed = False
        self._dropped = 0

    @classmethod
    def connect(cls, host="localhost", port=6379, db=0, timeout=REDIS_TIMEOUT):
        return cls(redis.Redis(
            host=host, port=port, db=db, decode_responses=True,
            socket_timeout=timeout, socket_connect_timeout=timeout,
        ))

    def emit(self, type_, **fields):
        self._submit(self.event(type_, **fields))

    def emit_round(self, selected, snapshot, proxy_protocol, changed=False):
        self._submit(self.publish_round(selected, snapshot, proxy_protocol, changed=changed))

    def _submit(self, coro):
        if self._closed:
            coro.close()
            return
        try:
            self._queue.put_nowait(coro)
        except asyncio.QueueFull:
            coro.close()
            self._dropped += 1
            if self._dropped == 1 or self._dropped % 1000 == 0:
                log.warning("telemetry queue full, %d writes dropped", self._dropped)
            return
        if self._worker is None:
            self._worker = asyncio.create_task(self._drain(), name="telemetry-writer")

    async def _drain(self):
        while True:
            coro = await self._queue.get()
            try:
                await coro
            except Exception:
                log.exception("telemetry write failed")
            finally:
                self._queue.task_done()

    async def publish_round(self, selected, snapshot, proxy_protocol, changed=False):
        mapping = {
            "ts": time.time(),
            "selected": selected or "",
            "proxy_protocol": proxy_protocol.value,
            "backends": json.dumps([
                {
                    "name": h.address,
                    "healthy": h.is_healthy,
                    "latency_ms": h.latency_ms,
                    "last_check": h.last_check.isoformat(),
                }
                for h in snapshot
            ]),
        }
        await self._call(self.client.hset, SNAPSHOT_KEY, mapping=mapping)
        if changed:
            await self.event("select", backend=selected or "")

    async def event(self, type_, **fields):
        entry = {"type": type_, "ts": time.time()}
        entry.update((k, v) for k, v in fields.items() if v is not None)
        await self._call(self.client.xadd, EVENTS_STREAM, entry, maxlen=EVENTS_MAXLEN, approximate=True)

    async def _call(self, fn, *args, **kwargs):
        try:
            await asyncio.to_thread(fn, *args, **kwargs)
        except redis.RedisError as e:
            log.warning("telemetry write failed: %s", e)

    async def flush(self):
        await self._queue.join()

    async def aclose(self, timeout=1.0):
        """Give queued writes ``timeout`` seconds, then stop the writer."""
        self._closed = True
        if self._worker is not None:
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(self.flush(), timeout=timeout)
            self._worker.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._worker
            self._worker = None
        while not self._queue.empty():
            self._queue.get_nowait().close()
            self._queue.task_done()
        with contextlib.suppress(Exception):
            self.client.close()
