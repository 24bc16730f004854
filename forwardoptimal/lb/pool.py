import asyncio
import contextlib
import logging
import threading
import time

from forwardoptimal.errors import PoolError
from forwardoptimal.lb.target import parse_target

log = logging.getLogger(__name__)

DIAL_TIMEOUT = 5.0   # seconds, same as the probe timeout
IDLE_TIMEOUT = 1.0   # idle pooled connection must be reused within this window
MAX_IDLE     = 10    # idle connections kept per target


class Connection:
    """One outbound stream pair bound to a single target."""

    def __init__(self, target, reader, writer):
        self.target = target
        self.reader = reader
        self.writer = writer
        self.idle_deadline = 0.0

    @property
    def peername(self):
        return self.writer.get_extra_info("peername")

    def usable(self):
        return not self.writer.is_closing() and not self.reader.at_eof()

    def close(self):
        with contextlib.suppress(Exception):
            self.writer.close()


class ConnectionPool:
    def __init__(self, target, dial_timeout=DIAL_TIMEOUT, idle_timeout=IDLE_TIMEOUT,
                 max_idle=MAX_IDLE, clock=time.monotonic):
        self.target = target
        self.host, self.port = parse_target(target)
        self.dial_timeout = dial_timeout
        self.idle_timeout = idle_timeout
        self.max_idle = max_idle
        self._clock = clock
        self._idle = []

    def __len__(self):
        return len(self._idle)

    async def get(self) -> Connection:
        while self._idle:
            conn = self._idle.pop()
            if conn.usable() and self._clock() < conn.idle_deadline:
                return conn
            conn.close()
        return await self.dial()

    async def dial(self) -> Connection:
        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_connection(self.host, self.port), timeout=self.dial_timeout
            )
        except (OSError, asyncio.TimeoutError) as e:
            raise PoolError(self.target, str(e) or "dial timed out") from e
        return Connection(self.target, reader, writer)

    def put(self, conn):
        if conn is None:
            return
        if conn.target == self.target and conn.usable() and len(self._idle) < self.max_idle:
            conn.idle_deadline = self._clock() + self.idle_timeout
            self._idle.append(conn)
        else:
            conn.close()

    def close(self):
        while self._idle:
            self._idle.pop().close()


class PoolRegistry:
    """Per-target pools, created up front for the configured targets."""

    def __init__(self, targets=(), **pool_options):
        self._options = pool_options
        self._lock = threading.Lock()
        self._pools = {t: ConnectionPool(t, **pool_options) for t in targets}

    def get(self, target) -> ConnectionPool:
        pool = self._pools.get(target)
        if pool is None:
            with self._lock:
                pool = self._pools.get(target)
                if pool is None:
                    log.debug("creating connection pool for %s", target)
                    pool = self._pools[target] = ConnectionPool(target, **self._options)
        return pool

    def close(self):
        with self._lock:
            for pool in self._pools.values():
                pool.close()
