import asyncio
import contextlib
import logging
import secrets
import time

from forwardoptimal.errors import PoolError, ProxyHeaderError
from forwardoptimal.lb.proxy_protocol import ProxyProtocol

log = logging.getLogger(__name__)

BUFFER_SIZE   = 32 * 1024  # bytes per read
RELAY_TIMEOUT = 30.0       # idle read/write deadline, seconds

# expected ways for a session to end; not worth an error line
QUIET_ERRORS = (
    asyncio.TimeoutError,
    TimeoutError,
    BrokenPipeError,
    ConnectionResetError,
    ConnectionAbortedError,
)


def _close(writer):
    with contextlib.suppress(Exception):
        writer.close()


class RelayEngine:
    """Forwards each client connection to the target selected at accept time."""

    def __init__(self, selection, pools, proxy_protocol=ProxyProtocol.NONE,
                 relay_timeout=RELAY_TIMEOUT, buffer_size=BUFFER_SIZE, telemetry=None):
        self.selection = selection
        self.pools = pools
        self.proxy_protocol = proxy_protocol
        self.relay_timeout = relay_timeout
        self.buffer_size = buffer_size
        self.telemetry = telemetry

    def _emit(self, type_, **fields):
        if self.telemetry is not None:
            self.telemetry.emit(type_, **fields)

    async def handle(self, reader, writer):
        cid = f"{int(time.time() * 1000)}-{secrets.token_hex(3)}"
        client_peer = writer.get_extra_info("peername")
        peer_label = f"{client_peer[0]}:{client_peer[1]}" if client_peer else "?"
        self._emit("accept", cid=cid, client_peer=peer_label)

        # read once: the session sticks to this target even if selection moves
        target = self.selection.get()
        if target is None:
            log.debug("no healthy target, closing %s (cid=%s)", peer_label, cid)
            _close(writer)
            self._emit("reject", cid=cid, client_peer=peer_label)
            return

        pool = self.pools.get(target)
        try:
            conn = await pool.get()
        except PoolError as e:
            log.warning("cannot get connection to %s: %s (cid=%s)", target, e.cause, cid)
            _close(writer)
            self._emit("reject", cid=cid, client_peer=peer_label, backend=target)
            return

        self._emit("connect_ok", cid=cid, client_peer=peer_label, backend=target)
        start = time.monotonic()
        stats = {"up": 0, "down": 0}
        try:
            if self.proxy_protocol.enabled:
                try:
                    await self._write_header(client_peer, conn)
                except (ProxyHeaderError, OSError, asyncio.TimeoutError) as e:
                    log.warning("writing PROXY header to %s failed: %s (cid=%s)", target, e, cid)
                    return
            await self._relay(reader, writer, conn, stats, cid)
        finally:
            _close(writer)
            conn.close()
            # put() discards anything that is no longer usable
            pool.put(conn)
            duration_ms = int((time.monotonic() - start) * 1000)
            log.debug("session %s %s -> %s closed after %dms (up %d, down %d)",
                      cid, peer_label, target, duration_ms, stats["up"], stats["down"])
            self._emit("end", cid=cid, client_peer=peer_label, backend=target,
                       duration_ms=duration_ms, bytes_up=stats["up"], bytes_down=stats["down"])

    async def _write_header(self, client_peer, conn):
        if not client_peer or not conn.peername:
            raise ProxyHeaderError("connection has no peer address")
        header = self.proxy_protocol.encode(client_peer, conn.peername)
        conn.writer.write(header)
        await asyncio.wait_for(conn.writer.drain(), timeout=self.relay_timeout)

    async def _relay(self, client_reader, client_writer, conn, stats, cid):
        async def pump(src, dst, direction):
            while True:
                data = await asyncio.wait_for(src.read(self.buffer_size), timeout=self.relay_timeout)
                if not data:
                    break
                dst.write(data)
                await asyncio.wait_for(dst.drain(), timeout=self.relay_timeout)
                stats[direction] += len(data)

        tasks = {
            asyncio.create_task(pump(client_reader, conn.writer, "up"), name=f"{cid}-up"),
            asyncio.create_task(pump(conn.reader, client_writer, "down"), name=f"{cid}-down"),
        }
        # either direction ending ends the session
        _, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
        results = await asyncio.gather(*tasks, return_exceptions=True)
        for task, result in zip(tasks, results):
            if isinstance(result, asyncio.CancelledError) or not isinstance(result, BaseException):
                continue
            if isinstance(result, QUIET_ERRORS):
                log.debug("relay %s ended: %r", task.get_name(), result)
            else:
                log.error("relay %s failed: %r", task.get_name(), result)
