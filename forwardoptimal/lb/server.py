import asyncio
import contextlib
import logging

from forwardoptimal.lb.health import HealthMonitor, Prober, SelectionState
from forwardoptimal.lb.pool import PoolRegistry
from forwardoptimal.lb.relay import RelayEngine
from forwardoptimal.lb.telemetry import Telemetry

log = logging.getLogger(__name__)


class Listener:
    """Binds the listen address and dispatches every client to the relay."""

    def __init__(self, config, prober=None, telemetry=None):
        self.config = config
        if telemetry is None and config.redis is not None:
            telemetry = Telemetry.connect(config.redis.host, config.redis.port, config.redis.db)
        self.telemetry = telemetry
        self.selection = SelectionState()
        self.pools = PoolRegistry(
            config.targets,
            dial_timeout=config.dial_timeout,
            idle_timeout=config.pool_idle_timeout,
            max_idle=config.pool_max_idle,
        )
        self.monitor = HealthMonitor(
            config.targets,
            self.selection,
            prober=prober or Prober(config.dial_timeout),
            update_interval=config.update_interval,
            failure_interval=config.failure_interval,
            proxy_protocol=config.proxy_protocol,
            telemetry=telemetry,
        )
        self.relay = RelayEngine(
            self.selection,
            self.pools,
            proxy_protocol=config.proxy_protocol,
            relay_timeout=config.relay_timeout,
            buffer_size=config.buffer_size,
            telemetry=telemetry,
        )
        self.server = None
        self._monitor_task = None
        self._ready = asyncio.Event()

    @property
    def addresses(self):
        if self.server is None:
            return []
        return [s.getsockname() for s in self.server.sockets]

    async def _dispatch(self, reader, writer):
        # clients accepted during the first round are held until it completes
        await self._ready.wait()
        try:
            await self.relay.handle(reader, writer)
        except Exception:
            log.exception("unhandled error in relay session")
            with contextlib.suppress(Exception):
                writer.close()

    async def start(self):
        host, port = self.config.bind
        # bind errors (OSError) propagate: they are fatal at startup
        self.server = await asyncio.start_server(self._dispatch, host=host, port=port)
        log.info("TCP relay bound to %s", ", ".join(f"{a[0]}:{a[1]}" for a in self.addresses))
        log.info("targets: %d", len(self.config.targets))

        await self.monitor.check_all()
        self._monitor_task = asyncio.create_task(self.monitor.run(), name="health-monitor")
        self._ready.set()
        log.info("accepting connections")

    async def serve_forever(self):
        async with self.server:
            await self.server.serve_forever()

    async def close(self):
        if self._monitor_task is not None:
            self._monitor_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._monitor_task
            self._monitor_task = None
        if self.server is not None:
            # live sessions drain on their own deadlines
            self.server.close()
        self.pools.close()
        if self.telemetry is not None:
            await self.telemetry.aclose()
