import asyncio
import contextlib
import dataclasses
import logging
import threading
import time
from datetime import datetime
from typing import List, Optional

from forwardoptimal.lb.proxy_protocol import ProxyProtocol
from forwardoptimal.lb.target import parse_target

log = logging.getLogger(__name__)

PROBE_TIMEOUT    = 5.0  # TCP dial timeout, seconds
FAILURE_INTERVAL = 5    # seconds between rounds while every target is down


@dataclasses.dataclass
class NodeHealth:
    address: str
    is_healthy: bool
    last_check: datetime
    latency: float = 0.0  # seconds; 0 when unhealthy
    error: Optional[str] = None

    @property
    def latency_ms(self):
        return self.latency * 1000.0 if self.is_healthy else None


def format_latency(latency):
    if latency is None:
        return "N/A"
    return f"{latency * 1000.0:.2f}ms"


class SelectionState:
    """The currently selected target; written by the monitor, read per session."""

    def __init__(self, target=None):
        self._lock = threading.Lock()
        self._target = target

    def get(self) -> Optional[str]:
        with self._lock:
            return self._target

    def set(self, target):
        with self._lock:
            previous, self._target = self._target, target
        return previous


class Prober:
    def __init__(self, timeout=PROBE_TIMEOUT):
        self.timeout = timeout

    async def probe(self, target) -> NodeHealth:
        start = time.perf_counter()
        try:
            host, port = parse_target(target)
            _, writer = await asyncio.wait_for(
                asyncio.open_connection(host, port), timeout=self.timeout
            )
        except Exception as e:
            reason = str(e) or type(e).__name__
            log.warning("target down: %s (%s)", target, reason)
            return NodeHealth(target, False, datetime.now(), error=reason)

        latency = time.perf_counter() - start
        writer.close()
        with contextlib.suppress(Exception):
            await writer.wait_closed()
        log.info("target up: %s (latency %s)", target, format_latency(latency))
        return NodeHealth(target, True, datetime.now(), latency)


class HealthMonitor:
    """Probes every target in order, then publishes the fastest healthy one.

    Rounds never overlap: ``run`` awaits each round before sleeping, and the
    sleep length depends on the round's outcome (``update_interval`` while
    anything is up, ``failure_interval`` during a total outage).
    """

    def __init__(self, targets, selection: SelectionState, prober=None,
                 update_interval=10, failure_interval=FAILURE_INTERVAL,
                 proxy_protocol=ProxyProtocol.NONE, telemetry=None):
        self.targets = list(targets)
        self.selection = selection
        self.prober = prober or Prober()
        self.update_interval = update_interval
        self.failure_interval = failure_interval if failure_interval and failure_interval > 0 else FAILURE_INTERVAL
        self.proxy_protocol = proxy_protocol
        self.telemetry = telemetry
        self._records = {}
        self._lock = threading.Lock()

    def snapshot(self) -> List[NodeHealth]:
        with self._lock:
            return [dataclasses.replace(self._records[t]) for t in self.targets if t in self._records]

    def all_failed(self):
        with self._lock:
            return not any(h.is_healthy for h in self._records.values())

    def next_interval(self):
        return self.failure_interval if self.all_failed() else self.update_interval

    async def check_all(self) -> Optional[str]:
        best, best_latency = None, 0.0
        for target in self.targets:
            health = await self.prober.probe(target)
            with self._lock:
                self._records[target] = health
            # strict < keeps the earliest configured target on ties
            if health.is_healthy and (best is None or health.latency < best_latency):
                best, best_latency = target, health.latency

        previous = self.selection.set(best)
        if previous != best:
            if best is None:
                log.warning("all targets down, rejecting new connections")
            else:
                log.info("selected target changed: %s -> %s", previous or "none", best)
        snapshot = self.snapshot()
        self.report(best, best_latency, snapshot)
        if self.telemetry is not None:
            self.telemetry.emit_round(best, snapshot, self.proxy_protocol, changed=previous != best)
        return best

    def report(self, best, best_latency, snapshot):
        healthy = sum(1 for h in snapshot if h.is_healthy)
        total = len(self.targets)
        log.info("==============================")
        log.info("health report %s", datetime.now().strftime("%Y-%m-%d %H:%M:%S"))
        if best is not None:
            log.info("best target: %s (latency %s)", best, format_latency(best_latency))
            log.info("healthy targets: %d/%d, service running", healthy, total)
            log.info("next check in %ss", self.update_interval)
        else:
            log.warning("all targets failed (%d/%d), new connections are rejected", healthy, total)
            log.warning("retrying in %ss", self.failure_interval)
        log.info("proxy protocol: %s", self.proxy_protocol.value)
        for h in snapshot:
            if h.is_healthy:
                log.info("  up   %s (latency %s)", h.address, format_latency(h.latency))
            else:
                log.info("  down %s", h.address)
        log.info("==============================")

    async def run(self):
        while True:
            await asyncio.sleep(self.next_interval())
            try:
                await self.check_all()
            except Exception:
                log.exception("health round failed")
