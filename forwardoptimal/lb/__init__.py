from forwardoptimal.lb.health import HealthMonitor, NodeHealth, Prober, SelectionState
from forwardoptimal.lb.pool import ConnectionPool, PoolRegistry
from forwardoptimal.lb.proxy_protocol import ProxyProtocol
from forwardoptimal.lb.relay import RelayEngine
from forwardoptimal.lb.server import Listener

__all__ = [
    "ConnectionPool",
    "HealthMonitor",
    "Listener",
    "NodeHealth",
    "PoolRegistry",
    "Prober",
    "ProxyProtocol",
    "RelayEngine",
    "SelectionState",
]
