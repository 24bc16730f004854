from forwardoptimal.errors import ConfigError


def parse_target(target: str, min_port: int = 1):
    """Split ``host:port`` (``[v6]:port`` for IPv6) into ``(host, port)``."""
    host, sep, port = str(target).strip().rpartition(":")
    if not sep or not port.isdigit():
        raise ConfigError(f"invalid address {target!r}: expected host:port")
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    elif ":" in host:
        raise ConfigError(f"invalid address {target!r}: IPv6 hosts must be bracketed")
    port = int(port)
    if not host or not min_port <= port <= 0xFFFF:
        raise ConfigError(f"invalid address {target!r}")
    return host, port


def parse_bind(addr: str):
    """Like parse_target, but ``:8080`` means every interface (host None)."""
    addr = str(addr).strip()
    if addr.startswith(":") and addr[1:].isdigit():
        port = int(addr[1:])
        if port > 0xFFFF:
            raise ConfigError(f"invalid address {addr!r}")
        return None, port
    return parse_target(addr, min_port=0)
