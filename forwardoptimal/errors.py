class ForwardOptimalError(Exception):
    pass


class ConfigError(ForwardOptimalError):
    """Configuration document is missing, unreadable or invalid."""


class PoolError(ForwardOptimalError):
    """No connection to the target could be obtained."""

    def __init__(self, target, cause=None):
        self.target = target
        self.cause = cause
        super().__init__(f"cannot connect to {target}: {cause}")


class ProxyHeaderError(ForwardOptimalError):
    """Addresses cannot be expressed in a PROXY protocol header."""
