"""Configuration document loading.

The document is JSON with camelCase keys::

    {
        "bindAddr": ":8080",
        "targets": ["10.0.0.1:80", "[2001:db8::1]:80"],
        "updateInterval": 10,
        "failureInterval": 5,
        "proxyProtocol": "v2"
    }

A handful of tunables can also be overridden from the environment
(``FO_DIAL_TIMEOUT``, ``FO_RELAY_TIMEOUT``, ``FO_POOL_IDLE_TIMEOUT``,
``REDIS_HOST``, ``REDIS_PORT``, ``REDIS_DB``).
"""
import dataclasses
import json
import os
from typing import List, Optional

from forwardoptimal.errors import ConfigError
from forwardoptimal.lb.health import FAILURE_INTERVAL, PROBE_TIMEOUT
from forwardoptimal.lb.pool import IDLE_TIMEOUT, MAX_IDLE
from forwardoptimal.lb.proxy_protocol import ProxyProtocol
from forwardoptimal.lb.relay import BUFFER_SIZE, RELAY_TIMEOUT
from forwardoptimal.lb.target import parse_bind, parse_target

DEFAULT_CONFIG_FILE = "config.json"


@dataclasses.dataclass
class RedisSettings:
    host: str = "localhost"
    port: int = 6379
    db: int = 0


@dataclasses.dataclass
class Config:
    bind_addr: str
    targets: List[str]
    update_interval: int
    failure_interval: int = FAILURE_INTERVAL
    proxy_protocol: ProxyProtocol = ProxyProtocol.NONE
    dial_timeout: float = PROBE_TIMEOUT
    pool_idle_timeout: float = IDLE_TIMEOUT
    pool_max_idle: int = MAX_IDLE
    relay_timeout: float = RELAY_TIMEOUT
    buffer_size: int = BUFFER_SIZE
    redis: Optional[RedisSettings] = None

    @property
    def bind(self):
        return parse_bind(self.bind_addr)

    @classmethod
    def from_dict(cls, data, env=None):
        env = os.environ if env is None else env
        if not isinstance(data, dict):
            raise ConfigError("configuration must be a JSON object")

        bind_addr = data.get("bindAddr")
        targets = data.get("targets")
        update_interval = data.get("updateInterval")
        if not bind_addr or not isinstance(bind_addr, str):
            raise ConfigError("bindAddr is required")
        if not isinstance(targets, list) or not targets:
            raise ConfigError("targets must be a non-empty list")
        if not _is_int(update_interval) or update_interval <= 0:
            raise ConfigError("updateInterval must be a positive integer")

        parse_bind(bind_addr)
        for target in targets:
            if not isinstance(target, str):
                raise ConfigError(f"invalid target {target!r}")
            parse_target(target)
        if len(set(targets)) != len(targets):
            raise ConfigError("targets must not contain duplicates")

        failure_interval = data.get("failureInterval") or 0
        if not _is_int(failure_interval):
            raise ConfigError("failureInterval must be an integer")
        if failure_interval <= 0:
            failure_interval = FAILURE_INTERVAL

        config = cls(
            bind_addr=bind_addr,
            targets=list(targets),
            update_interval=update_interval,
            failure_interval=failure_interval,
            proxy_protocol=ProxyProtocol.parse(data.get("proxyProtocol")),
            dial_timeout=_positive(env.get("FO_DIAL_TIMEOUT", data.get("dialTimeout", PROBE_TIMEOUT)), "dialTimeout"),
            pool_idle_timeout=_positive(env.get("FO_POOL_IDLE_TIMEOUT", data.get("poolIdleTimeout", IDLE_TIMEOUT)), "poolIdleTimeout"),
            pool_max_idle=int(_positive(data.get("poolMaxIdle", MAX_IDLE), "poolMaxIdle")),
            relay_timeout=_positive(env.get("FO_RELAY_TIMEOUT", data.get("relayTimeout", RELAY_TIMEOUT)), "relayTimeout"),
            buffer_size=int(_positive(data.get("bufferSize", BUFFER_SIZE), "bufferSize")),
            redis=_redis_settings(data.get("redis"), env),
        )
        return config


def _is_int(value):
    return isinstance(value, int) and not isinstance(value, bool)


def _positive(value, name):
    try:
        value = float(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{name} must be a number") from None
    if value <= 0:
        raise ConfigError(f"{name} must be positive")
    return value


def _redis_settings(section, env):
    if section is None and not env.get("REDIS_HOST"):
        return None
    if section is not None and not isinstance(section, dict):
        raise ConfigError("redis must be an object")
    section = section or {}
    try:
        return RedisSettings(
            host=env.get("REDIS_HOST") or section.get("host", "localhost"),
            port=int(env.get("REDIS_PORT") or section.get("port", 6379)),
            db=int(env.get("REDIS_DB") or section.get("db", 0)),
        )
    except (TypeError, ValueError):
        raise ConfigError("redis port and db must be integers") from None


def load_config(path=DEFAULT_CONFIG_FILE, env=None) -> Config:
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except OSError as e:
        raise ConfigError(f"cannot open config file {path}: {e}") from e
    except json.JSONDecodeError as e:
        raise ConfigError(f"cannot parse config file {path}: {e}") from e
    return Config.from_dict(data, env=env)
