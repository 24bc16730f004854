"""
Shared fixtures: loopback upstream servers and an in-memory redis stand-in.
"""
import asyncio
import contextlib
import socket

import pytest
import pytest_asyncio


class Upstream:
    """A loopback TCP server that records what it receives and echoes it back."""

    def __init__(self):
        self.server = None
        self.received = bytearray()
        self.accepted = 0
        self.writers = []

    @property
    def port(self):
        return self.server.sockets[0].getsockname()[1]

    @property
    def address(self):
        return f"127.0.0.1:{self.port}"

    async def _handle(self, reader, writer):
        self.accepted += 1
        self.writers.append(writer)
        try:
            while True:
                data = await reader.read(65536)
                if not data:
                    break
                self.received += data
                writer.write(data)
                await writer.drain()
        except (ConnectionError, asyncio.CancelledError):
            pass
        finally:
            writer.close()

    async def start(self):
        self.server = await asyncio.start_server(self._handle, "127.0.0.1", 0)
        return self

    async def stop(self):
        for writer in self.writers:
            with contextlib.suppress(Exception):
                writer.close()
        self.server.close()


@pytest_asyncio.fixture
async def upstream():
    up = await Upstream().start()
    yield up
    await up.stop()


@pytest_asyncio.fixture
async def upstream_factory():
    started = []

    async def make():
        up = await Upstream().start()
        started.append(up)
        return up

    yield make
    for up in started:
        await up.stop()


@pytest.fixture
def closed_port():
    """A loopback port with nothing listening on it."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    port = sock.getsockname()[1]
    sock.close()
    return port


class FakeRedis:
    def __init__(self, error=None):
        self.error = error
        self.hashes = {}
        self.streams = {}
        self.closed = False

    def _check(self):
        if self.error is not None:
            raise self.error

    def hset(self, key, mapping=None):
        self._check()
        self.hashes.setdefault(key, {}).update({k: str(v) for k, v in mapping.items()})
        return len(mapping)

    def hgetall(self, key):
        self._check()
        return dict(self.hashes.get(key, {}))

    def xadd(self, key, fields, maxlen=None, approximate=True):
        self._check()
        entries = self.streams.setdefault(key, [])
        entries.append({k: str(v) for k, v in fields.items()})
        return f"{len(entries)}-0"

    def close(self):
        self.closed = True


@pytest.fixture
def fake_redis():
    return FakeRedis()
