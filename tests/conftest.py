"""Shared fixtures: a virtual clock, an in-memory durable store and wired services."""
import base64
import fnmatch
import math
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from app import create_app
from blob_store import BlobStore
from errors import StoreUnavailable
from gateway import Connection
from services import build_services

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 64


class FakeClock:
    """Wall clock and monotonic clock that only move when told to."""

    def __init__(self):
        self.wall = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)
        self.mono = 1000.0

    def now(self) -> datetime:
        return self.wall

    def monotonic(self) -> float:
        return self.mono

    def advance(self, seconds: float) -> None:
        self.wall += timedelta(seconds=seconds)
        self.mono += seconds


class FakeStore:
    """Durable store double. Keys never expire by themselves; ttl() reports what is left."""

    def __init__(self, clock: FakeClock, ready: bool = True):
        self.clock = clock
        self.ready = ready
        self.fail_writes = False
        self.data = {}
        self.expires = {}

    @property
    def is_ready(self) -> bool:
        return self.ready

    async def ping(self) -> bool:
        if not self.ready:
            raise StoreUnavailable("Redis ping failed")
        return True

    async def set_with_expiry(self, key, value, ttl):
        if self.fail_writes:
            raise StoreUnavailable("Redis set failed")
        self.data[key] = value
        self.expires[key] = self.clock.monotonic() + ttl

    async def get(self, key):
        return self.data.get(key)

    async def delete(self, key):
        existed = key in self.data
        self.data.pop(key, None)
        self.expires.pop(key, None)
        return int(existed)

    async def scan_keys(self, pattern):
        return [key for key in self.data if fnmatch.fnmatchcase(key, pattern)]

    async def ttl(self, key):
        if key not in self.data:
            return -2
        if key not in self.expires:
            return -1
        return math.ceil(self.expires[key] - self.clock.monotonic())


class Recorder:
    def __init__(self):
        self.events = []

    async def send(self, event, payload):
        self.events.append((event, payload))

    def named(self, event):
        return [payload for name, payload in self.events if name == event]


def make_connection(connection_id):
    recorder = Recorder()
    return Connection(connection_id, recorder.send), recorder


def png_payload(name="photo.png", **extra):
    data = "data:image/png;base64," + base64.b64encode(PNG_BYTES).decode()
    return {"name": name, "data": data, "size": len(PNG_BYTES), "mimeType": "image/png", **extra}


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return FakeStore(clock)


@pytest.fixture
def blobs(tmp_path):
    return BlobStore(str(tmp_path))


@pytest.fixture
def services(store, blobs, clock):
    return build_services(store, blobs=blobs, clock=clock.monotonic, now=clock.now)


@pytest.fixture
def client(services):
    app = create_app(services, run_janitor=False)
    with TestClient(app) as test_client:
        yield test_client
