import asyncio
import hashlib
from collections.abc import AsyncIterator, Iterable
from typing import Any

import pytest
import structlog

from frea.bus.local import LocalBus
from frea.core.models import ChangeEvent
from frea.storage.manifest import ManifestWriter
from frea.storage.objects import MemoryObjectStore


def sha1_hex(data: bytes) -> str:
    return hashlib.sha1(data).hexdigest()


class FakeChangeSource:
    """Yields a fixed list of events, optionally lingering before it ends."""

    def __init__(self, events: Iterable[ChangeEvent], *, linger_s: float = 0.0) -> None:
        self.events = list(events)
        self.linger_s = linger_s
        self.calls: list[dict[str, Any]] = []

    async def subscribe(self, *, since: int, inactivity_timeout: float) -> AsyncIterator[ChangeEvent]:
        self.calls.append({"since": since, "inactivity_timeout": inactivity_timeout})
        for event in self.events:
            yield event
        if self.linger_s:
            await asyncio.sleep(self.linger_s)


class MemoryCheckpointStore:
    def __init__(self, values: dict[str, int] | None = None) -> None:
        self.values: dict[str, int] = dict(values or {})
        self.writes: list[int] = []
        self.gate: asyncio.Event | None = None
        self.fail_with: Exception | None = None

    async def get(self, source_id: str) -> int | None:
        if self.fail_with is not None:
            raise self.fail_with
        return self.values.get(source_id)

    async def set(self, source_id: str, value: int) -> None:
        if self.gate is not None:
            await self.gate.wait()
        if self.fail_with is not None:
            raise self.fail_with
        self.values[source_id] = value
        self.writes.append(value)


class FakeLimiter:
    def __init__(self) -> None:
        self.acquired = 0

    async def acquire(self) -> None:
        self.acquired += 1


class FakeResolver:
    def __init__(self, manifests: dict[str, Any]) -> None:
        self.manifests = manifests
        self.calls: list[str] = []

    async def resolve(self, package: str) -> Any:
        self.calls.append(package)
        result = self.manifests[package]
        if isinstance(result, Exception):
            raise result
        return result


class FakeArtifactSource:
    """url -> list of chunks; an Exception in the list is raised at that point."""

    def __init__(self, bodies: dict[str, list[Any]]) -> None:
        self.bodies = bodies
        self.closed: list[str] = []

    async def stream(self, url: str) -> AsyncIterator[bytes]:
        try:
            for item in self.bodies[url]:
                if isinstance(item, Exception):
                    raise item
                yield item
        finally:
            self.closed.append(url)


@pytest.fixture(autouse=True)
def _reset_structlog():
    yield
    structlog.reset_defaults()


@pytest.fixture
def checkpoints() -> MemoryCheckpointStore:
    return MemoryCheckpointStore()


@pytest.fixture
def limiter() -> FakeLimiter:
    return FakeLimiter()


@pytest.fixture
def bus() -> LocalBus:
    return LocalBus(max_delivery_attempts=3)


@pytest.fixture
def store() -> MemoryObjectStore:
    return MemoryObjectStore()


@pytest.fixture
def writer(store: MemoryObjectStore) -> ManifestWriter:
    return ManifestWriter(store, chunk_size=16)
