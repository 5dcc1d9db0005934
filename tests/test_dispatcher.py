import json
from typing import Any
from unittest.mock import AsyncMock

import pytest
from conftest import FakeResolver

from frea.constants import ARTIFACT_TASKS_TOPIC
from frea.core.models import Message
from frea.core.use_cases.dispatch import Dispatcher
from frea.storage.manifest import ManifestWriter
from frea.storage.objects import MemoryObjectStore


def _manifest(name: str = "left-pad") -> dict[str, Any]:
    return {
        "index": {"name": name, "dist-tags": {"latest": "1.1.0"}},
        "versions": [
            {"name": name, "version": "1.0.0", "document": {"name": name, "version": "1.0.0"}},
            {"name": name, "version": "1.1.0", "document": {"name": name, "version": "1.1.0"}},
        ],
        "tarballs": [
            {"path": f"{name}/1.0.0/{name}-1.0.0.tgz", "shasum": "aa" * 20, "tarball": f"https://r.example/{name}-1.0.0.tgz"},
            {"path": f"{name}/1.1.0/{name}-1.1.0.tgz", "shasum": "bb" * 20, "tarball": f"https://r.example/{name}-1.1.0.tgz"},
        ],
    }


async def _tasks(bus: Any) -> list[Message]:
    seen: list[Message] = []

    async def handler(message: Message) -> None:
        seen.append(message)

    await bus.drain(ARTIFACT_TASKS_TOPIC, handler)
    return seen


@pytest.mark.asyncio
async def test_dispatch_fans_out_tarballs_versions_and_index(
    bus: Any, store: MemoryObjectStore, writer: ManifestWriter
) -> None:
    dispatcher = Dispatcher(resolver=FakeResolver({"left-pad": _manifest()}), bus=bus, writer=writer)

    outcome = await dispatcher.handle("left-pad")

    assert outcome.ok
    assert outcome.stats.tarballs_published == 2
    assert outcome.stats.versions_written == 2
    assert outcome.stats.index_written

    tasks = await _tasks(bus)
    assert sorted(m.payload.decode() for m in tasks) == [
        "https://r.example/left-pad-1.0.0.tgz",
        "https://r.example/left-pad-1.1.0.tgz",
    ]
    first = next(m for m in tasks if m.payload.endswith(b"1.0.0.tgz"))
    assert first.attributes == {"path": "left-pad/1.0.0/left-pad-1.0.0.tgz", "shasum": "aa" * 20}

    assert sorted(store.objects) == [
        "left-pad/1.0.0/index.json",
        "left-pad/1.1.0/index.json",
        "left-pad/index.json",
    ]
    index = store.get("left-pad/index.json")
    assert index is not None
    assert index.content_type == "application/json"
    assert index.public
    assert json.loads(index.data) == {"name": "left-pad", "dist-tags": {"latest": "1.1.0"}}
    assert json.loads(store.objects["left-pad/1.1.0/index.json"].data) == {"name": "left-pad", "version": "1.1.0"}


@pytest.mark.asyncio
async def test_malformed_entries_are_skipped_individually(
    bus: Any, store: MemoryObjectStore, writer: ManifestWriter
) -> None:
    manifest = _manifest()
    manifest["tarballs"].append({"path": "left-pad/2.0.0/x.tgz", "tarball": "https://r.example/x.tgz"})
    manifest["tarballs"].append("not-an-object")
    manifest["versions"].append({"name": "left-pad", "version": "2.0.0"})
    manifest["versions"].append(None)
    dispatcher = Dispatcher(resolver=FakeResolver({"left-pad": manifest}), bus=bus, writer=writer)

    outcome = await dispatcher.handle("left-pad")

    assert outcome.ok
    assert outcome.stats.tarballs_published == 2
    assert outcome.stats.tarballs_skipped == 2
    assert outcome.stats.versions_written == 2
    assert outcome.stats.versions_skipped == 2
    assert len(await _tasks(bus)) == 2
    assert "left-pad/2.0.0/index.json" not in store.objects


@pytest.mark.asyncio
async def test_publish_failure_does_not_block_manifest_writes(
    store: MemoryObjectStore, writer: ManifestWriter
) -> None:
    failing_bus = AsyncMock()
    failing_bus.publish = AsyncMock(side_effect=RuntimeError("bus down"))
    dispatcher = Dispatcher(resolver=FakeResolver({"left-pad": _manifest()}), bus=failing_bus, writer=writer)

    outcome = await dispatcher.handle("left-pad")

    assert outcome.status == "failed"
    assert outcome.reason == "partial"
    assert outcome.stats.tarballs_failed == 2
    assert outcome.stats.versions_written == 2
    assert outcome.stats.index_written
    assert "left-pad/index.json" in store.objects


@pytest.mark.asyncio
async def test_index_without_name_is_logged_not_fatal(
    bus: Any, store: MemoryObjectStore, writer: ManifestWriter
) -> None:
    manifest = _manifest()
    manifest["index"] = {"description": "no name here"}
    dispatcher = Dispatcher(resolver=FakeResolver({"left-pad": manifest}), bus=bus, writer=writer)

    outcome = await dispatcher.handle("left-pad")

    assert outcome.ok
    assert not outcome.stats.index_written
    assert outcome.stats.versions_written == 2
    assert "left-pad/index.json" not in store.objects


@pytest.mark.asyncio
async def test_resolver_failure_produces_no_work(
    bus: Any, store: MemoryObjectStore, writer: ManifestWriter
) -> None:
    resolver = FakeResolver({"left-pad": RuntimeError("registry 503")})
    dispatcher = Dispatcher(resolver=resolver, bus=bus, writer=writer)

    outcome = await dispatcher.handle("left-pad")

    assert outcome.status == "failed"
    assert outcome.reason == "resolve"
    assert bus.pending(ARTIFACT_TASKS_TOPIC) == 0
    assert store.objects == {}


@pytest.mark.parametrize(
    "manifest",
    [
        {"index": ["not", "a", "mapping"], "versions": [], "tarballs": []},
        {"index": {"name": "x"}, "versions": {"1.0.0": {}}, "tarballs": []},
        {"index": {"name": "x"}, "versions": []},
        "garbage",
    ],
)
@pytest.mark.asyncio
async def test_invalid_manifest_shape_produces_no_work(
    manifest: Any, bus: Any, store: MemoryObjectStore, writer: ManifestWriter
) -> None:
    dispatcher = Dispatcher(resolver=FakeResolver({"x": manifest}), bus=bus, writer=writer)

    outcome = await dispatcher.handle("x")

    assert outcome.status == "failed"
    assert outcome.reason == "manifest"
    assert bus.pending(ARTIFACT_TASKS_TOPIC) == 0
    assert store.objects == {}


@pytest.mark.parametrize("package", ["", "   ", "\n"])
@pytest.mark.asyncio
async def test_empty_package_is_discarded(package: str, bus: Any, writer: ManifestWriter) -> None:
    resolver = FakeResolver({})
    dispatcher = Dispatcher(resolver=resolver, bus=bus, writer=writer)

    outcome = await dispatcher.handle(package)

    assert outcome.status == "discarded"
    assert resolver.calls == []


@pytest.mark.asyncio
async def test_handle_message_decodes_payload(bus: Any, writer: ManifestWriter) -> None:
    resolver = FakeResolver({"left-pad": _manifest()})
    dispatcher = Dispatcher(resolver=resolver, bus=bus, writer=writer)

    ok = await dispatcher.handle_message(Message(id="1", topic="change-ids", payload=b" left-pad\n"))
    bad = await dispatcher.handle_message(Message(id="2", topic="change-ids", payload=b"\xff\xfe"))

    assert ok.ok
    assert resolver.calls == ["left-pad"]
    assert bad.status == "discarded"
    assert bad.reason == "undecodable"


@pytest.mark.asyncio
async def test_redelivery_overwrites_manifests(
    bus: Any, store: MemoryObjectStore, writer: ManifestWriter
) -> None:
    dispatcher = Dispatcher(resolver=FakeResolver({"left-pad": _manifest()}), bus=bus, writer=writer)

    await dispatcher.handle("left-pad")
    before = {k: v.data for k, v in store.objects.items()}
    await dispatcher.handle("left-pad")

    assert {k: v.data for k, v in store.objects.items()} == before
    assert bus.pending(ARTIFACT_TASKS_TOPIC) == 4
