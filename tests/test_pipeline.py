import json
from pathlib import Path

import httpx
import pytest
from conftest import sha1_hex

from frea.api.services import build_dispatcher, build_replicator
from frea.bus.local import LocalBus
from frea.constants import ARTIFACT_TASKS_TOPIC, CHANGE_IDS_TOPIC
from frea.core.config import DispatcherConfig, MirrorConfig
from frea.storage.objects import FilesystemObjectStore

GOOD = b"good tarball bytes"
CORRUPT = b"tampered bytes"


def _registry(request: httpx.Request) -> httpx.Response:
    if request.url.path == "/left-pad":
        return httpx.Response(
            200,
            json={
                "name": "left-pad",
                "versions": {
                    "1.0.0": {
                        "name": "left-pad",
                        "version": "1.0.0",
                        "dist": {
                            "shasum": sha1_hex(GOOD),
                            "tarball": "https://registry.example/left-pad/-/left-pad-1.0.0.tgz",
                        },
                    },
                    "1.0.1": {
                        "name": "left-pad",
                        "version": "1.0.1",
                        "dist": {
                            "shasum": sha1_hex(GOOD),
                            "tarball": "https://registry.example/left-pad/-/left-pad-1.0.1.tgz",
                        },
                    },
                },
            },
        )
    if request.url.path == "/left-pad/-/left-pad-1.0.0.tgz":
        return httpx.Response(200, content=GOOD)
    if request.url.path == "/left-pad/-/left-pad-1.0.1.tgz":
        return httpx.Response(200, content=CORRUPT)
    return httpx.Response(404)


@pytest.mark.asyncio
async def test_change_flows_to_verified_objects(tmp_path: Path) -> None:
    config = MirrorConfig(
        store_root=tmp_path / "mirror",
        dispatcher=DispatcherConfig(registry_url="https://registry.example"),
    )
    bus = LocalBus()
    store = FilesystemObjectStore(config.store_root)

    async with httpx.AsyncClient(transport=httpx.MockTransport(_registry)) as client:
        dispatcher = build_dispatcher(config, client, bus, store)
        replicator = build_replicator(config, client, store)

        await bus.publish(CHANGE_IDS_TOPIC, b"left-pad", {"seq": "1"})
        outcomes = []

        async def dispatch(message):
            outcomes.append(await dispatcher.handle_message(message))

        async def replicate(message):
            outcomes.append(await replicator.handle_message(message))

        assert await bus.drain(CHANGE_IDS_TOPIC, dispatch) == 1
        assert await bus.drain(ARTIFACT_TASKS_TOPIC, replicate) == 2

    statuses = sorted((o.status, o.reason) for o in outcomes)
    assert statuses == [("done", None), ("done", None), ("failed", "integrity")]

    root = config.store_root
    assert (root / "left-pad" / "1.0.0" / "left-pad-1.0.0.tgz").read_bytes() == GOOD
    assert not (root / "left-pad" / "1.0.1" / "left-pad-1.0.1.tgz").exists()
    assert json.loads((root / "left-pad" / "index.json").read_text())["name"] == "left-pad"
    assert json.loads((root / "left-pad" / "1.0.1" / "index.json").read_text())["version"] == "1.0.1"
