import base64
import hashlib
from pathlib import Path

import httpx
import pytest
from conftest import FakeArtifactSource, sha1_hex

from frea.core.errors import PreconditionFailedError
from frea.core.models import ArtifactTask, Message
from frea.core.use_cases.replicate import Replicator
from frea.storage.objects import FilesystemObjectStore, MemoryObjectStore

URL = "https://registry.example/left-pad/-/left-pad-1.0.0.tgz"
PATH = "left-pad/1.0.0/left-pad-1.0.0.tgz"
BODY = [b"\x1f\x8b", b"tarball-", b"bytes"]
DIGEST = sha1_hex(b"".join(BODY))


class _RacingStore(MemoryObjectStore):
    """Another delivery replaces the object before cleanup runs."""

    async def delete(self, key: str, *, if_generation: str | None = None) -> None:
        raise PreconditionFailedError(key)


class _BrokenDeleteStore(MemoryObjectStore):
    async def delete(self, key: str, *, if_generation: str | None = None) -> None:
        raise OSError("store unavailable")


@pytest.mark.asyncio
async def test_matching_digest_stores_artifact(store: MemoryObjectStore) -> None:
    source = FakeArtifactSource({URL: BODY})
    replicator = Replicator(source=source, store=store)

    outcome = await replicator.handle(ArtifactTask(url=URL, path=PATH, shasum=DIGEST))

    assert outcome.ok
    assert outcome.digest == DIGEST
    assert outcome.size == len(b"".join(BODY))
    stored = store.get(PATH)
    assert stored is not None
    assert stored.data == b"".join(BODY)
    assert stored.content_type == "application/gzip"
    assert stored.public
    assert source.closed == [URL]


@pytest.mark.asyncio
async def test_uppercase_and_sri_digests_match(store: MemoryObjectStore) -> None:
    raw = hashlib.sha1(b"".join(BODY)).digest()
    sri = "sha1-" + base64.b64encode(raw).decode()
    replicator = Replicator(source=FakeArtifactSource({URL: BODY}), store=store)

    assert (await replicator.handle(ArtifactTask(URL, PATH, DIGEST.upper()))).ok
    assert (await replicator.handle(ArtifactTask(URL, PATH, sri))).ok


@pytest.mark.asyncio
async def test_digest_mismatch_deletes_artifact(store: MemoryObjectStore) -> None:
    replicator = Replicator(source=FakeArtifactSource({URL: BODY}), store=store)

    outcome = await replicator.handle(ArtifactTask(url=URL, path=PATH, shasum="0" * 40))

    assert outcome.status == "failed"
    assert outcome.reason == "integrity"
    assert outcome.digest == DIGEST
    assert outcome.cleaned_up
    assert store.get(PATH) is None


@pytest.mark.asyncio
@pytest.mark.parametrize("algorithm", ["sha256", "sha384", "sha512"])
async def test_sri_digest_is_checked_with_its_own_algorithm(
    algorithm: str, store: MemoryObjectStore
) -> None:
    raw = hashlib.new(algorithm, b"".join(BODY)).digest()
    sri = f"{algorithm}-" + base64.b64encode(raw).decode()
    replicator = Replicator(source=FakeArtifactSource({URL: BODY}), store=store)

    outcome = await replicator.handle(ArtifactTask(URL, PATH, sri))

    assert outcome.ok
    assert outcome.digest == raw.hex()
    assert store.get(PATH) is not None


@pytest.mark.asyncio
async def test_sri_digest_of_other_bytes_still_fails(store: MemoryObjectStore) -> None:
    raw = hashlib.sha512(b"something else").digest()
    sri = "sha512-" + base64.b64encode(raw).decode()
    replicator = Replicator(source=FakeArtifactSource({URL: BODY}), store=store)

    outcome = await replicator.handle(ArtifactTask(URL, PATH, sri))

    assert outcome.reason == "integrity"
    assert store.get(PATH) is None


@pytest.mark.asyncio
async def test_mismatch_leaves_newer_generation_alone() -> None:
    store = _RacingStore()
    replicator = Replicator(source=FakeArtifactSource({URL: BODY}), store=store)

    outcome = await replicator.handle(ArtifactTask(url=URL, path=PATH, shasum="0" * 40))

    assert outcome.reason == "integrity"
    assert not outcome.cleaned_up
    assert store.get(PATH) is not None


@pytest.mark.asyncio
async def test_cleanup_failure_is_reported_not_raised() -> None:
    replicator = Replicator(source=FakeArtifactSource({URL: BODY}), store=_BrokenDeleteStore())

    outcome = await replicator.handle(ArtifactTask(url=URL, path=PATH, shasum="0" * 40))

    assert outcome.reason == "integrity"
    assert not outcome.cleaned_up


@pytest.mark.asyncio
async def test_transport_failure_leaves_nothing_visible(store: MemoryObjectStore) -> None:
    source = FakeArtifactSource({URL: [b"partial", httpx.ReadError("connection reset")]})
    replicator = Replicator(source=source, store=store)

    outcome = await replicator.handle(ArtifactTask(url=URL, path=PATH, shasum=DIGEST))

    assert outcome.status == "failed"
    assert outcome.reason == "transport"
    assert outcome.size == len(b"partial")
    assert store.get(PATH) is None
    assert source.closed == [URL]


@pytest.mark.asyncio
async def test_transport_failure_on_filesystem_keeps_previous_copy(tmp_path: Path) -> None:
    store = FilesystemObjectStore(tmp_path)
    good = Replicator(source=FakeArtifactSource({URL: BODY}), store=store)
    assert (await good.handle(ArtifactTask(URL, PATH, DIGEST))).ok

    broken = Replicator(
        source=FakeArtifactSource({URL: [b"xx", httpx.RemoteProtocolError("eof")]}),
        store=store,
    )
    outcome = await broken.handle(ArtifactTask(URL, PATH, DIGEST))

    assert outcome.reason == "transport"
    assert store.path_for(PATH).read_bytes() == b"".join(BODY)
    assert not list(store.path_for(PATH).parent.glob("*.part"))


@pytest.mark.parametrize(
    ("task", "reason"),
    [
        (ArtifactTask(url="", path=PATH, shasum=DIGEST), "missing url"),
        (ArtifactTask(url=URL, path="", shasum=DIGEST), "missing attributes"),
        (ArtifactTask(url=URL, path=PATH, shasum=""), "missing attributes"),
    ],
)
@pytest.mark.asyncio
async def test_incomplete_task_is_discarded(task: ArtifactTask, reason: str, store: MemoryObjectStore) -> None:
    source = FakeArtifactSource({})
    replicator = Replicator(source=source, store=store)

    outcome = await replicator.handle(task)

    assert outcome.status == "discarded"
    assert outcome.reason == reason
    assert source.closed == []
    assert store.objects == {}


@pytest.mark.asyncio
async def test_handle_message_reads_payload_and_attributes(store: MemoryObjectStore) -> None:
    replicator = Replicator(source=FakeArtifactSource({URL: BODY}), store=store)
    message = Message(
        id="t-1",
        topic="artifact-tasks",
        payload=f"{URL}\n".encode(),
        attributes={"path": PATH, "shasum": DIGEST},
    )

    outcome = await replicator.handle_message(message)

    assert outcome.ok
    assert store.get(PATH) is not None
