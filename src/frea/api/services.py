"""Process roles: concrete wiring of the use cases.

Each ``run_*`` coroutine builds the HTTP clients, stores and bus a role
needs from `MirrorConfig` and runs it until cancelled. The use cases
themselves only see the interfaces in `frea.core.interfaces`.

Roles
-----
- follower: change feed -> ``change-ids``
- packages: ``change-ids`` -> dispatcher -> ``artifact-tasks`` + manifests
- tarballs: ``artifact-tasks`` -> replicator
- mirror: all three in one process over a `LocalBus`
"""

from __future__ import annotations

import asyncio

import httpx
import structlog

from frea.bus.local import LocalBus
from frea.bus.spool import SpoolBus
from frea.clients.changes import ChangesFeed
from frea.clients.http import make_client
from frea.clients.registry import HttpArtifactSource, RegistryResolver
from frea.constants import ARTIFACT_TASKS_TOPIC, CHANGE_IDS_TOPIC
from frea.core.config import MirrorConfig
from frea.core.errors import ConfigError
from frea.core.interfaces import IMessageBus, IObjectStore
from frea.core.use_cases.dispatch import Dispatcher
from frea.core.use_cases.follow import Follower, FollowStats
from frea.core.use_cases.replicate import Replicator
from frea.ratelimit import WindowRateLimiter
from frea.storage.checkpoint import FileCheckpointStore
from frea.storage.manifest import ManifestWriter
from frea.storage.objects import FilesystemObjectStore
from frea.storage.s3 import S3ObjectStore

logger = structlog.get_logger(__name__)


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------


def build_bus(config: MirrorConfig) -> IMessageBus:
    """Bus for a single role; only the spool bus reaches other processes."""
    if config.bus != "spool":
        raise ConfigError("the local bus only connects roles inside `frea mirror`; use the spool bus")
    return SpoolBus(
        config.spool_root,
        visibility_timeout_s=config.visibility_timeout_s,
        max_delivery_attempts=config.max_delivery_attempts,
    )


def build_store(config: MirrorConfig) -> IObjectStore:
    if config.store == "s3":
        return S3ObjectStore(
            config.s3_bucket,
            prefix=config.s3_prefix,
            endpoint_url=config.s3_endpoint_url,
            region=config.s3_region,
        )
    return FilesystemObjectStore(config.store_root)


def _describe_store(config: MirrorConfig) -> str:
    if config.store == "s3":
        return f"s3://{config.s3_bucket}/{config.s3_prefix.strip('/')}"
    return str(config.store_root)


def build_checkpoints(config: MirrorConfig) -> FileCheckpointStore:
    return FileCheckpointStore(config.checkpoint_root)


def build_follower(config: MirrorConfig, client: httpx.AsyncClient, bus: IMessageBus) -> Follower:
    fc = config.follower
    return Follower(
        source=ChangesFeed(fc.changes_url, client, reconnect_delay_s=fc.reconnect_delay_s),
        bus=bus,
        checkpoints=build_checkpoints(config),
        limiter=WindowRateLimiter(fc.publish_limit, fc.publish_window_s),
        source_id=fc.checkpoint_id,
        inactivity_timeout_s=fc.inactivity_timeout_s,
        checkpoint_interval_s=fc.checkpoint_interval_s,
    )


def build_dispatcher(
    config: MirrorConfig,
    client: httpx.AsyncClient,
    bus: IMessageBus,
    store: IObjectStore,
) -> Dispatcher:
    dc = config.dispatcher
    return Dispatcher(
        resolver=RegistryResolver(dc.registry_url, client, tarball_base_url=dc.tarball_base_url),
        bus=bus,
        writer=ManifestWriter(store),
        fanout_concurrency=dc.fanout_concurrency,
    )


def build_replicator(config: MirrorConfig, client: httpx.AsyncClient, store: IObjectStore) -> Replicator:
    rc = config.replicator
    return Replicator(
        source=HttpArtifactSource(client, chunk_size=rc.chunk_size),
        store=store,
        digest_algorithm=rc.digest_algorithm,
        content_type=rc.content_type,
        public=rc.public,
    )


async def start_cursor(config: MirrorConfig, follower: Follower) -> int:
    """Explicit ``since`` wins; otherwise the stored checkpoint (fatal if absent)."""
    if config.follower.since is not None:
        return config.follower.since
    return await follower.load_cursor()


def _feed_client(config: MirrorConfig) -> httpx.AsyncClient:
    return make_client(
        timeout_s=config.timeout_s,
        read_timeout_s=config.follower.inactivity_timeout_s,
        max_connections=2,
    )


def _registry_client(config: MirrorConfig) -> httpx.AsyncClient:
    return make_client(timeout_s=config.timeout_s, max_connections=config.max_connections)


# ---------------------------------------------------------------------------
# Roles
# ---------------------------------------------------------------------------


async def run_follower(config: MirrorConfig, *, bus: IMessageBus | None = None) -> FollowStats:
    bus = bus or build_bus(config)
    async with _feed_client(config) as client:
        follower = build_follower(config, client, bus)
        since = await start_cursor(config, follower)
        await follower.run(since)
    return follower.stats


async def run_dispatcher(
    config: MirrorConfig,
    *,
    bus: IMessageBus | None = None,
    store: IObjectStore | None = None,
) -> None:
    bus = bus or build_bus(config)
    store = store or build_store(config)
    async with _registry_client(config) as client:
        dispatcher = build_dispatcher(config, client, bus, store)
        logger.info("consuming", topic=CHANGE_IDS_TOPIC, registry=config.dispatcher.registry_url)
        await bus.subscribe(CHANGE_IDS_TOPIC, dispatcher.handle_message, concurrency=config.bus_concurrency)


async def run_replicator(
    config: MirrorConfig,
    *,
    bus: IMessageBus | None = None,
    store: IObjectStore | None = None,
) -> None:
    bus = bus or build_bus(config)
    store = store or build_store(config)
    async with _registry_client(config) as client:
        replicator = build_replicator(config, client, store)
        logger.info("consuming", topic=ARTIFACT_TASKS_TOPIC, store=_describe_store(config))
        await bus.subscribe(ARTIFACT_TASKS_TOPIC, replicator.handle_message, concurrency=config.bus_concurrency)


async def run_mirror(config: MirrorConfig) -> None:
    """Run every role in one process, connected by an in-process bus.

    The starting cursor is read before anything else runs, so a missing
    checkpoint stops the process before any work starts.
    """
    bus = LocalBus(max_delivery_attempts=config.max_delivery_attempts)
    store = build_store(config)
    async with _feed_client(config) as feed_client, _registry_client(config) as client:
        follower = build_follower(config, feed_client, bus)
        since = await start_cursor(config, follower)
        dispatcher = build_dispatcher(config, client, bus, store)
        replicator = build_replicator(config, client, store)
        await asyncio.gather(
            follower.run(since),
            bus.subscribe(CHANGE_IDS_TOPIC, dispatcher.handle_message, concurrency=config.bus_concurrency),
            bus.subscribe(ARTIFACT_TASKS_TOPIC, replicator.handle_message, concurrency=config.bus_concurrency),
        )
