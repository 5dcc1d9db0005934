from __future__ import annotations

import asyncio
from typing import Any

import structlog
from pydantic import ValidationError

from frea.constants import ARTIFACT_TASKS_TOPIC
from frea.core.interfaces import IManifestResolver, IMessageBus
from frea.core.models import (
    DispatchOutcome,
    DispatchStats,
    IndexRecord,
    Message,
    PackageManifest,
    TarballRef,
    VersionRecord,
)
from frea.storage.manifest import ManifestWriter

logger = structlog.get_logger(__name__)


def _summary(exc: ValidationError) -> str:
    return "; ".join(
        f"{'.'.join(str(p) for p in err['loc']) or '<root>'}: {err['msg']}" for err in exc.errors()
    )


class Dispatcher:
    """
    Fan a changed package out into replication work.

    One call resolves the package, validates the manifest and then runs
    three independent obligations concurrently:

    1. publish one artifact task per tarball,
    2. write one version document per version,
    3. write the package index document.

    Malformed entries are skipped one by one; a failure in one entry or
    obligation never suppresses another. The call returns only after all
    three have settled.

    Nothing here retries. A failed resolve, publish or write is logged and
    reported in the outcome; the next delivery of the same package (a later
    change, or feed replay after a follower restart) repeats the work, and
    every write is an idempotent overwrite.
    """

    def __init__(
        self,
        *,
        resolver: IManifestResolver,
        bus: IMessageBus,
        writer: ManifestWriter,
        fanout_concurrency: int = 16,
        topic: str = ARTIFACT_TASKS_TOPIC,
    ) -> None:
        self._resolver = resolver
        self._bus = bus
        self._writer = writer
        self._sem = asyncio.Semaphore(fanout_concurrency)
        self.topic = topic

    async def handle_message(self, message: Message) -> DispatchOutcome:
        try:
            package = message.payload.decode("utf-8")
        except UnicodeDecodeError:
            logger.error("undecodable change message", message_id=message.id)
            return DispatchOutcome(status="discarded", reason="undecodable", package="")
        return await self.handle(package)

    async def handle(self, package_id: str) -> DispatchOutcome:
        package = (package_id or "").strip()
        log = logger.bind(package=package)

        if not package:
            log.error("invalid message length")
            return DispatchOutcome(status="discarded", reason="empty", package=package)

        try:
            raw = await self._resolver.resolve(package)
        except Exception as e:
            log.error("failed to fetch manifest", error=repr(e))
            return DispatchOutcome(status="failed", reason="resolve", package=package)

        try:
            manifest = PackageManifest.model_validate(raw)
        except ValidationError as e:
            log.error("resolved manifest has invalid shape", problems=_summary(e))
            return DispatchOutcome(status="failed", reason="manifest", package=package)

        stats = DispatchStats()
        results = await asyncio.gather(
            self._publish_tarballs(log, manifest.tarballs, stats),
            self._write_versions(log, manifest.versions, stats),
            self._write_index(log, manifest.index, stats),
            return_exceptions=True,
        )
        crashed = [r for r in results if isinstance(r, BaseException)]
        for exc in crashed:
            log.error("dispatch obligation crashed", error=repr(exc))

        if crashed or stats.failures:
            status, reason = "failed", "partial"
        else:
            status, reason = "done", None
        log.info(
            "package dispatched",
            status=status,
            tarballs=stats.tarballs_published,
            versions=stats.versions_written,
            skipped=stats.tarballs_skipped + stats.versions_skipped,
            failed=stats.failures,
        )
        return DispatchOutcome(status=status, reason=reason, package=package, stats=stats)

    # --- obligation 1: artifact tasks -------------------------------------

    async def _publish_tarballs(self, log: Any, entries: list[Any], stats: DispatchStats) -> None:
        await asyncio.gather(*(self._publish_tarball(log, entry, stats) for entry in entries))

    async def _publish_tarball(self, log: Any, entry: Any, stats: DispatchStats) -> None:
        try:
            ref = TarballRef.model_validate(entry)
        except ValidationError as e:
            stats.tarballs_skipped += 1
            log.error("tarball entry is malformed", tarball=entry, problems=_summary(e))
            return

        task = ref.to_task()
        async with self._sem:
            try:
                await self._bus.publish(self.topic, task.url.encode("utf-8"), task.to_attributes())
            except Exception as e:
                stats.tarballs_failed += 1
                log.error(
                    "failed to publish message",
                    url=task.url,
                    path=task.path,
                    shasum=task.shasum,
                    error=repr(e),
                )
                return
        stats.tarballs_published += 1

    # --- obligation 2: version documents ----------------------------------

    async def _write_versions(self, log: Any, entries: list[Any], stats: DispatchStats) -> None:
        await asyncio.gather(*(self._write_version(log, entry, stats) for entry in entries))

    async def _write_version(self, log: Any, entry: Any, stats: DispatchStats) -> None:
        try:
            record = VersionRecord.model_validate(entry)
        except ValidationError as e:
            stats.versions_skipped += 1
            log.error("version entry is malformed", problems=_summary(e))
            return

        async with self._sem:
            outcome = await self._writer.write(
                record.document,
                record.key,
                log=log.bind(name=record.name, version=record.version),
            )
        if outcome.ok:
            stats.versions_written += 1
        else:
            stats.versions_failed += 1

    # --- obligation 3: package index --------------------------------------

    async def _write_index(self, log: Any, index: dict[str, Any], stats: DispatchStats) -> None:
        try:
            record = IndexRecord.model_validate(index)
        except ValidationError as e:
            log.error("index did not include name", problems=_summary(e))
            return

        outcome = await self._writer.write(index, record.key, log=log.bind(name=record.name))
        stats.index_written = outcome.ok
        stats.index_failed = not outcome.ok
