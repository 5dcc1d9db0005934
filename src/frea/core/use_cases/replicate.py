from __future__ import annotations

from contextlib import aclosing

import structlog

from frea.constants import TARBALL_CONTENT_TYPE
from frea.core.errors import ObjectNotFoundError, PreconditionFailedError
from frea.core.interfaces import IArtifactSource, IObjectStore
from frea.core.models import ArtifactTask, Message, ReplicationOutcome
from frea.digest import DigestStream, algorithm_for, digests_match

logger = structlog.get_logger(__name__)


class Replicator:
    """
    Copy one artifact into the object store and verify its digest.

    ``START -> VALIDATE -> STREAM -> VERIFY -> {DONE | CLEANUP -> DONE}``

    - VALIDATE: a task without URL, destination path or expected digest can
      never succeed and is discarded.
    - STREAM: source bytes flow through a `DigestStream` straight into the
      store writer. A transport failure on either side ends the task as
      failed; the store never exposes an object whose writer did not close
      cleanly, so there is nothing to clean up.
    - VERIFY: on mismatch the just-written object is deleted, guarded by the
      generation the store returned at commit so a newer, verified copy from
      a concurrent delivery is left alone.

    No retries: a failed task is recovered only by the bus redelivering it.
    """

    def __init__(
        self,
        *,
        source: IArtifactSource,
        store: IObjectStore,
        digest_algorithm: str = "sha1",
        content_type: str = TARBALL_CONTENT_TYPE,
        public: bool = True,
    ) -> None:
        self._source = source
        self._store = store
        self.digest_algorithm = digest_algorithm
        self.content_type = content_type
        self.public = public

    async def handle_message(self, message: Message) -> ReplicationOutcome:
        return await self.handle(ArtifactTask.from_message(message))

    async def handle(self, task: ArtifactTask) -> ReplicationOutcome:
        log = logger.bind(url=task.url, path=task.path, shasum=task.shasum)

        # VALIDATE
        if not task.url:
            log.error("invalid message length")
            return ReplicationOutcome(status="discarded", reason="missing url", path=task.path)
        if not task.path or not task.shasum:
            log.error("task did not include path or shasum")
            return ReplicationOutcome(status="discarded", reason="missing attributes", path=task.path)

        # STREAM
        digest = DigestStream(algorithm_for(task.shasum, self.digest_algorithm))
        try:
            async with (
                aclosing(self._source.stream(task.url)) as body,
                self._store.open_write(
                    task.path, content_type=self.content_type, public=self.public
                ) as sink,
            ):
                async for chunk in digest.pipe(body):
                    await sink.write(chunk)
            generation = sink.generation
        except Exception as e:
            log.error("failed to download/upload", error=repr(e), bytes=digest.bytes_seen)
            return ReplicationOutcome(
                status="failed", reason="transport", path=task.path, size=digest.bytes_seen
            )

        # VERIFY
        actual = digest.hexdigest()
        if digests_match(task.shasum, actual):
            log.debug("replicated", bytes=digest.bytes_seen)
            return ReplicationOutcome(
                status="done", path=task.path, digest=actual, size=digest.bytes_seen
            )

        # CLEANUP
        log.error("failed integrity check", hash=actual, bytes=digest.bytes_seen)
        cleaned_up = await self._cleanup(log, task.path, generation)
        return ReplicationOutcome(
            status="failed",
            reason="integrity",
            path=task.path,
            digest=actual,
            size=digest.bytes_seen,
            cleaned_up=cleaned_up,
        )

    async def _cleanup(self, log: structlog.typing.FilteringBoundLogger, path: str, generation: str | None) -> bool:
        try:
            await self._store.delete(path, if_generation=generation)
        except ObjectNotFoundError:
            log.warning("corrupt artifact already gone")
            return True
        except PreconditionFailedError:
            log.warning("artifact was overwritten by another delivery; leaving it")
            return False
        except Exception as e:
            log.error("failed to delete corrupt artifact", error=repr(e))
            return False
        return True
