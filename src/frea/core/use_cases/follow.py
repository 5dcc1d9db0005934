from __future__ import annotations

import asyncio
from dataclasses import dataclass

import structlog

from frea.constants import CHANGE_IDS_TOPIC
from frea.core.errors import CheckpointMissingError, CheckpointReadError
from frea.core.interfaces import (
    IChangeSource,
    ICheckpointStore,
    IMessageBus,
    IRateLimiter,
)
from frea.core.models import ChangeEvent

logger = structlog.get_logger(__name__)


# ---------------------------------------------------------------------------
# Cursor ownership
# ---------------------------------------------------------------------------


class CursorTracker:
    """
    The follower's cursor: single writer, coalesced persistence.

    Only the follower task calls `advance`, and it never awaits in between
    reading and writing the value. The checkpoint ticker only calls
    `persist`, which snapshots the value before suspending and refuses to
    start while another write is outstanding.
    """

    def __init__(self, initial: int) -> None:
        self._value = initial
        self._persisted = initial
        self._in_flight = False

    @property
    def value(self) -> int:
        return self._value

    @property
    def persisted(self) -> int:
        return self._persisted

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    def advance(self, sequence: int) -> bool:
        """Move forward to `sequence`; redeliveries and older values are ignored."""
        if sequence > self._value:
            self._value = sequence
            return True
        return False

    async def persist(self, store: ICheckpointStore, source_id: str) -> bool:
        """
        Write the current value unless a write is already in flight or
        nothing changed. Returns True when a write completed.

        A failed write is logged and left to the next tick.
        """
        if self._in_flight or self._value == self._persisted:
            return False
        snapshot = self._value
        self._in_flight = True
        try:
            await store.set(source_id, snapshot)
        except Exception as e:
            logger.error("failed to persist checkpoint", source=source_id, seq=snapshot, error=repr(e))
            return False
        finally:
            self._in_flight = False
        self._persisted = max(self._persisted, snapshot)
        return True


# ---------------------------------------------------------------------------
# Stats
# ---------------------------------------------------------------------------


@dataclass(kw_only=True)
class FollowStats:
    """Counters for one follower run."""

    received: int = 0
    dropped: int = 0
    published: int = 0
    publish_failed: int = 0
    checkpoints_written: int = 0


# ---------------------------------------------------------------------------
# Follower
# ---------------------------------------------------------------------------


class Follower:
    """
    Resumable reader of the registry change feed.

    Each usable change is published, rate limited, to the change-ids topic.
    Publish failures are logged and the cursor still moves past them:
    delivery to the dispatcher is at-least-once only across restarts
    (the checkpoint lags the cursor by up to one interval), never within a
    run. There is no retry or backoff here.
    """

    def __init__(
        self,
        *,
        source: IChangeSource,
        bus: IMessageBus,
        checkpoints: ICheckpointStore,
        limiter: IRateLimiter,
        source_id: str,
        inactivity_timeout_s: float = 3600.0,
        checkpoint_interval_s: float = 5.0,
        topic: str = CHANGE_IDS_TOPIC,
    ) -> None:
        self._source = source
        self._bus = bus
        self._checkpoints = checkpoints
        self._limiter = limiter
        self.source_id = source_id
        self.inactivity_timeout_s = inactivity_timeout_s
        self.checkpoint_interval_s = checkpoint_interval_s
        self.topic = topic
        self.stats = FollowStats()

    async def load_cursor(self) -> int:
        """
        Read the starting cursor from the checkpoint store.

        Raises CheckpointMissingError when no document exists and
        CheckpointReadError when it cannot be read; both are fatal because
        any guessed starting point either replays the whole feed or skips
        changes silently.
        """
        try:
            value = await self._checkpoints.get(self.source_id)
        except CheckpointReadError:
            raise
        except Exception as e:
            raise CheckpointReadError(f"cannot read checkpoint {self.source_id!r}: {e}") from e
        if value is None:
            raise CheckpointMissingError(self.source_id)
        return value

    async def run(self, start_cursor: int) -> CursorTracker:
        """
        Follow the feed from `start_cursor` until the source ends or the
        task is cancelled. The cursor is flushed once more on the way out.
        """
        tracker = CursorTracker(start_cursor)
        log = logger.bind(source=self.source_id)
        log.info("following change feed", since=start_cursor)

        writes: set[asyncio.Task[bool]] = set()
        ticker = asyncio.create_task(self._checkpoint_loop(tracker, writes))
        try:
            events = self._source.subscribe(
                since=start_cursor,
                inactivity_timeout=self.inactivity_timeout_s,
            )
            async for event in events:
                await self.handle_event(tracker, event)
        finally:
            ticker.cancel()
            await asyncio.gather(ticker, return_exceptions=True)
            await asyncio.shield(self._flush(tracker, writes))
            log.info("follower stopped", cursor=tracker.value, persisted=tracker.persisted)
        return tracker

    async def handle_event(self, tracker: CursorTracker, event: ChangeEvent) -> bool:
        """Publish one change; returns True when it was handed off."""
        self.stats.received += 1
        package, sequence = event.id, event.sequence
        if not package or sequence is None:
            self.stats.dropped += 1
            logger.warning("dropping change without id or seq", id=package, seq=sequence)
            return False

        await self._limiter.acquire()
        try:
            await self._bus.publish(self.topic, package.encode("utf-8"), {"seq": str(sequence)})
            self.stats.published += 1
        except Exception as e:
            self.stats.publish_failed += 1
            logger.error("failed to publish change", id=package, seq=sequence, error=repr(e))
        finally:
            tracker.advance(sequence)
        return True

    async def _checkpoint_loop(self, tracker: CursorTracker, writes: set[asyncio.Task[bool]]) -> None:
        while True:
            await asyncio.sleep(self.checkpoint_interval_s)
            if tracker.in_flight:
                continue  # coalesced into the outstanding write
            task = asyncio.create_task(tracker.persist(self._checkpoints, self.source_id))
            writes.add(task)
            task.add_done_callback(writes.discard)
            task.add_done_callback(self._count_checkpoint)

    def _count_checkpoint(self, task: asyncio.Task[bool]) -> None:
        if not task.cancelled() and task.exception() is None and task.result():
            self.stats.checkpoints_written += 1

    async def _flush(self, tracker: CursorTracker, writes: set[asyncio.Task[bool]]) -> None:
        # let an outstanding write land first so the final one is not coalesced away
        if writes:
            await asyncio.gather(*writes, return_exceptions=True)
        if await tracker.persist(self._checkpoints, self.source_id):
            self.stats.checkpoints_written += 1
