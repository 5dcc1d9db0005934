"""Directory-backed message bus shared by separate processes.

Layout per topic::

    <root>/<topic>/pending/<id>.json    waiting for a consumer
    <root>/<topic>/inflight/<id>.json   claimed by a consumer
    <root>/<topic>/dead/<id>.json       gave up after max_delivery_attempts

Publishing writes the message atomically into ``pending/``. A consumer
claims a message by renaming it into ``inflight/`` (only one rename can
win), acks by deleting it and nacks by moving it back. In-flight messages
older than the visibility timeout are moved back to ``pending/`` by any
consumer: that is how work held by a killed process gets redelivered.
Ids sort by publish time, so delivery is roughly in publish order.
"""

from __future__ import annotations

import asyncio
import base64
import json
import os
import time
from collections.abc import Mapping
from pathlib import Path
from uuid import uuid4

import structlog

from frea.core.interfaces import MessageHandler
from frea.core.models import Message
from frea.storage.files import atomic_write_bytes

logger = structlog.get_logger(__name__)


def _encode(message: Message, published_at: float) -> bytes:
    doc = {
        "id": message.id,
        "topic": message.topic,
        "payload": base64.b64encode(message.payload).decode("ascii"),
        "attributes": message.attributes,
        "delivery_attempt": message.delivery_attempt,
        "published_at": published_at,
    }
    return json.dumps(doc, separators=(",", ":")).encode()


def _decode(raw: bytes) -> Message:
    doc = json.loads(raw)
    return Message(
        id=doc["id"],
        topic=doc["topic"],
        payload=base64.b64decode(doc["payload"]),
        attributes=dict(doc.get("attributes") or {}),
        delivery_attempt=int(doc.get("delivery_attempt", 0)),
    )


class SpoolBus:
    """Filesystem spool implementing the at-least-once bus contract.

    Parameters
    ----------
    root : Path
        Spool directory, shared by every producer and consumer.
    visibility_timeout_s : float
        How long a claimed message may stay in flight before it is handed
        out again.
    poll_interval_s : float
        Sleep between scans when a topic is empty.
    max_delivery_attempts : int
        Deliveries before a failing message is moved to ``dead/``.
    """

    def __init__(
        self,
        root: Path,
        *,
        visibility_timeout_s: float = 240.0,
        poll_interval_s: float = 0.5,
        max_delivery_attempts: int = 5,
    ) -> None:
        self.root = Path(root)
        self.visibility_timeout_s = visibility_timeout_s
        self.poll_interval_s = poll_interval_s
        self.max_delivery_attempts = max_delivery_attempts

    # --- layout -----------------------------------------------------------

    def _dir(self, topic: str, state: str) -> Path:
        path = self.root / topic / state
        path.mkdir(parents=True, exist_ok=True)
        return path

    def pending(self, topic: str) -> int:
        return sum(1 for p in self._dir(topic, "pending").glob("*.json"))

    def dead(self, topic: str) -> list[Path]:
        return sorted(self._dir(topic, "dead").glob("*.json"))

    # --- producer ---------------------------------------------------------

    async def publish(
        self,
        topic: str,
        payload: bytes,
        attributes: Mapping[str, str] | None = None,
    ) -> str:
        message = Message(
            id=f"{time.time_ns():020d}-{uuid4().hex[:12]}",
            topic=topic,
            payload=bytes(payload),
            attributes={str(k): str(v) for k, v in (attributes or {}).items()},
            delivery_attempt=0,
        )
        target = self._dir(topic, "pending") / f"{message.id}.json"
        await asyncio.to_thread(atomic_write_bytes, target, _encode(message, time.time()))
        return message.id

    # --- consumer ---------------------------------------------------------

    def _requeue_expired(self, topic: str) -> int:
        inflight = self._dir(topic, "inflight")
        pending = self._dir(topic, "pending")
        cutoff = time.time() - self.visibility_timeout_s
        moved = 0
        for path in inflight.glob("*.json"):
            try:
                if path.stat().st_mtime > cutoff:
                    continue
                os.replace(path, pending / path.name)
            except FileNotFoundError:
                continue  # acked or requeued by someone else
            moved += 1
            logger.warning("visibility timeout expired; redelivering", topic=topic, message_id=path.stem)
        return moved

    def _claim_next(self, topic: str) -> tuple[Message, Path] | None:
        pending = self._dir(topic, "pending")
        inflight = self._dir(topic, "inflight")
        for path in sorted(pending.glob("*.json")):
            claimed = inflight / path.name
            try:
                os.replace(path, claimed)
            except FileNotFoundError:
                continue  # another consumer won the race
            try:
                message = _decode(claimed.read_bytes())
            except (OSError, ValueError, KeyError) as e:
                logger.error("unreadable spool message; dead-lettering", topic=topic, file=path.name, error=repr(e))
                os.replace(claimed, self._dir(topic, "dead") / path.name)
                continue
            message.delivery_attempt += 1
            # persist the attempt count; this also restarts the visibility clock
            atomic_write_bytes(claimed, _encode(message, time.time()))
            return message, claimed
        return None

    def _ack(self, claimed: Path) -> None:
        claimed.unlink(missing_ok=True)

    def _nack(self, message: Message, claimed: Path) -> str:
        state = "dead" if message.delivery_attempt >= self.max_delivery_attempts else "pending"
        try:
            os.replace(claimed, self._dir(message.topic, state) / claimed.name)
        except FileNotFoundError:
            pass  # already requeued by a visibility sweep
        return state

    async def _deliver(self, message: Message, claimed: Path, handler: MessageHandler) -> None:
        log = logger.bind(topic=message.topic, message_id=message.id, attempt=message.delivery_attempt)
        try:
            await handler(message)
        except Exception as e:
            state = await asyncio.to_thread(self._nack, message, claimed)
            if state == "dead":
                log.error("handler failed; dead-lettering message", error=repr(e))
            else:
                log.warning("handler failed; redelivering message", error=repr(e))
        else:
            await asyncio.to_thread(self._ack, claimed)

    async def drain(self, topic: str, handler: MessageHandler) -> int:
        delivered = 0
        await asyncio.to_thread(self._requeue_expired, topic)
        while (claim := await asyncio.to_thread(self._claim_next, topic)) is not None:
            await self._deliver(*claim, handler)
            delivered += 1
        return delivered

    async def subscribe(
        self,
        topic: str,
        handler: MessageHandler,
        *,
        concurrency: int = 1,
    ) -> None:
        sem = asyncio.Semaphore(concurrency)
        running: set[asyncio.Task[None]] = set()
        last_sweep = 0.0

        async def _run(message: Message, claimed: Path) -> None:
            try:
                await self._deliver(message, claimed, handler)
            finally:
                sem.release()

        try:
            while True:
                now = time.monotonic()
                if now - last_sweep >= min(self.visibility_timeout_s / 4, 30.0):
                    await asyncio.to_thread(self._requeue_expired, topic)
                    last_sweep = now
                await sem.acquire()
                claim = await asyncio.to_thread(self._claim_next, topic)
                if claim is None:
                    sem.release()
                    await asyncio.sleep(self.poll_interval_s)
                    continue
                task = asyncio.create_task(_run(*claim))
                running.add(task)
                task.add_done_callback(running.discard)
        finally:
            # unfinished claims stay in flight and come back after the visibility timeout
            for task in running:
                task.cancel()
