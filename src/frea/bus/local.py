from __future__ import annotations

import asyncio
import itertools
from collections.abc import Mapping

import structlog

from frea.core.interfaces import MessageHandler
from frea.core.models import Message

logger = structlog.get_logger(__name__)


class LocalBus:
    """In-process topic bus on top of `asyncio.Queue`.

    Used when every stage runs in one process (``frea mirror``). Delivery
    follows the same contract as the spool bus: a handler that returns acks
    the message, a handler that raises gets it requeued until
    `max_delivery_attempts`, after which it is dropped as dead-lettered.
    Messages still queued when the process exits are lost; the follower's
    checkpoint lag is what replays them.
    """

    def __init__(self, *, max_delivery_attempts: int = 5) -> None:
        self.max_delivery_attempts = max_delivery_attempts
        self.dead_letters: list[Message] = []
        self._queues: dict[str, asyncio.Queue[Message]] = {}
        self._ids = itertools.count(1)

    def _queue(self, topic: str) -> asyncio.Queue[Message]:
        if topic not in self._queues:
            self._queues[topic] = asyncio.Queue()
        return self._queues[topic]

    def pending(self, topic: str) -> int:
        return self._queue(topic).qsize()

    async def publish(
        self,
        topic: str,
        payload: bytes,
        attributes: Mapping[str, str] | None = None,
    ) -> str:
        message = Message(
            id=f"{topic}-{next(self._ids)}",
            topic=topic,
            payload=bytes(payload),
            attributes={str(k): str(v) for k, v in (attributes or {}).items()},
            delivery_attempt=0,
        )
        self._queue(topic).put_nowait(message)
        return message.id

    async def _deliver(self, message: Message, handler: MessageHandler) -> None:
        queue = self._queue(message.topic)
        message.delivery_attempt += 1
        log = logger.bind(topic=message.topic, message_id=message.id, attempt=message.delivery_attempt)
        try:
            await handler(message)
        except Exception as e:
            if message.delivery_attempt >= self.max_delivery_attempts:
                self.dead_letters.append(message)
                log.error("handler failed; dead-lettering message", error=repr(e))
            else:
                log.warning("handler failed; redelivering message", error=repr(e))
                queue.put_nowait(message)
        finally:
            queue.task_done()

    async def subscribe(
        self,
        topic: str,
        handler: MessageHandler,
        *,
        concurrency: int = 1,
    ) -> None:
        queue = self._queue(topic)
        sem = asyncio.Semaphore(concurrency)
        running: set[asyncio.Task[None]] = set()

        async def _run(message: Message) -> None:
            try:
                await self._deliver(message, handler)
            finally:
                sem.release()

        try:
            while True:
                await sem.acquire()
                message = await queue.get()
                task = asyncio.create_task(_run(message))
                running.add(task)
                task.add_done_callback(running.discard)
        finally:
            for task in running:
                task.cancel()

    async def drain(self, topic: str, handler: MessageHandler) -> int:
        queue = self._queue(topic)
        delivered = 0
        while not queue.empty():
            await self._deliver(queue.get_nowait(), handler)
            delivered += 1
        return delivered

    async def join(self, topic: str) -> None:
        """Wait until every message published to `topic` has been handled."""
        await self._queue(topic).join()
