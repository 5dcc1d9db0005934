from __future__ import annotations

from collections.abc import AsyncIterator, Awaitable, Callable, Mapping
from contextlib import AbstractAsyncContextManager
from typing import Any, Protocol, runtime_checkable

from frea.core.models import ChangeEvent, Message

MessageHandler = Callable[[Message], Awaitable[Any]]


# ---------------------------------------------------------------------------
# IChangeSource
# ---------------------------------------------------------------------------

@runtime_checkable
class IChangeSource(Protocol):
    """
    Ordered, effectively infinite feed of registry changes.

    Domain expectations:
    - Delivers every event with ``sequence > since`` in non-decreasing order.
    - May redeliver events near the boundary after a reconnect.
    - Reconnects on its own after ``inactivity_timeout`` seconds of silence.
    """

    def subscribe(
        self,
        *,
        since: int,
        inactivity_timeout: float,
    ) -> AsyncIterator[ChangeEvent]:
        ...


# ---------------------------------------------------------------------------
# ICheckpointStore
# ---------------------------------------------------------------------------

@runtime_checkable
class ICheckpointStore(Protocol):
    """
    Durable home of the follower cursor, one document per change source.
    """

    async def get(self, source_id: str) -> int | None:
        """
        Return the stored cursor, or None when no document exists.

        Read failures raise; they must never be mistaken for "missing".
        """
        ...

    async def set(self, source_id: str, value: int) -> None:
        ...


# ---------------------------------------------------------------------------
# IMessageBus
# ---------------------------------------------------------------------------

@runtime_checkable
class IMessageBus(Protocol):
    """
    At-least-once topic bus between pipeline stages.

    Domain expectations:
    - A handler that returns acknowledges the message.
    - A handler that raises gets the message redelivered later.
    - Redelivery is the only retry mechanism in the pipeline.
    """

    async def publish(
        self,
        topic: str,
        payload: bytes,
        attributes: Mapping[str, str] | None = None,
    ) -> str:
        """Publish one message and return its id; raise on failure."""
        ...

    async def subscribe(
        self,
        topic: str,
        handler: MessageHandler,
        *,
        concurrency: int = 1,
    ) -> None:
        """Deliver messages to `handler` until cancelled."""
        ...

    async def drain(self, topic: str, handler: MessageHandler) -> int:
        """Deliver everything currently queued on `topic` and return the count."""
        ...


# ---------------------------------------------------------------------------
# IObjectStore
# ---------------------------------------------------------------------------

class IObjectWriter(Protocol):
    """Writable byte sink for one object; committed on clean close."""

    generation: str | None

    async def write(self, chunk: bytes) -> None:
        ...


@runtime_checkable
class IObjectStore(Protocol):
    """
    Durable object storage addressed by POSIX-style keys.

    Domain expectations:
    - An object only becomes visible under its key once its writer closes
      without error; an aborted write leaves the previous object (or
      nothing) in place.
    - ``writer.generation`` identifies the committed object so that a later
      delete can be made conditional on it.
    """

    def open_write(
        self,
        key: str,
        *,
        content_type: str,
        public: bool,
    ) -> AbstractAsyncContextManager[IObjectWriter]:
        ...

    async def delete(self, key: str, *, if_generation: str | None = None) -> None:
        """
        Delete `key`.

        Raises ObjectNotFoundError when absent, PreconditionFailedError when
        `if_generation` is given and no longer matches.
        """
        ...


# ---------------------------------------------------------------------------
# IManifestResolver / IArtifactSource
# ---------------------------------------------------------------------------

@runtime_checkable
class IManifestResolver(Protocol):
    """
    Turns a package name into a raw manifest mapping
    ``{"index": {...}, "versions": [...], "tarballs": [...]}``.

    Possibly slow and possibly failing; callers add no retry on top.
    """

    async def resolve(self, package: str) -> Mapping[str, Any]:
        ...


@runtime_checkable
class IArtifactSource(Protocol):
    """Streams the bytes of a remote artifact in chunks."""

    def stream(self, url: str) -> AsyncIterator[bytes]:
        ...


# ---------------------------------------------------------------------------
# IRateLimiter
# ---------------------------------------------------------------------------

@runtime_checkable
class IRateLimiter(Protocol):
    """Admits at most a fixed number of acquisitions per fixed window."""

    async def acquire(self) -> None:
        """Wait until one more acquisition fits in the current window."""
        ...
