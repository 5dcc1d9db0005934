"""Object store adapters.

Both stores share one visibility rule: an object appears under its key only
when its writer closes cleanly. A download that dies half way therefore
never leaves a partial artifact at the canonical key, which is why the
replicator only cleans up after a digest mismatch.

- `FilesystemObjectStore`: objects are files below a root directory. Bytes
  go to a hidden ``.part`` sibling that is fsynced and then renamed over the
  target. Content type and visibility land in a ``<key>.meta.json`` sidecar.
- `MemoryObjectStore`: dict-backed, for single-process runs and tests.
"""

from __future__ import annotations

import asyncio
import itertools
import json
import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import BinaryIO

from frea.core.errors import InvalidKeyError, ObjectNotFoundError, PreconditionFailedError
from frea.storage.files import atomic_write_bytes, fsync_dir, temp_path_for, tombstone_path_for

META_SUFFIX = ".meta.json"


def validate_key(key: str) -> PurePosixPath:
    """Return `key` as a relative POSIX path or raise InvalidKeyError."""
    if not key or not key.strip():
        raise InvalidKeyError("empty object key")
    path = PurePosixPath(key)
    if path.is_absolute() or any(part in ("..", ".") for part in path.parts):
        raise InvalidKeyError(f"object key must be relative and normalized: {key!r}")
    if path.name.endswith(META_SUFFIX):
        raise InvalidKeyError(f"object key collides with metadata sidecar: {key!r}")
    return path


# ---------------------------------------------------------------------------
# Filesystem store
# ---------------------------------------------------------------------------


class _FileWriter:
    def __init__(self, fh: BinaryIO) -> None:
        self._fh = fh
        self.generation: str | None = None
        self.size = 0

    async def write(self, chunk: bytes) -> None:
        await asyncio.to_thread(self._fh.write, chunk)
        self.size += len(chunk)


class FilesystemObjectStore:
    """Object store rooted at a local directory."""

    def __init__(self, root: Path) -> None:
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def path_for(self, key: str) -> Path:
        return self.root.joinpath(*validate_key(key).parts)

    @asynccontextmanager
    async def open_write(
        self,
        key: str,
        *,
        content_type: str,
        public: bool,
    ) -> AsyncIterator[_FileWriter]:
        target = self.path_for(key)
        await asyncio.to_thread(target.parent.mkdir, parents=True, exist_ok=True)
        tmp = temp_path_for(target)
        fh = await asyncio.to_thread(open, tmp, "wb")
        writer = _FileWriter(fh)
        try:
            yield writer
        except BaseException:
            await asyncio.to_thread(self._abort, fh, tmp)
            raise
        writer.generation = await asyncio.to_thread(
            self._commit, fh, tmp, target, content_type, public
        )

    @staticmethod
    def _abort(fh: BinaryIO, tmp: Path) -> None:
        fh.close()
        tmp.unlink(missing_ok=True)

    @staticmethod
    def _generation(st: os.stat_result) -> str:
        return f"{st.st_ino}:{st.st_mtime_ns}"

    def _commit(
        self,
        fh: BinaryIO,
        tmp: Path,
        target: Path,
        content_type: str,
        public: bool,
    ) -> str:
        try:
            try:
                fh.flush()
                os.fsync(fh.fileno())
                st = os.fstat(fh.fileno())
            finally:
                fh.close()
            os.replace(tmp, target)
        except BaseException:
            tmp.unlink(missing_ok=True)
            raise
        fsync_dir(target.parent)
        meta = {"content_type": content_type, "public": public, "size": st.st_size}
        atomic_write_bytes(
            target.with_name(target.name + META_SUFFIX),
            json.dumps(meta, separators=(",", ":")).encode(),
        )
        return self._generation(st)

    async def delete(self, key: str, *, if_generation: str | None = None) -> None:
        await asyncio.to_thread(self._delete, self.path_for(key), if_generation)

    def _delete(self, target: Path, if_generation: str | None) -> None:
        # Rename first so the generation check and the removal see the same
        # inode; a writer committing meanwhile lands a fresh file at `target`.
        tomb = tombstone_path_for(target)
        try:
            os.replace(target, tomb)
        except FileNotFoundError:
            raise ObjectNotFoundError(str(target)) from None
        current = self._generation(tomb.stat())
        if if_generation is not None and current != if_generation:
            try:
                os.link(tomb, target)
            except FileExistsError:
                pass  # an even newer commit already took the key
            tomb.unlink()
            fsync_dir(target.parent)
            raise PreconditionFailedError(f"{target} generation {current} != {if_generation}")
        tomb.unlink()
        if not target.exists():
            target.with_name(target.name + META_SUFFIX).unlink(missing_ok=True)
        fsync_dir(target.parent)


# ---------------------------------------------------------------------------
# In-memory store
# ---------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class StoredObject:
    data: bytes
    content_type: str
    public: bool
    generation: str


class _MemoryWriter:
    def __init__(self) -> None:
        self.chunks: list[bytes] = []
        self.generation: str | None = None

    async def write(self, chunk: bytes) -> None:
        self.chunks.append(bytes(chunk))


class MemoryObjectStore:
    """Dict-backed object store; generations are increasing integers."""

    def __init__(self) -> None:
        self.objects: dict[str, StoredObject] = {}
        self._generations = itertools.count(1)

    def get(self, key: str) -> StoredObject | None:
        return self.objects.get(key)

    @asynccontextmanager
    async def open_write(
        self,
        key: str,
        *,
        content_type: str,
        public: bool,
    ) -> AsyncIterator[_MemoryWriter]:
        validate_key(key)
        writer = _MemoryWriter()
        yield writer
        generation = str(next(self._generations))
        self.objects[key] = StoredObject(
            data=b"".join(writer.chunks),
            content_type=content_type,
            public=public,
            generation=generation,
        )
        writer.generation = generation

    async def delete(self, key: str, *, if_generation: str | None = None) -> None:
        current = self.objects.get(key)
        if current is None:
            raise ObjectNotFoundError(key)
        if if_generation is not None and current.generation != if_generation:
            raise PreconditionFailedError(
                f"{key} generation {current.generation} != {if_generation}"
            )
        del self.objects[key]
