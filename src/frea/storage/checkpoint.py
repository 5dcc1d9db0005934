from __future__ import annotations

import asyncio
import json
import re
import time
from pathlib import Path

from frea.core.errors import CheckpointReadError
from frea.storage.files import atomic_write_bytes


class FileCheckpointStore:
    """Cursor documents stored as one JSON file per change source.

    Layout: ``<root>/<source_id>.json`` containing
    ``{"source": ..., "seq": <int>, "updated_at": <unix ts>}``.
    Writes replace the file atomically so a crash mid-write keeps the
    previous cursor.
    """

    def __init__(self, root: Path) -> None:
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def path_for(self, source_id: str) -> Path:
        safe = re.sub(r"[^A-Za-z0-9._-]+", "_", source_id).strip("._") or "default"
        return self.root / f"{safe}.json"

    async def get(self, source_id: str) -> int | None:
        return await asyncio.to_thread(self._read, self.path_for(source_id))

    async def set(self, source_id: str, value: int) -> None:
        doc = {"source": source_id, "seq": int(value), "updated_at": time.time()}
        data = (json.dumps(doc, indent=2) + "\n").encode()
        await asyncio.to_thread(atomic_write_bytes, self.path_for(source_id), data)

    @staticmethod
    def _read(path: Path) -> int | None:
        try:
            raw = path.read_text()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise CheckpointReadError(f"cannot read {path}: {e}") from e
        try:
            seq = json.loads(raw)["seq"]
        except (ValueError, KeyError, TypeError) as e:
            raise CheckpointReadError(f"corrupt checkpoint {path}: {e}") from e
        if isinstance(seq, bool) or not isinstance(seq, int) or seq < 0:
            raise CheckpointReadError(f"corrupt checkpoint {path}: seq={seq!r}")
        return seq
