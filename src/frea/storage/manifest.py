from __future__ import annotations

import json
from collections.abc import Mapping
from typing import Any

import structlog

from frea.constants import MANIFEST_CONTENT_TYPE
from frea.core.interfaces import IObjectStore
from frea.core.models import Outcome

logger = structlog.get_logger(__name__)


class ManifestWriter:
    """Streams JSON manifest documents into the object store.

    Writes are whole-object overwrites at a deterministic key, so writing
    the same record again under redelivery simply replaces it.
    """

    def __init__(self, store: IObjectStore, *, chunk_size: int = 64 * 1024) -> None:
        self._store = store
        self._chunk_size = chunk_size

    @staticmethod
    def serialize(document: Mapping[str, Any]) -> bytes:
        """Indented UTF-8 JSON, keys in the document's own order."""
        return (json.dumps(document, indent=4, ensure_ascii=False) + "\n").encode("utf-8")

    async def write(
        self,
        document: Mapping[str, Any],
        key: str,
        *,
        log: structlog.typing.FilteringBoundLogger | None = None,
    ) -> Outcome:
        """Write `document` to `key`; failures are logged and returned, never retried."""
        log = (log or logger).bind(key=key)
        try:
            data = self.serialize(document)
        except (TypeError, ValueError) as e:
            log.error("manifest is not serializable", error=repr(e))
            return Outcome(status="failed", reason="serialize")

        try:
            async with self._store.open_write(
                key, content_type=MANIFEST_CONTENT_TYPE, public=True
            ) as sink:
                for start in range(0, len(data), self._chunk_size):
                    await sink.write(data[start : start + self._chunk_size])
        except Exception as e:
            log.error("failed to upload manifest", error=repr(e))
            return Outcome(status="failed", reason="upload")
        return Outcome(status="done")
