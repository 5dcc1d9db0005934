"""Amazon S3 (and S3-compatible) object store.

Writes are spooled locally and sent with a single ``PutObject`` only when the
writer closes cleanly, so an aborted download never reaches the bucket.
Generations are ``version:<VersionId>`` on versioned buckets and
``etag:<ETag>`` otherwise; a conditional delete removes exactly that version,
or sends ``If-Match`` with the ETag, so a newer copy is never removed.
"""

from __future__ import annotations

import asyncio
import tempfile
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import boto3
import structlog
from botocore.exceptions import ClientError

from frea.core.errors import ObjectNotFoundError, PreconditionFailedError
from frea.storage.objects import validate_key

logger = structlog.get_logger(__name__)

_NOT_FOUND_CODES = frozenset({"404", "NoSuchKey", "NotFound"})
_PRECONDITION_CODES = frozenset({"412", "PreconditionFailed"})


def _error_code(e: ClientError) -> str:
    return str(e.response.get("Error", {}).get("Code", ""))


def generation_of(response: dict[str, Any]) -> str:
    """Generation token for a PutObject/HeadObject response."""
    version = response.get("VersionId")
    if version and version != "null":
        return f"version:{version}"
    return f"etag:{response['ETag']}"


class _SpoolWriter:
    def __init__(self, fh: Any) -> None:
        self._fh = fh
        self.generation: str | None = None
        self.size = 0

    async def write(self, chunk: bytes) -> None:
        await asyncio.to_thread(self._fh.write, chunk)
        self.size += len(chunk)


class S3ObjectStore:
    """Object store backed by one S3 bucket.

    Parameters
    ----------
    bucket : str
        Target bucket.
    prefix : str
        Prepended to every key (``"npm/"`` puts ``lodash/index.json`` at
        ``npm/lodash/index.json``).
    client : botocore client, optional
        Pre-built S3 client; one is created from the default credential chain
        when omitted.
    endpoint_url, region : str, optional
        Passed to ``boto3.client`` for S3-compatible services.
    spool_max_bytes : int
        Bytes buffered in memory before the spool moves to a temp file.
    """

    def __init__(
        self,
        bucket: str,
        *,
        prefix: str = "",
        client: Any = None,
        endpoint_url: str | None = None,
        region: str | None = None,
        spool_max_bytes: int = 8 * 1024 * 1024,
    ) -> None:
        self.bucket = bucket
        self.prefix = prefix.strip("/") + "/" if prefix.strip("/") else ""
        self.spool_max_bytes = spool_max_bytes
        if client is None:
            client = boto3.client("s3", endpoint_url=endpoint_url, region_name=region)
        self._client = client

    def name_for(self, key: str) -> str:
        return self.prefix + str(validate_key(key))

    @asynccontextmanager
    async def open_write(
        self,
        key: str,
        *,
        content_type: str,
        public: bool,
    ) -> AsyncIterator[_SpoolWriter]:
        name = self.name_for(key)
        fh = tempfile.SpooledTemporaryFile(max_size=self.spool_max_bytes)
        try:
            writer = _SpoolWriter(fh)
            yield writer
            writer.generation = await asyncio.to_thread(self._put, fh, name, content_type, public)
        finally:
            fh.close()

    def _put(self, fh: Any, name: str, content_type: str, public: bool) -> str:
        fh.seek(0)
        extra: dict[str, Any] = {"ContentType": content_type}
        if public:
            extra["ACL"] = "public-read"
        response = self._client.put_object(Bucket=self.bucket, Key=name, Body=fh, **extra)
        generation = generation_of(response)
        logger.debug("uploaded", bucket=self.bucket, key=name, generation=generation)
        return generation

    async def delete(self, key: str, *, if_generation: str | None = None) -> None:
        await asyncio.to_thread(self._delete, self.name_for(key), if_generation)

    def _delete(self, name: str, if_generation: str | None) -> None:
        try:
            head = self._client.head_object(Bucket=self.bucket, Key=name)
        except ClientError as e:
            if _error_code(e) in _NOT_FOUND_CODES:
                raise ObjectNotFoundError(name) from None
            raise
        if if_generation is None:
            self._client.delete_object(Bucket=self.bucket, Key=name)
            return

        current = generation_of(head)
        if current != if_generation:
            raise PreconditionFailedError(f"{name} generation {current} != {if_generation}")
        kind, _, value = if_generation.partition(":")
        if kind == "version":
            # removes that version only; a newer one stays current
            self._client.delete_object(Bucket=self.bucket, Key=name, VersionId=value)
            return
        try:
            self._client.delete_object(Bucket=self.bucket, Key=name, IfMatch=value)
        except ClientError as e:
            code = _error_code(e)
            if code in _PRECONDITION_CODES:
                raise PreconditionFailedError(f"{name} changed before delete") from None
            if code in _NOT_FOUND_CODES:
                raise ObjectNotFoundError(name) from None
            raise
