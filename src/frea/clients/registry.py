"""Registry HTTP clients: manifest resolution and artifact download.

This module provides:
- `build_manifest`: convert a registry packument into the raw manifest
  mapping the dispatcher validates (index, versions, tarballs).
- `RegistryResolver`: fetch a packument and build its manifest.
- `HttpArtifactSource`: stream artifact bytes without buffering them.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Mapping
from pathlib import PurePosixPath
from typing import Any
from urllib.parse import quote, urlparse

import httpx

from frea.core.errors import PackageNotFoundError, ResolveError


def tarball_path(name: str, version: str, url: str) -> str:
    """Storage key for a version's tarball: ``{name}/{version}/{basename}``."""
    basename = PurePosixPath(urlparse(url).path).name
    if not basename:
        basename = f"{name.rsplit('/', 1)[-1]}-{version}.tgz"
    return f"{name}/{version}/{basename}"


def build_manifest(
    packument: Mapping[str, Any],
    *,
    tarball_base_url: str | None = None,
) -> dict[str, Any]:
    """Split a packument into index, version records and tarball refs.

    Version entries that are not objects are passed through as-is so the
    dispatcher can reject them individually. A ``versions`` field that is
    not an object is passed through too, left for the dispatcher to reject.
    With `tarball_base_url`, ``dist.tarball`` in every stored
    document points at the mirrored copy instead of upstream.
    """
    name = packument.get("name")
    index = {k: v for k, v in packument.items() if k != "_attachments"}
    raw_versions = packument.get("versions", {})
    if not isinstance(raw_versions, Mapping):
        return {"index": index, "versions": raw_versions, "tarballs": []}

    versions: list[Any] = []
    tarballs: list[Any] = []
    rewritten: dict[str, Any] = {}
    for version, doc in raw_versions.items():
        if isinstance(doc, Mapping):
            dist = doc.get("dist") if isinstance(doc.get("dist"), Mapping) else {}
            url = dist.get("tarball")
            if isinstance(url, str) and url and isinstance(name, str):
                path = tarball_path(name, version, url)
                tarballs.append({"path": path, "shasum": dist.get("shasum"), "tarball": url})
                if tarball_base_url:
                    doc = {**doc, "dist": {**dist, "tarball": f"{tarball_base_url.rstrip('/')}/{path}"}}
        rewritten[version] = doc
        versions.append({"name": name, "version": version, "document": doc})

    if tarball_base_url:
        index["versions"] = rewritten
    return {"index": index, "versions": versions, "tarballs": tarballs}


class RegistryResolver:
    """Resolve package names against a registry's document endpoint.

    Parameters
    ----------
    registry_url : str
        Registry base URL, e.g. ``https://registry.npmjs.org``.
    client : httpx.AsyncClient
        Shared HTTP client.
    tarball_base_url : str | None
        Public base URL of the mirror's tarballs, see `build_manifest`.
    """

    def __init__(
        self,
        registry_url: str,
        client: httpx.AsyncClient,
        *,
        tarball_base_url: str | None = None,
    ) -> None:
        self.registry_url = registry_url.rstrip("/")
        self.client = client
        self.tarball_base_url = tarball_base_url

    def document_url(self, package: str) -> str:
        # scoped names travel as @scope%2Fname
        return f"{self.registry_url}/{quote(package, safe='@')}"

    async def resolve(self, package: str) -> dict[str, Any]:
        r = await self.client.get(self.document_url(package), headers={"accept": "application/json"})
        if r.status_code == 404:
            raise PackageNotFoundError(package)
        r.raise_for_status()
        try:
            doc = r.json()
        except ValueError as e:
            raise ResolveError(f"{package}: registry returned invalid JSON") from e
        if not isinstance(doc, dict):
            raise ResolveError(f"{package}: registry document is not an object")
        return build_manifest(doc, tarball_base_url=self.tarball_base_url)


class HttpArtifactSource:
    """Stream artifact bodies chunk by chunk."""

    def __init__(self, client: httpx.AsyncClient, *, chunk_size: int = 64 * 1024) -> None:
        self.client = client
        self.chunk_size = chunk_size

    async def stream(self, url: str) -> AsyncIterator[bytes]:
        async with self.client.stream("GET", url) as r:
            r.raise_for_status()
            async for chunk in r.aiter_bytes(self.chunk_size):
                yield chunk
