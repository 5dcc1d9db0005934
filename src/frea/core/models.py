"""Core data models for the mirror pipeline.

This module defines:
- `ChangeEvent`: one row of the registry change feed.
- `Message`: envelope handed to bus subscribers.
- `ArtifactTask`: one tarball replication request.
- `PackageManifest`, `IndexRecord`, `VersionRecord`, `TarballRef`: pydantic
  models validating what the manifest resolver returns.
- `Outcome` and its dispatch/replication variants: the single result every
  unit of work returns.

Design notes
------------
- Manifest validation is two-level: `PackageManifest` only checks the outer
  shape, entries are validated one by one so a malformed entry never poisons
  its siblings.
- Outcomes are plain values returned once per unit of work; there are no
  completion callbacks to double-fire.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

OutcomeStatus = Literal["done", "discarded", "failed"]


# === Change feed ===


@dataclass(slots=True, frozen=True)
class ChangeEvent:
    """One change feed row; either field may be missing on malformed rows."""

    id: str | None
    sequence: int | None

    @property
    def usable(self) -> bool:
        return bool(self.id) and self.sequence is not None


def parse_sequence(raw: Any) -> int | None:
    """Reduce a feed ``seq`` value to an integer.

    CouchDB 1.x emits integers, 2.x+ emits ``"<n>-<opaque>"`` strings whose
    leading number is monotonic.
    """
    if isinstance(raw, bool):
        return None
    if isinstance(raw, int):
        return raw
    if isinstance(raw, str):
        head = raw.split("-", 1)[0].strip()
        if head.isdigit():
            return int(head)
    return None


# === Bus envelope ===


@dataclass(slots=True)
class Message:
    """A delivered bus message."""

    id: str
    topic: str
    payload: bytes
    attributes: dict[str, str] = field(default_factory=dict)
    delivery_attempt: int = 1


@dataclass(slots=True, frozen=True)
class ArtifactTask:
    """Replicate the bytes at `url` into `path`, verifying `shasum`."""

    url: str
    path: str
    shasum: str

    @classmethod
    def from_message(cls, message: Message) -> ArtifactTask:
        return cls(
            url=message.payload.decode("utf-8", errors="replace").strip(),
            path=(message.attributes.get("path") or "").strip(),
            shasum=(message.attributes.get("shasum") or "").strip(),
        )

    def to_attributes(self) -> dict[str, str]:
        return {"path": self.path, "shasum": self.shasum}


# === Manifest (resolver output) ===


class PackageManifest(BaseModel):
    """Outer shape of a resolved package; entries are validated separately."""

    index: dict[str, Any]
    versions: list[Any]
    tarballs: list[Any]


class IndexRecord(BaseModel):
    """Package-level document, stored at ``{name}/index.json``."""

    model_config = ConfigDict(extra="allow")

    name: str = Field(min_length=1)

    @property
    def key(self) -> str:
        return f"{self.name}/index.json"


class VersionRecord(BaseModel):
    """One version document, stored at ``{name}/{version}/index.json``."""

    name: str = Field(min_length=1)
    version: str = Field(min_length=1)
    document: dict[str, Any]

    @property
    def key(self) -> str:
        return f"{self.name}/{self.version}/index.json"


class TarballRef(BaseModel):
    """A downloadable artifact: storage key, expected digest, source URL."""

    path: str = Field(min_length=1)
    shasum: str = Field(min_length=1)
    tarball: str = Field(min_length=1)

    def to_task(self) -> ArtifactTask:
        return ArtifactTask(url=self.tarball, path=self.path, shasum=self.shasum)


# === Outcomes ===


@dataclass(slots=True, kw_only=True)
class Outcome:
    """Terminal result of one unit of work.

    - ``done``: fully handled.
    - ``discarded``: malformed input; redelivery would repeat the decision.
    - ``failed``: handled failure; recovery is upstream redelivery.
    """

    status: OutcomeStatus
    reason: str | None = None

    @property
    def ok(self) -> bool:
        return self.status == "done"


@dataclass(kw_only=True)
class DispatchStats:
    """Per-obligation counters for one dispatched package."""

    tarballs_published: int = 0
    tarballs_skipped: int = 0
    tarballs_failed: int = 0
    versions_written: int = 0
    versions_skipped: int = 0
    versions_failed: int = 0
    index_written: bool = False
    index_failed: bool = False

    @property
    def failures(self) -> int:
        return self.tarballs_failed + self.versions_failed + int(self.index_failed)


@dataclass(slots=True, kw_only=True)
class DispatchOutcome(Outcome):
    package: str
    stats: DispatchStats = field(default_factory=DispatchStats)


@dataclass(slots=True, kw_only=True)
class ReplicationOutcome(Outcome):
    path: str
    digest: str | None = None
    size: int = 0
    cleaned_up: bool = False
